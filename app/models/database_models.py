"""
SQLAlchemy database models for Dreamlets
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid

from app.core.database import Base


class SubscriptionTier(str, enum.Enum):
    """Subscription tier levels"""
    FREE = "free"
    PREMIUM_15 = "premium_15"
    PREMIUM_UNLIMITED = "premium_unlimited"


class StoryTone(str, enum.Enum):
    """Story tone options"""
    COZY = "cozy"
    FUNNY = "funny"
    ADVENTURE = "adventure"
    DREAMY = "dreamy"


class HairColor(str, enum.Enum):
    BLONDE = "blonde"
    BROWN = "brown"
    BLACK = "black"
    RED = "red"
    GRAY = "gray"
    WHITE = "white"


class HairLength(str, enum.Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"
    CURLY = "curly"
    STRAIGHT = "straight"
    WAVY = "wavy"


class EyeColor(str, enum.Enum):
    BROWN = "brown"
    BLUE = "blue"
    GREEN = "green"
    HAZEL = "hazel"
    GRAY = "gray"


class SkinTone(str, enum.Enum):
    FAIR = "fair"
    LIGHT = "light"
    MEDIUM = "medium"
    OLIVE = "olive"
    TAN = "tan"
    DARK = "dark"


class User(Base):
    """Account with usage counters and assistant conversation state"""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, index=True)
    first_name = Column(String(100))
    last_name = Column(String(100))

    # Usage
    subscription_tier = Column(SQLEnum(SubscriptionTier), default=SubscriptionTier.FREE, nullable=False)
    stories_this_month = Column(Integer, default=0, nullable=False)
    monthly_reset_date = Column(DateTime(timezone=True), server_default=func.now())

    # Conversation context - both set or both treated as absent
    assistant_id = Column(String(255))
    thread_id = Column(String(255))

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    kids = relationship("Kid", back_populates="user", cascade="all, delete-orphan")
    characters = relationship("Character", back_populates="user", cascade="all, delete-orphan")
    stories = relationship("Story", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"


class Kid(Base):
    """Child in a family profile"""
    __tablename__ = "kids"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(Text, nullable=False)
    age = Column(Integer, nullable=False)
    description = Column(Text)

    # Physical attributes - NULL means "not provided"
    hair_color = Column(SQLEnum(HairColor))
    hair_length = Column(SQLEnum(HairLength))
    eye_color = Column(SQLEnum(EyeColor))
    skin_tone = Column(SQLEnum(SkinTone))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="kids")

    def __repr__(self):
        return f"<Kid {self.name} ({self.age})>"


class Character(Base):
    """Companion character (pet, toy, creature) in a family profile"""
    __tablename__ = "characters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(Text, nullable=False)
    type = Column(String(50), nullable=False, default="manual")
    description = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="characters")

    def __repr__(self):
        return f"<Character {self.name} - {self.type}>"


class Story(Base):
    """Generated three-part story"""
    __tablename__ = "stories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    title = Column(Text, nullable=False)
    kid_ids = Column(JSON, nullable=False, default=list)
    character_ids = Column(JSON, default=list)

    story_part_1 = Column(Text, nullable=False)
    story_part_2 = Column(Text, nullable=False)
    story_part_3 = Column(Text, nullable=False)

    image_url_1 = Column(Text)
    image_url_2 = Column(Text)
    image_url_3 = Column(Text)

    tone = Column(SQLEnum(StoryTone), nullable=False)

    # Set only for stories produced by the storytelling assistant
    assistant_run_id = Column(String(255))
    assistant_message_id = Column(String(255))

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="stories")

    @property
    def parts(self):
        return [self.story_part_1, self.story_part_2, self.story_part_3]

    @property
    def image_urls(self):
        return [self.image_url_1, self.image_url_2, self.image_url_3]

    def __repr__(self):
        return f"<Story {self.title}>"


class GuestStory(Base):
    """Story generated for a guest session, keyed by the session's guest id"""
    __tablename__ = "guest_stories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    guest_id = Column(String(64), nullable=False, index=True)

    # Full StoryArtifact document
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self):
        return f"<GuestStory {self.id} ({self.guest_id})>"

"""
Profile stores: where a caller's kids, characters and stories live

Accounts keep them in the database. Guests keep their family in the session
cookie and their stories in the guest_stories table. The
generation pipeline only talks to the ProfileStore interface.
"""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, MutableMapping, Optional

from sqlalchemy.orm import Session

from app.models.database_models import Character, GuestStory, Kid, Story
from app.models.story import Companion, FamilyMember, StoryArtifact


class ProfileStore(ABC):
    """Family profile and story persistence for one caller"""

    is_guest: bool = False

    @property
    @abstractmethod
    def owner_id(self) -> str:
        """Account id, or the guest's storage namespace"""

    @abstractmethod
    def get_kids(self) -> List[FamilyMember]:
        ...

    @abstractmethod
    def get_characters(self) -> List[Companion]:
        ...

    @abstractmethod
    def add_kid(self, name: str, age: int, **attributes: Any) -> FamilyMember:
        ...

    @abstractmethod
    def add_character(self, name: str, type: str = "manual", description: Optional[str] = None) -> Companion:
        ...

    @abstractmethod
    def save_story(self, artifact: StoryArtifact) -> StoryArtifact:
        ...

    @abstractmethod
    def list_stories(self) -> List[StoryArtifact]:
        """Newest first"""

    @abstractmethod
    def get_story(self, story_id: int) -> Optional[StoryArtifact]:
        ...

    @abstractmethod
    def delete_story(self, story_id: int) -> bool:
        ...


class DatabaseProfileStore(ProfileStore):
    """Profile store for an authenticated account"""

    is_guest = False

    def __init__(self, db: Session, user_id: str):
        self.db = db
        self.user_id = user_id

    @property
    def owner_id(self) -> str:
        return self.user_id

    def get_kids(self) -> List[FamilyMember]:
        kids = self.db.query(Kid).filter(Kid.user_id == self.user_id).order_by(Kid.id).all()
        return [FamilyMember.model_validate(kid) for kid in kids]

    def get_characters(self) -> List[Companion]:
        characters = self.db.query(Character).filter(
            Character.user_id == self.user_id
        ).order_by(Character.id).all()
        return [Companion.model_validate(character) for character in characters]

    def add_kid(self, name: str, age: int, **attributes: Any) -> FamilyMember:
        # Validate before touching the database
        member = FamilyMember(id=0, name=name, age=age, **attributes)
        kid = Kid(user_id=self.user_id, **member.model_dump(exclude={"id"}))
        self.db.add(kid)
        self.db.commit()
        self.db.refresh(kid)
        return FamilyMember.model_validate(kid)

    def add_character(self, name: str, type: str = "manual", description: Optional[str] = None) -> Companion:
        character = Character(user_id=self.user_id, name=name, type=type, description=description)
        self.db.add(character)
        self.db.commit()
        self.db.refresh(character)
        return Companion.model_validate(character)

    def save_story(self, artifact: StoryArtifact) -> StoryArtifact:
        story = Story(
            user_id=self.user_id,
            title=artifact.title,
            kid_ids=artifact.kid_ids,
            character_ids=artifact.character_ids,
            story_part_1=artifact.parts[0],
            story_part_2=artifact.parts[1],
            story_part_3=artifact.parts[2],
            image_url_1=artifact.image_urls[0],
            image_url_2=artifact.image_urls[1],
            image_url_3=artifact.image_urls[2],
            tone=artifact.tone,
            assistant_run_id=artifact.assistant_run_id,
            assistant_message_id=artifact.assistant_message_id,
            created_at=artifact.created_at,
        )
        self.db.add(story)
        self.db.commit()
        self.db.refresh(story)
        return StoryArtifact.from_orm_model(story)

    def list_stories(self) -> List[StoryArtifact]:
        stories = self.db.query(Story).filter(
            Story.user_id == self.user_id
        ).order_by(Story.created_at.desc(), Story.id.desc()).all()
        return [StoryArtifact.from_orm_model(story) for story in stories]

    def get_story(self, story_id: int) -> Optional[StoryArtifact]:
        story = self._query_story(story_id)
        return StoryArtifact.from_orm_model(story) if story else None

    def delete_story(self, story_id: int) -> bool:
        story = self._query_story(story_id)
        if not story:
            return False
        self.db.delete(story)
        self.db.commit()
        return True

    def _query_story(self, story_id: int) -> Optional[Story]:
        return self.db.query(Story).filter(
            Story.id == story_id,
            Story.user_id == self.user_id
        ).first()


class SessionProfileStore(ProfileStore):
    """
    Profile store for a guest.

    Kids and characters live in the signed session cookie. Stories are too
    big for a cookie, so they go to the guest_stories table under the
    session's guest id.
    """

    is_guest = True

    KIDS_KEY = "guest_kids"
    CHARACTERS_KEY = "guest_characters"
    GUEST_ID_KEY = "guest_id"

    def __init__(self, session: MutableMapping[str, Any], db: Session):
        self.session = session
        self.db = db
        if not self.session.get(self.GUEST_ID_KEY):
            self.session[self.GUEST_ID_KEY] = f"guest-{uuid.uuid4().hex}"

    @property
    def owner_id(self) -> str:
        return self.session[self.GUEST_ID_KEY]

    def get_kids(self) -> List[FamilyMember]:
        return [FamilyMember.model_validate(kid) for kid in self.session.get(self.KIDS_KEY, [])]

    def get_characters(self) -> List[Companion]:
        return [Companion.model_validate(c) for c in self.session.get(self.CHARACTERS_KEY, [])]

    def add_kid(self, name: str, age: int, **attributes: Any) -> FamilyMember:
        kids = list(self.session.get(self.KIDS_KEY, []))
        member = FamilyMember(id=self._next_id(kids), name=name, age=age, **attributes)
        kids.append(member.model_dump(mode="json"))
        # Reassign so the session notices the change
        self.session[self.KIDS_KEY] = kids
        return member

    def add_character(self, name: str, type: str = "manual", description: Optional[str] = None) -> Companion:
        characters = list(self.session.get(self.CHARACTERS_KEY, []))
        companion = Companion(id=self._next_id(characters), name=name, type=type, description=description)
        characters.append(companion.model_dump(mode="json"))
        self.session[self.CHARACTERS_KEY] = characters
        return companion

    def save_story(self, artifact: StoryArtifact) -> StoryArtifact:
        row = GuestStory(guest_id=self.owner_id, payload={}, created_at=artifact.created_at)
        self.db.add(row)
        self.db.flush()
        saved = artifact.model_copy(update={"id": row.id, "user_id": self.owner_id})
        row.payload = saved.model_dump(mode="json")
        self.db.commit()
        return saved

    def list_stories(self) -> List[StoryArtifact]:
        rows = self._query().order_by(GuestStory.created_at.desc(), GuestStory.id.desc()).all()
        return [StoryArtifact.model_validate(row.payload) for row in rows]

    def get_story(self, story_id: int) -> Optional[StoryArtifact]:
        row = self._query().filter(GuestStory.id == story_id).first()
        return StoryArtifact.model_validate(row.payload) if row else None

    def delete_story(self, story_id: int) -> bool:
        deleted = self._query().filter(GuestStory.id == story_id).delete()
        self.db.commit()
        return bool(deleted)

    def _query(self):
        return self.db.query(GuestStory).filter(GuestStory.guest_id == self.owner_id)

    @staticmethod
    def _next_id(records: List[dict]) -> int:
        return max((r.get("id", 0) for r in records), default=0) + 1


def prune_guest_stories_before(db: Session, cutoff: datetime) -> int:
    """
    Drop every guest story created before cutoff, across all guest sessions.

    Sessions whose cookie was lost never come back to prune their own rows,
    so expiry runs over the whole table.
    """
    deleted = db.query(GuestStory).filter(
        GuestStory.created_at < cutoff
    ).delete(synchronize_session=False)
    if deleted:
        db.commit()
    return deleted

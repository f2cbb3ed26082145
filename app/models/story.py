"""
Pydantic models for story generation
"""
import json
import re
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.core.errors import NarrativeGenerationFailed
from app.models.database_models import EyeColor, HairColor, HairLength, SkinTone, StoryTone

# Bump when the JSON contract in the prompts changes shape
NARRATIVE_SCHEMA_VERSION = 1

STORY_PART_COUNT = 3


class FamilyMember(BaseModel):
    """A kid from the family profile"""
    id: int
    name: str
    age: int = Field(..., ge=1, le=12)
    description: Optional[str] = None
    hair_color: Optional[HairColor] = None
    hair_length: Optional[HairLength] = None
    eye_color: Optional[EyeColor] = None
    skin_tone: Optional[SkinTone] = None

    model_config = ConfigDict(from_attributes=True)


class Companion(BaseModel):
    """A companion character from the family profile"""
    id: int
    name: str
    type: str = "manual"
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class GenerationRequest(BaseModel):
    kid_ids: List[int] = Field(default_factory=list, example=[1])
    character_ids: List[int] = Field(default_factory=list, example=[])
    story_idea: str = Field(..., min_length=1, example="a trip to the moon")
    tone: StoryTone = Field(default=StoryTone.COZY)

    @field_validator("story_idea")
    @classmethod
    def _strip_idea(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("story_idea must not be blank")
        return value


class FamilyContext(BaseModel):
    """Kids and companions resolved for one generation"""
    kids: List[FamilyMember] = Field(default_factory=list)
    characters: List[Companion] = Field(default_factory=list)

    @property
    def kid_names(self) -> List[str]:
        return [kid.name for kid in self.kids]

    @property
    def character_names(self) -> List[str]:
        return [character.name for character in self.characters]


def flatten_character_descriptions(value: Any) -> str:
    """Accept a consistency sheet as text or as a list of {name, description}"""
    if value is None:
        return ""
    if isinstance(value, list):
        lines = []
        for entry in value:
            if isinstance(entry, dict):
                name = str(entry.get("name") or "").strip()
                description = str(entry.get("description") or "").strip()
                lines.append(f"{name}: {description}" if name else description)
            else:
                lines.append(str(entry))
        return " ".join(line for line in lines if line)
    return str(value).strip()


class Narrative(BaseModel):
    """Structured story document returned by the language model"""
    schema_version: int = Field(default=NARRATIVE_SCHEMA_VERSION, alias="schemaVersion")
    title: str = ""
    part1: str
    part2: str
    part3: str
    character_descriptions: str = Field(default="", alias="characterDescriptions")
    image_prompt_1: str = Field(default="", alias="imagePrompt1")
    image_prompt_2: str = Field(default="", alias="imagePrompt2")
    image_prompt_3: str = Field(default="", alias="imagePrompt3")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("schema_version")
    @classmethod
    def _known_version(cls, value: int) -> int:
        if value != NARRATIVE_SCHEMA_VERSION:
            raise ValueError(f"unsupported schemaVersion {value}")
        return value

    @field_validator("title", "image_prompt_1", "image_prompt_2", "image_prompt_3", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("part1", "part2", "part3")
    @classmethod
    def _non_empty_part(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("story parts must not be empty")
        return value

    @field_validator("character_descriptions", mode="before")
    @classmethod
    def _flatten_descriptions(cls, value: Any) -> str:
        return flatten_character_descriptions(value)

    @property
    def parts(self) -> List[str]:
        return [self.part1, self.part2, self.part3]

    @property
    def image_prompts(self) -> List[str]:
        return [self.image_prompt_1, self.image_prompt_2, self.image_prompt_3]


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_narrative(raw: Optional[str]) -> Narrative:
    """Parse and validate model output, raising a labelled error on mismatch"""
    if not raw or not raw.strip():
        raise NarrativeGenerationFailed("Model returned an empty response", reason="narrative_malformed")

    text = raw.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise NarrativeGenerationFailed(f"Model response is not valid JSON: {e}", reason="narrative_malformed")

    if not isinstance(data, dict):
        raise NarrativeGenerationFailed("Model response is not a JSON object", reason="narrative_malformed")

    try:
        return Narrative.model_validate(data)
    except ValidationError as e:
        raise NarrativeGenerationFailed(
            f"Model response does not match the story schema: {e.error_count()} error(s)",
            reason="narrative_malformed",
        )


def is_valid_image_reference(value: str) -> bool:
    """Local servable path or absolute http(s) URL"""
    if not value or any(ch.isspace() for ch in value):
        return False
    if value.startswith("/") and not value.startswith("//"):
        return True
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class QuotaStatus(BaseModel):
    allowed: bool
    used: int
    limit: Optional[int] = None  # None means unlimited
    reason: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)


class StoryArtifact(BaseModel):
    """A finished story, persisted by a profile store"""
    id: Optional[int] = None
    user_id: str
    title: str
    kid_ids: List[int] = Field(default_factory=list)
    character_ids: List[int] = Field(default_factory=list)
    parts: List[str]
    image_urls: List[Optional[str]] = Field(default_factory=lambda: [None] * STORY_PART_COUNT)
    tone: StoryTone
    created_at: datetime
    assistant_run_id: Optional[str] = None
    assistant_message_id: Optional[str] = None

    @field_validator("parts")
    @classmethod
    def _three_parts(cls, value: List[str]) -> List[str]:
        if len(value) != STORY_PART_COUNT:
            raise ValueError(f"a story has exactly {STORY_PART_COUNT} parts")
        if any(not part or not part.strip() for part in value):
            raise ValueError("story parts must not be empty")
        return value

    @field_validator("image_urls")
    @classmethod
    def _three_image_slots(cls, value: List[Optional[str]]) -> List[Optional[str]]:
        if len(value) != STORY_PART_COUNT:
            raise ValueError(f"a story has exactly {STORY_PART_COUNT} image slots")
        for url in value:
            if url is not None and not is_valid_image_reference(url):
                raise ValueError(f"malformed image reference: {url!r}")
        return value

    @classmethod
    def from_orm_model(cls, story) -> "StoryArtifact":
        """Create artifact from SQLAlchemy Story model"""
        return cls(
            id=story.id,
            user_id=story.user_id,
            title=story.title,
            kid_ids=story.kid_ids or [],
            character_ids=story.character_ids or [],
            parts=story.parts,
            image_urls=story.image_urls,
            tone=story.tone,
            created_at=story.created_at,
            assistant_run_id=story.assistant_run_id,
            assistant_message_id=story.assistant_message_id,
        )

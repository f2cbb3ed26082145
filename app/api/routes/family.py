"""
Family profile routes: the kids and companion characters stories are about
"""
import logging
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from app.core.dependencies import CallerStore, DatabaseSession
from app.core.errors import StoryGenerationError
from app.models.database_models import EyeColor, HairColor, HairLength, SkinTone, User
from app.models.story import Companion, FamilyMember
from app.services.assistant_service import AssistantStoryService, assistant_service
from app.services.family_context import kid_attribute_phrases
from app.services.profile_store import ProfileStore

logger = logging.getLogger(__name__)

router = APIRouter()


class KidCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    age: int = Field(..., ge=1, le=12)
    description: Optional[str] = None
    hair_color: Optional[HairColor] = None
    hair_length: Optional[HairLength] = None
    eye_color: Optional[EyeColor] = None
    skin_tone: Optional[SkinTone] = None


class CharacterCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: str = Field(default="manual", max_length=50)
    description: Optional[str] = None


async def share_with_assistant(
    store: ProfileStore,
    db,
    text: str,
    service: Optional[AssistantStoryService] = None
):
    """Tell an account's assistant thread about a profile change, if it has one"""
    if store.is_guest:
        return
    service = service or assistant_service
    user = db.query(User).filter(User.id == store.owner_id).first()
    if not user:
        return
    try:
        conversation = service.validate_conversation(user)
        await service.add_context_to_thread(conversation, text)
    except StoryGenerationError as e:
        # The next first turn introduces the whole family anyway
        logger.info(f"Profile change not shared with assistant: {e.message}")


@router.get("/kids", response_model=List[FamilyMember])
async def list_kids(store: CallerStore):
    return store.get_kids()


@router.post("/kids", response_model=FamilyMember)
async def add_kid(kid: KidCreate, store: CallerStore, db: DatabaseSession):
    """Add a kid to the caller's family"""
    member = store.add_kid(**kid.model_dump())
    details = ", ".join(kid_attribute_phrases(member))
    await share_with_assistant(store, db, f"New child in the family: {member.name} ({details})")
    return member


@router.get("/characters", response_model=List[Companion])
async def list_characters(store: CallerStore):
    return store.get_characters()


@router.post("/characters", response_model=Companion)
async def add_character(character: CharacterCreate, store: CallerStore, db: DatabaseSession):
    """Add a companion character (pet, toy, creature)"""
    companion = store.add_character(character.name, character.type, character.description)
    description = f": {companion.description}" if companion.description else ""
    await share_with_assistant(store, db, f"New story character: {companion.name}{description}")
    return companion

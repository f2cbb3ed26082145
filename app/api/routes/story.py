"""
Story generation API routes
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from app.core.dependencies import CallerStore, DatabaseSession
from app.models.story import GenerationRequest, StoryArtifact
from app.services.story_assembler import story_assembler
from app.services.usage_tracking_service import usage_tracking_service

logger = logging.getLogger(__name__)

router = APIRouter()


class UsageResponse(BaseModel):
    allowed: bool
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reason: Optional[str] = None
    is_guest: bool = False


@router.post("/generate", response_model=StoryArtifact)
async def generate_story(request: GenerationRequest, store: CallerStore, db: DatabaseSession):
    """
    Generate a three-part illustrated bedtime story for the caller.

    Labelled failures (quota, provider errors) are turned into JSON by the
    StoryGenerationError handler in app.main.
    """
    return await story_assembler.generate(store, request, db)


@router.get("", response_model=List[StoryArtifact])
async def list_stories(store: CallerStore):
    """Caller's stories, newest first"""
    return store.list_stories()


@router.get("/usage", response_model=UsageResponse)
async def get_usage(store: CallerStore, db: DatabaseSession):
    """Current quota without consuming anything"""
    quota = usage_tracking_service.check_store_quota(store, db)
    if quota.reason == "account_not_found":
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found"
        )
    return UsageResponse(**quota.model_dump(), remaining=quota.remaining, is_guest=store.is_guest)


@router.get("/{story_id}", response_model=StoryArtifact)
async def get_story(story_id: int, store: CallerStore):
    story = store.get_story(story_id)
    if not story:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Story not found"
        )
    return story


@router.delete("/{story_id}")
async def delete_story(story_id: int, store: CallerStore):
    """Delete one of the caller's stories"""
    if not store.delete_story(story_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Story not found"
        )
    logger.info(f"🗑️ Deleted story {story_id} for {store.owner_id}")
    return {"message": "Story deleted successfully"}

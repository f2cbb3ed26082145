"""
Story assembly: quota check, narrative, illustrations, persistence
"""
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.errors import AccountNotFound, IllustrationFailed, QuotaExceeded
from app.models.database_models import User
from app.models.story import STORY_PART_COUNT, FamilyContext, GenerationRequest, Narrative, StoryArtifact
from app.services.assistant_service import AssistantStoryService, assistant_service as default_assistant_service
from app.services.family_context import build_family_context
from app.services.image_generator import ImageGeneratorService, image_generator as default_image_generator
from app.services.profile_store import ProfileStore
from app.services.story_generator import StoryGeneratorService, story_generator as default_story_generator
from app.services.usage_tracking_service import usage_tracking_service

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLES = {"", "story title", "untitled", "title"}


def story_title(narrative: Narrative, context: FamilyContext) -> str:
    """Model title, or one built from the kids' names when it is a placeholder"""
    title = (narrative.title or "").strip()
    if title.lower() not in PLACEHOLDER_TITLES:
        return title
    names = context.kid_names
    if not names:
        return "A Bedtime Story"
    if len(names) == 1:
        return f"{names[0]}'s Bedtime Story"
    return f"{', '.join(names[:-1])} and {names[-1]}'s Bedtime Story"


class StoryAssembler:
    """Turns a generation request into a persisted StoryArtifact"""

    def __init__(
        self,
        story_generator: Optional[StoryGeneratorService] = None,
        assistant_service: Optional[AssistantStoryService] = None,
        image_generator: Optional[ImageGeneratorService] = None
    ):
        self.story_generator = story_generator or default_story_generator
        self.assistant_service = assistant_service or default_assistant_service
        self.image_generator = image_generator or default_image_generator

    async def generate(
        self,
        store: ProfileStore,
        request: GenerationRequest,
        db: Optional[Session] = None
    ) -> StoryArtifact:
        """
        Generate, illustrate and save one story for the caller.

        Quota is checked before any provider call. Accounts go through their
        assistant thread first and fall back to single-shot generation if the
        assistant fails; guests always use single-shot generation. Only the
        narrative is mandatory, missing illustrations leave empty slots.
        """
        quota = usage_tracking_service.check_store_quota(store, db)
        if quota.reason == "account_not_found":
            raise AccountNotFound(f"Account {store.owner_id} not found")
        if not quota.allowed:
            raise QuotaExceeded(quota.reason or "Story limit reached", used=quota.used, limit=quota.limit)

        kids = store.get_kids()
        characters = store.get_characters()
        context = build_family_context(request, kids, characters)
        logger.info(
            f"📖 Generating {request.tone.value} story for {store.owner_id} "
            f"({len(context.kids)} kids, {len(context.characters)} characters)"
        )
        start_time = time.time()

        narrative = None
        image_urls: Optional[List[Optional[str]]] = None
        run_id = message_id = None

        if not store.is_guest:
            try:
                user = db.query(User).filter(User.id == store.owner_id).first()
                conversation = await self.assistant_service.ensure_conversation(db, user)
                result = await self.assistant_service.generate_story(
                    conversation,
                    context,
                    request,
                    store.owner_id,
                    roster=FamilyContext(kids=kids, characters=characters)
                )
                narrative = result.narrative
                run_id, message_id = result.run_id, result.message_id
                if result.images_attempted:
                    image_urls = result.image_urls
            except Exception:
                logger.exception("Assistant generation failed, falling back to single-shot generation")
                narrative = None
                image_urls = None
                run_id = message_id = None

        if narrative is None:
            narrative = await self.story_generator.generate_story(context, request)

        if image_urls is None:
            image_urls = await self._illustrate(narrative, store.owner_id)

        artifact = StoryArtifact(
            user_id=store.owner_id,
            title=story_title(narrative, context),
            kid_ids=[kid.id for kid in context.kids],
            character_ids=[character.id for character in context.characters],
            parts=narrative.parts,
            image_urls=image_urls,
            tone=request.tone,
            created_at=datetime.now(timezone.utc),
            assistant_run_id=run_id,
            assistant_message_id=message_id,
        )
        saved = store.save_story(artifact)

        if not store.is_guest:
            usage_tracking_service.record_story_generation(db, store.owner_id)

        illustrated = sum(1 for url in saved.image_urls if url)
        logger.info(
            f"✨ Story {saved.id} '{saved.title}' ready in {time.time() - start_time:.2f} seconds "
            f"({illustrated}/{STORY_PART_COUNT} illustrations)"
        )
        return saved

    async def _illustrate(self, narrative: Narrative, owner_id: str) -> List[Optional[str]]:
        try:
            return await self.image_generator.generate_images(
                narrative.image_prompts,
                narrative.character_descriptions,
                owner_id
            )
        except IllustrationFailed as e:
            logger.warning(f"Saving story without illustrations: {e.message}")
            return [None] * STORY_PART_COUNT


# Global instance
story_assembler = StoryAssembler()

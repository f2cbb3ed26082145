import asyncio
import base64
import io
import logging
import time
from typing import List, Optional, Sequence

import openai
import requests
from PIL import Image

from app.core.config import settings
from app.core.errors import IllustrationFailed
from app.models.story import STORY_PART_COUNT
from app.services.storage_service import StorageService

logger = logging.getLogger(__name__)

# DALL-E 3 rejects prompts longer than this
MAX_PROMPT_LENGTH = 4000
MAX_SCENE_LENGTH = 1000

IMAGE_FORMATS = {"PNG": "png", "JPEG": "jpg", "WEBP": "webp"}

DEFAULT_CHARACTER_SHEET = "Draw each named character the same way in every scene."

ILLUSTRATION_TEMPLATE = """CONSISTENT CHARACTER ILLUSTRATION - Children's book style:

CHARACTER REQUIREMENTS (MUST MAINTAIN EXACTLY): {characters}

SCENE: {scene}

CRITICAL CONSISTENCY RULES:
- Keep ALL character physical features identical across scenes (skin tone, hair color, eye color, hair length, facial features)
- Age consistency: keep the EXACT age throughout UNLESS the story is about time passing (birthdays, growing up, time travel)
- Characters keep the same gender throughout
- Only clothing, expressions and intentional age changes may vary between scenes
- Companion characters keep their colors, size and distinctive features

Style: Soft, warm colors, friendly and cozy atmosphere, children's book illustration, suitable for bedtime stories."""


def build_illustration_prompt(scene_prompt: str, character_descriptions: str) -> str:
    """Prefix a scene with the character consistency sheet"""
    scene = (scene_prompt or "").strip()[:MAX_SCENE_LENGTH]
    sheet = (character_descriptions or DEFAULT_CHARACTER_SHEET).strip()

    # Only the sheet gives way; the scene and rules always fit
    budget = MAX_PROMPT_LENGTH - len(ILLUSTRATION_TEMPLATE.format(characters="", scene=scene))
    if len(sheet) > budget:
        sheet = sheet[:max(budget, 0)].rstrip()

    return ILLUSTRATION_TEMPLATE.format(characters=sheet, scene=scene)


def download_image(url: str) -> bytes:
    """Download image from URL and return bytes"""
    response = requests.get(url, timeout=30)
    response.raise_for_status()
    return response.content


def detect_image_format(image_bytes: bytes) -> Optional[str]:
    """File extension for a valid image, None if the bytes are not an image"""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        return IMAGE_FORMATS.get(image.format)
    except Exception:
        return None


class ImageGeneratorService:
    """Generates, downloads and stores the three story illustrations"""

    def __init__(
        self,
        client: Optional[openai.AsyncOpenAI] = None,
        storage: Optional[StorageService] = None,
        api_key: Optional[str] = None
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._client = client
        self.storage = storage or StorageService()

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def generate_images(
        self,
        image_prompts: Sequence[Optional[str]],
        character_descriptions: str,
        owner_id: str
    ) -> List[Optional[str]]:
        """
        Generate one image per scene concurrently. Failed slots come back as
        None; IllustrationFailed is raised only when nothing could be produced.
        """
        if not self.api_key:
            raise IllustrationFailed("Image generation is not configured (missing OpenAI API key)")

        prompts = list(image_prompts)[:STORY_PART_COUNT]
        prompts += [None] * (STORY_PART_COUNT - len(prompts))

        logger.info(f"🎨 Starting image generation for {sum(1 for p in prompts if p)} scenes...")
        start_time = time.time()

        image_urls = await asyncio.gather(*[
            self._generate_one(index, prompt, character_descriptions, owner_id)
            for index, prompt in enumerate(prompts)
        ])

        succeeded = sum(1 for url in image_urls if url)
        logger.info(f"🎨 {succeeded}/{STORY_PART_COUNT} images ready in {time.time() - start_time:.2f} seconds")

        if succeeded == 0:
            raise IllustrationFailed("All illustrations failed")
        return list(image_urls)

    async def _generate_one(
        self,
        index: int,
        scene_prompt: Optional[str],
        character_descriptions: str,
        owner_id: str
    ) -> Optional[str]:
        if not scene_prompt or not scene_prompt.strip():
            logger.warning(f"No prompt for image {index + 1}, leaving slot empty")
            return None

        try:
            response = await self.client.images.generate(
                model=settings.IMAGE_MODEL,
                prompt=build_illustration_prompt(scene_prompt, character_descriptions),
                n=1,
                size=settings.IMAGE_SIZE,
                quality=settings.IMAGE_QUALITY
            )
            image = response.data[0]
            if getattr(image, "b64_json", None):
                image_bytes = base64.b64decode(image.b64_json)
            elif image.url:
                image_bytes = await asyncio.to_thread(download_image, image.url)
            else:
                raise ValueError("provider returned neither a URL nor image data")

            extension = detect_image_format(image_bytes)
            if not extension:
                raise ValueError("provider returned bytes that are not a supported image")

            path = await asyncio.to_thread(self.storage.save_image, owner_id, image_bytes, extension)
            logger.info(f"✅ Image {index + 1} stored at {path}")
            return path

        except Exception as e:
            logger.warning(f"❌ Error generating image {index + 1}: {e}")
            return None


# Global instance
image_generator = ImageGeneratorService()

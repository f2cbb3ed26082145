import logging
import time
from typing import Optional

import openai

from app.core.config import settings
from app.core.errors import NarrativeGenerationFailed
from app.models.database_models import StoryTone
from app.models.story import FamilyContext, GenerationRequest, Narrative, parse_narrative, NARRATIVE_SCHEMA_VERSION
from app.services.family_context import kid_attribute_phrases

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a creative children's story writer who specializes in bedtime stories. "
    "Create engaging, age-appropriate stories with beautiful, descriptive language. "
    "Always respond with valid JSON."
)

TONE_GUIDANCE = {
    StoryTone.COZY: "warm, gentle and snuggly, like a blanket fort on a rainy night",
    StoryTone.FUNNY: "playful and silly with giggles along the way, settling down calmly at the end",
    StoryTone.ADVENTURE: "exciting but safe, with a brave quest and a reassuring homecoming",
    StoryTone.DREAMY: "soft, magical and floaty, full of wonder and sleepy imagery",
}


def join_names(names) -> str:
    names = list(names)
    if len(names) <= 1:
        return "".join(names)
    return ", ".join(names[:-1]) + " and " + names[-1]


def build_character_details(context: FamilyContext) -> str:
    """Attribute block listing ONLY what was provided for each character"""
    if not context.kids and not context.characters:
        return ""

    lines = ["Character Details (ONLY use these if provided):"]
    if context.kids:
        lines.append("")
        lines.append("Children:")
        for kid in context.kids:
            personality = f" - {kid.description}" if kid.description else ""
            lines.append(f"- {kid.name}: {', '.join(kid_attribute_phrases(kid))}{personality}")

    if context.characters:
        lines.append("")
        lines.append("Story Characters:")
        for character in context.characters:
            description = f" - {character.description}" if character.description else ""
            lines.append(f"- {character.name}{description}")

    return "\n".join(lines)


CONSISTENCY_RULES = """CRITICAL PHYSICAL DESCRIPTION RULES:
- ONLY use the physical attributes provided above when describing the children
- DO NOT make up or invent physical descriptions (hair, eyes, skin) for any children
- If no physical attributes are provided for a child, simply use their name without physical descriptions
- You may describe clothing, expressions, and actions, but NOT physical features unless explicitly provided

CRITICAL CHARACTER CONSISTENCY FOR ILLUSTRATIONS:
- Establish EXACT character descriptions that stay identical across all three images
- Age consistency: keep the stated age UNLESS the story is about time passing (birthdays, growing up, time travel)
- If gender is not stated, infer it carefully from the name and keep it consistent
- For story characters (animals, toys, magical creatures) create specific, distinctive, consistent descriptions
- Three image prompts must reference these exact character descriptions"""


def response_contract() -> str:
    return f"""Respond in JSON format with this structure:
{{
  "schemaVersion": {NARRATIVE_SCHEMA_VERSION},
  "title": "Story title using the children's names",
  "part1": "Setup - introduce the characters and the situation...",
  "part2": "Climax - the main adventure, about twice the length of the other parts...",
  "part3": "Resolution - everything is resolved with a cozy, sleepy ending...",
  "characterDescriptions": "EXACT physical descriptions for consistent illustration, using only provided attributes",
  "imagePrompt1": "First scene referencing the exact character descriptions...",
  "imagePrompt2": "Second scene referencing the exact character descriptions...",
  "imagePrompt3": "Third scene referencing the exact character descriptions..."
}}"""


def build_story_request_line(context: FamilyContext, request: GenerationRequest) -> str:
    audience = join_names(context.kid_names) or "a little dreamer"
    featuring = f" featuring {', '.join(context.character_names)}" if context.character_names else ""
    return f"Create a {request.tone.value} bedtime story for {audience}{featuring}."


def build_story_prompt(context: FamilyContext, request: GenerationRequest) -> str:
    """Build the single-shot prompt for stateless generation"""
    details = build_character_details(context)
    tone_desc = TONE_GUIDANCE.get(request.tone, "warm and calming")

    sections = [
        build_story_request_line(context, request),
        f"Story idea: {request.story_idea}\nTone: {request.tone.value} - {tone_desc}",
    ]
    if details:
        sections.append(details)
    sections.append(
        "Please create a 3-part story:\n"
        "1. Setup - Introduce the characters and the initial situation\n"
        "2. Climax - The main adventure or challenge (the longest part)\n"
        "3. Resolution - How everything is resolved with a cozy ending\n\n"
        "Each part must be non-empty, suitable for children and appropriate for bedtime."
    )
    sections.append(CONSISTENCY_RULES)
    sections.append(response_contract())
    return "\n\n".join(sections)


class StoryGeneratorService:
    """Single request/response story generation"""

    def __init__(self, client: Optional[openai.AsyncOpenAI] = None):
        self._client = client

    @property
    def client(self) -> openai.AsyncOpenAI:
        # Built on first use so the app starts without a key
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    async def generate_story(self, context: FamilyContext, request: GenerationRequest) -> Narrative:
        """Generate a 3-part story with chat completions"""
        prompt = build_story_prompt(context, request)
        logger.info(f"🤖 Calling {settings.STORY_MODEL} (prompt length {len(prompt)})")

        start_time = time.time()
        try:
            response = await self.client.chat.completions.create(
                model=settings.STORY_MODEL,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt}
                ],
                response_format={"type": "json_object"},
                temperature=0.8,
                max_tokens=2000
            )
        except openai.OpenAIError as e:
            raise NarrativeGenerationFailed(f"Failed to generate story: {e}")

        logger.info(f"✅ Story text generated in {time.time() - start_time:.2f} seconds")

        if not response.choices:
            raise NarrativeGenerationFailed("Model returned no choices", reason="narrative_malformed")
        return parse_narrative(response.choices[0].message.content)


# Global instance
story_generator = StoryGeneratorService()

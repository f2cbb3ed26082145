"""
Stateful story generation with the OpenAI Assistants API

Each account owns one conversation thread on a shared storytelling
assistant, so later stories can build on earlier ones. A single turn moves
through RunState: message queued, run in progress, optionally a tool call
for illustrations, then completed or failed.
"""
import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import openai
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    AssistantRunFailed,
    ConversationStateInvalid,
    IllustrationFailed,
    NarrativeGenerationFailed,
    ProviderTimeout,
)
from app.models.database_models import User
from app.models.story import (
    STORY_PART_COUNT,
    FamilyContext,
    GenerationRequest,
    Narrative,
    flatten_character_descriptions,
    parse_narrative,
)
from app.services.family_context import kid_attribute_phrases
from app.services.image_generator import ImageGeneratorService, image_generator as default_image_generator
from app.services.story_generator import (
    CONSISTENCY_RULES,
    build_character_details,
    build_story_request_line,
    response_contract,
)

logger = logging.getLogger(__name__)

IMAGE_TOOL_NAME = "generate_story_images"

ACTIVE_RUN_STATUSES = {"queued", "in_progress", "requires_action", "cancelling"}
FAILED_RUN_STATUSES = {"failed", "cancelled", "expired", "incomplete"}

# Values that clients and old rows have stored in place of a real id
PLACEHOLDER_IDS = {"", "undefined", "null", "none"}


class RunState(str, Enum):
    IDLE = "idle"
    MESSAGE_QUEUED = "message_queued"
    RUN_IN_PROGRESS = "run_in_progress"
    RUN_REQUIRES_ACTION = "run_requires_action"
    TOOL_OUTPUT_SUBMITTED = "tool_output_submitted"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"


ASSISTANT_INSTRUCTIONS = f"""You are a magical bedtime story companion for families. You create personalized, engaging bedtime stories that grow with each family over time.

## Your Personality
- Warm, creative and understanding of children's needs
- Remember everything about each family's kids, characters and preferences
- Build continuity across stories: reference past adventures and family memories when it helps

## Story Creation Guidelines
- Create 3-part stories (Setup, Climax, Resolution); the climax is about twice the length of the other parts
- Every part must be non-empty and suitable for one bedtime reading
- Match the requested tone

{CONSISTENCY_RULES}

## Response Format
{response_contract()}

After writing the story, call the {IMAGE_TOOL_NAME} function with the title, the character descriptions and the three image prompts."""


IMAGE_TOOL = {
    "type": "function",
    "function": {
        "name": IMAGE_TOOL_NAME,
        "description": "Generate illustrations for a children's bedtime story",
        "parameters": {
            "type": "object",
            "properties": {
                "story_title": {
                    "type": "string",
                    "description": "The title of the story"
                },
                "character_descriptions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "name": {"type": "string"},
                            "description": {"type": "string"}
                        }
                    },
                    "description": "Physical descriptions of characters for consistent illustrations"
                },
                "image_prompts": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Three detailed image prompts, one for each part of the story"
                }
            },
            "required": ["story_title", "character_descriptions", "image_prompts"]
        }
    }
}


def is_valid_identifier(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() not in PLACEHOLDER_IDS


@dataclass
class ConversationContext:
    assistant_id: str
    thread_id: str
    is_new: bool = False


@dataclass
class AssistantStory:
    """Result of one assistant turn"""
    narrative: Narrative
    run_id: str
    message_id: Optional[str] = None
    image_urls: List[Optional[str]] = field(default_factory=lambda: [None] * STORY_PART_COUNT)
    # True once the image tool ran, even if every slot came back empty
    images_attempted: bool = False


@dataclass
class _Turn:
    thread_id: str
    owner_id: str
    state: RunState = RunState.IDLE
    run_status: Optional[str] = None
    image_urls: List[Optional[str]] = field(default_factory=lambda: [None] * STORY_PART_COUNT)
    images_attempted: bool = False
    answered_calls: set = field(default_factory=set)

    def advance(self, state: RunState):
        logger.debug(f"Thread {self.thread_id}: {self.state.value} -> {state.value}")
        self.state = state


def build_roster_message(roster: FamilyContext) -> str:
    """First message on a new thread, introducing the whole family"""
    children = []
    for kid in roster.kids:
        personality = f" - {kid.description}" if kid.description else ""
        children.append(f"- {kid.name}: {', '.join(kid_attribute_phrases(kid))}{personality}")
    companions = [
        f"- {c.name}: {c.description}" if c.description else f"- {c.name}"
        for c in roster.characters
    ]

    return (
        "Hello! I'm excited to start creating bedtime stories for this family. "
        "Here is who they are. ONLY use the physical attributes listed here.\n\n"
        "## Children:\n" + ("\n".join(children) or "No children details provided") + "\n\n"
        "## Story Characters:\n" + ("\n".join(companions) or "No additional characters")
    )


def build_turn_message(context: FamilyContext, request: GenerationRequest, is_first_turn: bool) -> str:
    sections = []
    if is_first_turn:
        sections.append("Now please write the first story.")
    sections.append(build_story_request_line(context, request))
    sections.append(f"Story idea: {request.story_idea}")

    details = build_character_details(context)
    if details:
        sections.append(details)
    if not is_first_turn:
        sections.append(
            "Remember everything you know about this family and build on previous stories when it makes sense!"
        )
    return "\n\n".join(sections)


def _pending_tool_calls(run, turn: _Turn) -> list:
    """Tool calls on a requires_action run that this turn has not answered yet"""
    action = getattr(run, "required_action", None)
    if action is None or action.type != "submit_tool_outputs":
        return []
    return [c for c in action.submit_tool_outputs.tool_calls if c.id not in turn.answered_calls]


class AssistantStoryService:
    """Drives one conversation turn per story on the account's thread"""

    def __init__(
        self,
        client: Optional[openai.AsyncOpenAI] = None,
        image_service: Optional[ImageGeneratorService] = None,
        poll_interval: Optional[float] = None,
        run_timeout: Optional[float] = None
    ):
        self._client = client
        self.image_service = image_service or default_image_generator
        self.poll_interval = settings.RUN_POLL_INTERVAL if poll_interval is None else poll_interval
        run_timeout = settings.RUN_TIMEOUT if run_timeout is None else run_timeout
        # Polling is bounded by attempts, so time spent in the image tool does not count
        if self.poll_interval > 0:
            self.max_polls = max(1, math.ceil(run_timeout / self.poll_interval))
        else:
            self.max_polls = max(1, int(run_timeout))
        self._assistant_id: Optional[str] = settings.ASSISTANT_ID
        self._assistant_lock = asyncio.Lock()

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._client

    async def get_or_create_assistant(self) -> str:
        """Shared storytelling assistant, looked up by name once per process"""
        if is_valid_identifier(self._assistant_id):
            return self._assistant_id

        async with self._assistant_lock:
            if is_valid_identifier(self._assistant_id):
                return self._assistant_id

            assistants = await self.client.beta.assistants.list(limit=100)
            assistant = next((a for a in assistants.data if a.name == settings.ASSISTANT_NAME), None)
            if assistant is None:
                logger.info(f"🧚 Creating storytelling assistant '{settings.ASSISTANT_NAME}'")
                assistant = await self.client.beta.assistants.create(
                    name=settings.ASSISTANT_NAME,
                    instructions=ASSISTANT_INSTRUCTIONS,
                    model=settings.STORY_MODEL,
                    tools=[IMAGE_TOOL]
                )
            self._assistant_id = assistant.id
            return self._assistant_id

    @staticmethod
    def validate_conversation(user: User) -> ConversationContext:
        """Stored ids as a context, or ConversationStateInvalid when unusable"""
        if is_valid_identifier(user.assistant_id) and is_valid_identifier(user.thread_id):
            return ConversationContext(assistant_id=user.assistant_id, thread_id=user.thread_id)
        raise ConversationStateInvalid(
            f"Account {user.id} has no usable conversation "
            f"(assistant_id={user.assistant_id!r}, thread_id={user.thread_id!r})"
        )

    async def ensure_conversation(self, db: Session, user: User) -> ConversationContext:
        """Reuse the account's thread, or start a new one and persist both ids"""
        try:
            return self.validate_conversation(user)
        except ConversationStateInvalid as e:
            if user.assistant_id or user.thread_id:
                logger.warning(f"{e.message}; re-initializing")

        try:
            assistant_id = await self.get_or_create_assistant()
            thread = await self.client.beta.threads.create()
        except openai.OpenAIError as e:
            raise AssistantRunFailed(f"Failed to initialize storytelling assistant: {e}")

        user.assistant_id = assistant_id
        user.thread_id = thread.id
        db.commit()
        logger.info(f"🧵 Started conversation thread {thread.id} for account {user.id}")
        return ConversationContext(assistant_id=assistant_id, thread_id=thread.id, is_new=True)

    async def generate_story(
        self,
        conversation: ConversationContext,
        context: FamilyContext,
        request: GenerationRequest,
        owner_id: str,
        roster: Optional[FamilyContext] = None
    ) -> AssistantStory:
        """Run one story turn on the conversation thread"""
        turn = _Turn(thread_id=conversation.thread_id, owner_id=owner_id)
        run = None
        try:
            await self._wait_for_active_run(conversation.thread_id)

            if conversation.is_new and roster is not None:
                await self.client.beta.threads.messages.create(
                    thread_id=conversation.thread_id,
                    role="user",
                    content=build_roster_message(roster)
                )

            await self.client.beta.threads.messages.create(
                thread_id=conversation.thread_id,
                role="user",
                content=build_turn_message(context, request, conversation.is_new)
            )
            turn.advance(RunState.MESSAGE_QUEUED)

            run = await self.client.beta.threads.runs.create(
                thread_id=conversation.thread_id,
                assistant_id=conversation.assistant_id
            )
            turn.run_status = run.status
            turn.advance(RunState.RUN_IN_PROGRESS)
            logger.info(f"🏃 Started run {run.id} on thread {conversation.thread_id}")

            await self._run_until_complete(run, turn)
            narrative, message_id = await self._read_reply(conversation.thread_id, run.id)
        except Exception as e:
            # A run left active blocks every later turn on this thread
            if run is not None and turn.run_status in ACTIVE_RUN_STATUSES - {"cancelling"}:
                await self._cancel_run(run.id, conversation.thread_id)
            orphaned = [url for url in turn.image_urls if url]
            if orphaned:
                logger.warning(f"Discarding illustrations from failed turn on {conversation.thread_id}: {orphaned}")
            if isinstance(e, openai.OpenAIError):
                turn.advance(RunState.RUN_FAILED)
                raise AssistantRunFailed(f"Assistant request failed: {e}")
            raise

        return AssistantStory(
            narrative=narrative,
            run_id=run.id,
            message_id=message_id,
            image_urls=turn.image_urls,
            images_attempted=turn.images_attempted,
        )

    async def add_context_to_thread(self, conversation: ConversationContext, context: str):
        """Tell the assistant something about the family outside a story turn"""
        try:
            await self.client.beta.threads.messages.create(
                thread_id=conversation.thread_id,
                role="user",
                content=f"Context update: {context}"
            )
        except openai.OpenAIError as e:
            raise AssistantRunFailed(f"Failed to add context to thread: {e}")
        logger.info(f"Added context to thread {conversation.thread_id}")

    async def _wait_for_active_run(self, thread_id: str):
        """Block until no earlier run is active; a thread accepts one run at a time"""
        runs = await self.client.beta.threads.runs.list(thread_id=thread_id, limit=1)
        if not runs.data or runs.data[0].status not in ACTIVE_RUN_STATUSES:
            return

        run = runs.data[0]
        logger.info(f"⏳ Waiting for active run {run.id} ({run.status}) on thread {thread_id}")
        for _ in range(self.max_polls):
            await asyncio.sleep(self.poll_interval)
            run = await self.client.beta.threads.runs.retrieve(run.id, thread_id=thread_id)
            if run.status not in ACTIVE_RUN_STATUSES:
                logger.info(f"Previous run {run.id} finished with status {run.status}")
                return
        raise ProviderTimeout(f"Thread {thread_id} still busy with run {run.id}")

    async def _cancel_run(self, run_id: str, thread_id: str):
        try:
            await self.client.beta.threads.runs.cancel(run_id, thread_id=thread_id)
            logger.info(f"🛑 Cancelled run {run_id} on thread {thread_id}")
        except openai.OpenAIError as e:
            logger.warning(f"Could not cancel run {run_id} on thread {thread_id}: {e}")

    async def _run_until_complete(self, run, turn: _Turn):
        polls = 0
        while True:
            turn.run_status = run.status
            if run.status == "completed":
                turn.advance(RunState.RUN_COMPLETED)
                return run

            if run.status in FAILED_RUN_STATUSES:
                turn.advance(RunState.RUN_FAILED)
                error = getattr(run, "last_error", None)
                detail = f": {error.message}" if error is not None and getattr(error, "message", None) else ""
                raise AssistantRunFailed(f"Assistant run {run.id} ended with status {run.status}{detail}")

            if run.status == "requires_action" and _pending_tool_calls(run, turn):
                turn.advance(RunState.RUN_REQUIRES_ACTION)
                run = await self._handle_required_action(run, turn)
                continue

            if polls >= self.max_polls:
                turn.advance(RunState.RUN_FAILED)
                raise ProviderTimeout(f"Assistant run {run.id} still {run.status} after {polls} polls")

            await asyncio.sleep(self.poll_interval)
            polls += 1
            run = await self.client.beta.threads.runs.retrieve(run.id, thread_id=turn.thread_id)
            if run.status in ("queued", "in_progress"):
                turn.advance(RunState.RUN_IN_PROGRESS)

    async def _handle_required_action(self, run, turn: _Turn):
        """Answer tool calls; the image tool produces the story illustrations"""
        tool_outputs = []
        for tool_call in _pending_tool_calls(run, turn):
            turn.answered_calls.add(tool_call.id)
            if tool_call.function.name != IMAGE_TOOL_NAME:
                logger.warning(f"Assistant requested unknown tool {tool_call.function.name}")
                tool_outputs.append({
                    "tool_call_id": tool_call.id,
                    "output": json.dumps({"success": False, "error": "unknown tool"})
                })
                continue

            tool_outputs.append({
                "tool_call_id": tool_call.id,
                "output": json.dumps(await self._generate_tool_images(tool_call.function.arguments, turn))
            })

        run = await self.client.beta.threads.runs.submit_tool_outputs(
            run.id,
            thread_id=turn.thread_id,
            tool_outputs=tool_outputs
        )
        turn.advance(RunState.TOOL_OUTPUT_SUBMITTED)
        return run

    async def _generate_tool_images(self, arguments: str, turn: _Turn) -> dict:
        try:
            args = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            args = {}
        if not isinstance(args, dict):
            args = {}

        turn.images_attempted = True
        try:
            image_urls = await self.image_service.generate_images(
                args.get("image_prompts") or [],
                flatten_character_descriptions(args.get("character_descriptions")),
                turn.owner_id
            )
        except IllustrationFailed as e:
            logger.warning(f"Illustration tool call failed: {e.message}")
            return {"success": False, "error": e.message}

        turn.image_urls = image_urls
        return {"success": True, "image_urls": image_urls, "message": "Images generated successfully"}

    async def _read_reply(self, thread_id: str, run_id: str):
        messages = await self.client.beta.threads.messages.list(thread_id=thread_id, run_id=run_id)
        replies = [m for m in messages.data if m.role == "assistant"]
        if not replies:
            raise NarrativeGenerationFailed("No response from assistant", reason="narrative_malformed")

        # Newest first; the story may precede a short closing remark
        error = None
        for reply in replies:
            text = "".join(block.text.value for block in reply.content if block.type == "text")
            try:
                return parse_narrative(text), reply.id
            except NarrativeGenerationFailed as e:
                error = error or e
        raise error


# Global instance
assistant_service = AssistantStoryService()

"""
Stateful generation through the Assistants API, against a fake client.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.core.errors import AssistantRunFailed, ConversationStateInvalid, NarrativeGenerationFailed, ProviderTimeout
from app.models.story import FamilyContext, FamilyMember, GenerationRequest
from app.services.assistant_service import (
    AssistantStoryService,
    ConversationContext,
    is_valid_identifier,
)
from conftest import assistant_reply, fake_assistants_client, image_tool_call, make_run, make_user, narrative_json

CONTEXT = FamilyContext(kids=[FamilyMember(id=1, name="Mia", age=6)])
REQUEST = GenerationRequest(kid_ids=[1], story_idea="a trip to the moon")
CONVERSATION = ConversationContext(assistant_id="asst_1", thread_id="thread_1")


def make_service(client, image_urls=None):
    images = SimpleNamespace(generate_images=AsyncMock(return_value=image_urls or ["/a.png", "/b.png", "/c.png"]))
    return AssistantStoryService(client=client, image_service=images, poll_interval=0, run_timeout=5)


class TestIdentifiers:
    @pytest.mark.parametrize("value", [None, "", "undefined", "null", "None", "  "])
    def test_placeholders_are_absent(self, value):
        assert not is_valid_identifier(value)

    def test_real_id(self):
        assert is_valid_identifier("thread_abc123")


class TestConversation:
    async def test_first_call_creates_and_persists(self, db):
        user = make_user(db)
        client = fake_assistants_client()
        service = make_service(client)

        conversation = await service.ensure_conversation(db, user)

        assert conversation.is_new
        assert (conversation.assistant_id, conversation.thread_id) == ("asst_1", "thread_1")
        db.refresh(user)
        assert (user.assistant_id, user.thread_id) == ("asst_1", "thread_1")
        client.beta.assistants.create.assert_awaited_once()

    async def test_existing_conversation_is_reused(self, db):
        user = make_user(db, assistant_id="asst_9", thread_id="thread_9")
        client = fake_assistants_client()

        conversation = await make_service(client).ensure_conversation(db, user)

        assert not conversation.is_new
        assert conversation.thread_id == "thread_9"
        client.beta.threads.create.assert_not_awaited()

    @pytest.mark.parametrize("assistant_id,thread_id", [
        ("asst_9", None),
        (None, "thread_9"),
        ("undefined", "null"),
    ])
    async def test_half_initialized_state_is_rebuilt(self, db, assistant_id, thread_id):
        user = make_user(db, assistant_id=assistant_id, thread_id=thread_id)
        client = fake_assistants_client()

        conversation = await make_service(client).ensure_conversation(db, user)

        assert conversation.is_new
        db.refresh(user)
        assert (user.assistant_id, user.thread_id) == ("asst_1", "thread_1")

    def test_validate_conversation_raises_for_missing_ids(self, db):
        user = make_user(db)
        with pytest.raises(ConversationStateInvalid):
            AssistantStoryService.validate_conversation(user)

    async def test_assistant_lookup_runs_once(self):
        client = fake_assistants_client()
        client.beta.assistants.list.return_value = SimpleNamespace(
            data=[SimpleNamespace(id="asst_existing", name="Dreamlets Storytelling Companion")]
        )
        service = make_service(client)

        assert await service.get_or_create_assistant() == "asst_existing"
        assert await service.get_or_create_assistant() == "asst_existing"
        client.beta.assistants.list.assert_awaited_once()
        client.beta.assistants.create.assert_not_awaited()


class TestGenerateStory:
    async def test_completed_run_returns_narrative(self):
        client = fake_assistants_client(retrieve_statuses=("in_progress", "completed"))
        result = await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        assert len(result.narrative.parts) == 3
        assert (result.run_id, result.message_id) == ("run_1", "msg_1")
        assert not result.images_attempted
        assert result.image_urls == [None, None, None]
        client.beta.threads.messages.create.assert_awaited_once()

    async def test_tool_call_generates_images(self):
        requires_action = make_run("requires_action", tool_calls=[image_tool_call()])
        client = fake_assistants_client(retrieve_statuses=(requires_action, "in_progress", "completed"))
        service = make_service(client)

        result = await service.generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        assert result.images_attempted
        assert result.image_urls == ["/a.png", "/b.png", "/c.png"]
        prompts, descriptions, owner = service.image_service.generate_images.await_args.args
        assert prompts == ["scene one", "scene two", "scene three"]
        assert descriptions == "Mia: a 6 year old girl in star pajamas"
        assert owner == "u1"

        submitted = client.beta.threads.runs.submit_tool_outputs.await_args.kwargs["tool_outputs"]
        assert submitted[0]["tool_call_id"] == "call_1"
        assert json.loads(submitted[0]["output"])["success"] is True

    async def test_tool_call_is_answered_once(self):
        requires_action = make_run("requires_action", tool_calls=[image_tool_call()])
        client = fake_assistants_client(retrieve_statuses=(requires_action, requires_action, "completed"))

        await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        client.beta.threads.runs.submit_tool_outputs.assert_awaited_once()

    async def test_unknown_tool_gets_error_output(self):
        unknown = SimpleNamespace(
            id="call_x", type="function", function=SimpleNamespace(name="play_music", arguments="{}")
        )
        requires_action = make_run("requires_action", tool_calls=[unknown])
        client = fake_assistants_client(retrieve_statuses=(requires_action, "completed"))

        result = await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        output = client.beta.threads.runs.submit_tool_outputs.await_args.kwargs["tool_outputs"][0]
        assert json.loads(output["output"])["success"] is False
        assert not result.images_attempted

    @pytest.mark.parametrize("status", ["failed", "cancelled", "expired", "incomplete"])
    async def test_terminal_failure(self, status):
        client = fake_assistants_client(retrieve_statuses=(status,))
        with pytest.raises(AssistantRunFailed):
            await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

    async def test_run_that_never_finishes_times_out(self):
        client = fake_assistants_client(retrieve_statuses=("in_progress",))
        with pytest.raises(ProviderTimeout) as exc_info:
            await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")
        assert exc_info.value.status_code == 504

    async def test_timed_out_run_is_cancelled(self):
        client = fake_assistants_client(retrieve_statuses=("in_progress",))
        with pytest.raises(ProviderTimeout):
            await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        client.beta.threads.runs.cancel.assert_awaited_once_with("run_1", thread_id="thread_1")

    async def test_run_broken_mid_turn_is_cancelled(self):
        requires_action = make_run("requires_action", tool_calls=[image_tool_call()])
        client = fake_assistants_client(retrieve_statuses=(requires_action,))
        client.beta.threads.runs.submit_tool_outputs.side_effect = RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        client.beta.threads.runs.cancel.assert_awaited_once()

    async def test_failed_turn_logs_discarded_illustrations(self, caplog):
        requires_action = make_run("requires_action", tool_calls=[image_tool_call()])
        client = fake_assistants_client(retrieve_statuses=(requires_action, "completed"), reply="not json")

        with caplog.at_level("WARNING", logger="app.services.assistant_service"):
            with pytest.raises(NarrativeGenerationFailed):
                await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        assert "/a.png" in caplog.text
        assert "/c.png" in caplog.text

    async def test_finished_runs_are_not_cancelled(self):
        failed = fake_assistants_client(retrieve_statuses=("failed",))
        with pytest.raises(AssistantRunFailed):
            await make_service(failed).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        completed = fake_assistants_client(reply="Once upon a time...")
        with pytest.raises(NarrativeGenerationFailed):
            await make_service(completed).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        failed.beta.threads.runs.cancel.assert_not_awaited()
        completed.beta.threads.runs.cancel.assert_not_awaited()

    async def test_malformed_tool_arguments_still_answered(self):
        call = image_tool_call()
        call.function.arguments = json.dumps(["not", "an", "object"])
        requires_action = make_run("requires_action", tool_calls=[call])
        client = fake_assistants_client(retrieve_statuses=(requires_action, "completed"))
        service = make_service(client)

        await service.generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        prompts, _, _ = service.image_service.generate_images.await_args.args
        assert prompts == []
        client.beta.threads.runs.submit_tool_outputs.assert_awaited_once()

    async def test_story_found_behind_closing_remark(self):
        client = fake_assistants_client()
        closing = assistant_reply("Sweet dreams!", message_id="msg_2").data[0]
        story = assistant_reply(narrative_json(), message_id="msg_1").data[0]
        client.beta.threads.messages.list.return_value = SimpleNamespace(data=[closing, story])

        result = await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        assert result.message_id == "msg_1"
        assert result.narrative.title == "Mia and the Moon Picnic"

    async def test_waits_for_active_run_first(self):
        client = fake_assistants_client(
            retrieve_statuses=(make_run("completed", run_id="run_old"), "completed"),
            active_runs=[make_run("in_progress", run_id="run_old")],
        )
        await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

        first_retrieve = client.beta.threads.runs.retrieve.await_args_list[0]
        assert first_retrieve.args[0] == "run_old"
        client.beta.threads.runs.create.assert_awaited_once()

    async def test_first_turn_introduces_roster(self):
        client = fake_assistants_client()
        roster = FamilyContext(kids=[
            FamilyMember(id=1, name="Mia", age=6),
            FamilyMember(id=2, name="Leo", age=4),
        ])
        conversation = ConversationContext(assistant_id="asst_1", thread_id="thread_1", is_new=True)

        await make_service(client).generate_story(conversation, CONTEXT, REQUEST, "u1", roster=roster)

        contents = [call.kwargs["content"] for call in client.beta.threads.messages.create.await_args_list]
        assert len(contents) == 2
        assert "Leo" in contents[0]
        assert "a trip to the moon" in contents[1]

    async def test_unparseable_reply(self):
        client = fake_assistants_client(reply="Once upon a time...")
        with pytest.raises(NarrativeGenerationFailed):
            await make_service(client).generate_story(CONVERSATION, CONTEXT, REQUEST, "u1")

    async def test_add_context_to_thread(self):
        client = fake_assistants_client()
        await make_service(client).add_context_to_thread(CONVERSATION, "Mia now has a puppy")
        kwargs = client.beta.threads.messages.create.await_args.kwargs
        assert kwargs["thread_id"] == "thread_1"
        assert kwargs["content"] == "Context update: Mia now has a puppy"

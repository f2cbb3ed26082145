"""
Shared fixtures: in-memory database, fake OpenAI clients, test images.

No test talks to OpenAI, S3 or the network.
"""
import base64
import io
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.database import Base, create_tables
from app.models.database_models import SubscriptionTier, User
from app.services.image_generator import ImageGeneratorService
from app.services.storage_service import StorageService


# ── Database ──────────────────────────────────────────────────────────────────


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def make_user(db, tier=SubscriptionTier.FREE, stories_this_month=0, **kwargs):
    user = User(
        email=kwargs.pop("email", "parent@example.com"),
        first_name="Sam",
        subscription_tier=tier,
        stories_this_month=stories_this_month,
        monthly_reset_date=kwargs.pop("monthly_reset_date", datetime.now(timezone.utc)),
        **kwargs,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep local env files from leaking into tests"""
    monkeypatch.setattr(settings, "ASSISTANT_ID", None)
    monkeypatch.setattr(settings, "AWS_S3_BUCKET", None)
    monkeypatch.setattr(settings, "STORAGE_DIR", str(tmp_path / "stories"))
    monkeypatch.setattr(settings, "GUEST_STORY_LIMIT", 3)
    monkeypatch.setattr(settings, "GUEST_STORY_WINDOW_DAYS", 30)
    monkeypatch.setattr(settings, "FREE_STORIES_PER_MONTH", 3)
    monkeypatch.setattr(settings, "PREMIUM_15_STORIES_PER_MONTH", 15)


# ── Narratives ────────────────────────────────────────────────────────────────


def narrative_payload(**overrides):
    payload = {
        "schemaVersion": 1,
        "title": "Mia and the Moon Picnic",
        "part1": "Mia packed a tiny basket and looked up at the moon.",
        "part2": "A silver ladder unrolled from the sky and Mia climbed all the way up to a picnic among the stars.",
        "part3": "Back in bed, Mia yawned and the moon winked goodnight.",
        "characterDescriptions": "Mia: a 6 year old girl in star pajamas",
        "imagePrompt1": "Mia at her window looking at the moon",
        "imagePrompt2": "Mia having a picnic on the moon",
        "imagePrompt3": "Mia asleep while the moon glows outside",
    }
    payload.update(overrides)
    return payload


def narrative_json(**overrides) -> str:
    return json.dumps(narrative_payload(**overrides))


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_chat_client(content=None, side_effect=None):
    create = AsyncMock(return_value=completion(content if content is not None else narrative_json()))
    if side_effect is not None:
        create.side_effect = side_effect
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


# ── Images ────────────────────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(255, 200, 0)).save(buffer, format="PNG")
    return buffer.getvalue()


def image_response(data: bytes):
    return SimpleNamespace(data=[SimpleNamespace(b64_json=base64.b64encode(data).decode(), url=None)])


def fake_image_client(png_bytes, fail_on=()):
    """images.generate that fails for the prompts containing any of fail_on"""
    async def generate(**kwargs):
        if any(marker in kwargs["prompt"] for marker in fail_on):
            raise RuntimeError("content policy violation")
        return image_response(png_bytes)

    return SimpleNamespace(images=SimpleNamespace(generate=AsyncMock(side_effect=generate)))


@pytest.fixture
def storage(tmp_path):
    service = StorageService(base_dir=str(tmp_path / "stories"), public_prefix="/static/stories")
    service.s3_client = None
    return service


@pytest.fixture
def image_service(png_bytes, storage):
    return ImageGeneratorService(client=fake_image_client(png_bytes), storage=storage, api_key="sk-test")


# ── Assistants API ────────────────────────────────────────────────────────────


def make_run(status, run_id="run_1", tool_calls=None):
    required_action = None
    if tool_calls:
        required_action = SimpleNamespace(
            type="submit_tool_outputs",
            submit_tool_outputs=SimpleNamespace(tool_calls=tool_calls),
        )
    return SimpleNamespace(id=run_id, status=status, required_action=required_action, last_error=None)


def image_tool_call(call_id="call_1", prompts=None):
    arguments = {
        "story_title": "Mia and the Moon Picnic",
        "character_descriptions": [{"name": "Mia", "description": "a 6 year old girl in star pajamas"}],
        "image_prompts": prompts or ["scene one", "scene two", "scene three"],
    }
    return SimpleNamespace(
        id=call_id,
        type="function",
        function=SimpleNamespace(name="generate_story_images", arguments=json.dumps(arguments)),
    )


def assistant_reply(content, message_id="msg_1"):
    message = SimpleNamespace(
        id=message_id,
        role="assistant",
        content=[SimpleNamespace(type="text", text=SimpleNamespace(value=content))],
    )
    return SimpleNamespace(data=[message])


def fake_assistants_client(retrieve_statuses=("completed",), reply=None, active_runs=()):
    """
    Assistants API double. retrieve_statuses is consumed one per poll; the last
    status repeats once the sequence runs out.
    """
    statuses = list(retrieve_statuses)

    async def retrieve(run_id, thread_id=None):
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        if isinstance(status, SimpleNamespace):
            return status
        return make_run(status, run_id=run_id)

    runs = SimpleNamespace(
        list=AsyncMock(return_value=SimpleNamespace(data=list(active_runs))),
        create=AsyncMock(return_value=make_run("queued")),
        retrieve=AsyncMock(side_effect=retrieve),
        submit_tool_outputs=AsyncMock(return_value=make_run("queued")),
        cancel=AsyncMock(return_value=make_run("cancelling")),
    )
    messages = SimpleNamespace(
        create=AsyncMock(),
        list=AsyncMock(return_value=assistant_reply(reply if reply is not None else narrative_json())),
    )
    thread_ids = iter(f"thread_{n}" for n in range(1, 100))
    threads = SimpleNamespace(
        create=AsyncMock(side_effect=lambda: SimpleNamespace(id=next(thread_ids))),
        runs=runs,
        messages=messages,
    )
    assistants = SimpleNamespace(
        list=AsyncMock(return_value=SimpleNamespace(data=[])),
        create=AsyncMock(return_value=SimpleNamespace(id="asst_1", name=settings.ASSISTANT_NAME)),
    )
    return SimpleNamespace(beta=SimpleNamespace(assistants=assistants, threads=threads))

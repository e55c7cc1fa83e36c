"""Shared pytest fixtures for persona memory tests."""

from typing import Any, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from persona_memory import models  # noqa: F401  (registers tables)
from persona_memory.core.config import MemoryConfig, get_settings
from persona_memory.core.database import Base
from persona_memory.core.flags import get_flags
from persona_memory.models import Persona, Project
from persona_memory.orchestrator.state import add_message, get_or_create_conversation


class FakeLLM:
    """
    Scripted stand-in for services.llm.

    Replies are popped from per-method queues; an empty queue falls back to a
    default. Set `fail` (all calls) or `fail_json` (structured calls only) to
    simulate an unavailable completion service.
    """

    def __init__(self):
        self.replies: list[str] = []
        self.summaries: list[str] = []
        self.episodes: list[Any] = []
        self.facts: list[Any] = []
        self.fail = False
        self.fail_json = False
        self.calls: list[tuple[str, Any]] = []

    def _maybe_fail(self):
        if self.fail:
            raise httpx.ConnectError("completion service unavailable")

    async def chat_text(self, messages: list[dict], **kwargs) -> str:
        self.calls.append(("chat_text", messages))
        self._maybe_fail()
        return self.replies.pop(0) if self.replies else "Sounds good, let's keep going."

    async def chat_simple(self, prompt: str, system: str = "", **kwargs) -> str:
        self.calls.append(("chat_simple", prompt))
        self._maybe_fail()
        return self.summaries.pop(0) if self.summaries else "The user and coach discussed the plan."

    async def chat_json(self, prompt: str, system: str = "", **kwargs) -> Any:
        self.calls.append(("chat_json", prompt))
        self._maybe_fail()
        if self.fail_json:
            raise ValueError("Unparseable JSON response")
        if "Summarize this conversation episode" in prompt:
            if self.episodes:
                return self.episodes.pop(0)
            return {
                "topic": "Weekly planning",
                "summary": "The user planned the week and picked a first task.",
                "keyPoints": ["Picked a first task"],
                "decisions": [{"decision": "Start with the outline", "reasoning": "Smallest step"}],
                "emotions": "focused",
                "userState": "planning",
            }
        return self.facts.pop(0) if self.facts else {"facts": []}

    def calls_to(self, method: str) -> list:
        return [payload for name, payload in self.calls if name == method]


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """No Redis, no real API keys, fresh cached settings for every test."""
    monkeypatch.setenv("FF_USE_REDIS", "false")
    monkeypatch.setenv("FF_ENABLE_LONG_TERM_MEMORY", "true")
    monkeypatch.setenv("FF_LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.setenv("REDIS_URL", "")
    get_flags.cache_clear()
    get_settings.cache_clear()
    yield
    get_flags.cache_clear()
    get_settings.cache_clear()


@pytest.fixture
def config():
    return MemoryConfig()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def project(db):
    project = Project(user_id="user-1", title="Write the novel", description="First draft by spring")
    db.add(project)
    await db.flush()
    db.add(Persona(
        project_id=project.id,
        display_name="Coach Ada",
        system_prompt="You are Coach Ada, a warm and direct writing coach.",
    ))
    await db.flush()
    return project


@pytest.fixture
async def conversation(db, project):
    return await get_or_create_conversation(db, project.id, "user-1")


async def add_turns(db, convo, count: int, start: int = 1) -> list:
    """Append `count` alternating user/persona messages. Returns them in order."""
    messages = []
    for i in range(start, start + count):
        if i % 2:
            msg = await add_message(db, convo, sender_type="user", content=f"user message {i}", sender_id=convo.user_id)
        else:
            msg = await add_message(
                db, convo, sender_type="persona", content=f"persona reply {i}", sender_name="Coach Ada",
            )
        messages.append(msg)
    return messages


def fact(node_type: str, label: str, confidence: Optional[float] = 0.8, **extra) -> dict:
    item = {"nodeType": node_type, "label": label, "properties": {}, "confidence": confidence}
    item.update(extra)
    return item

"""Tests for Redis-backed memory notifications."""

import json

import pytest

from persona_memory.core import redis as core_redis
from persona_memory.core.config import get_settings
from persona_memory.core.flags import get_flags
from persona_memory.services import realtime


class FakeRedis:
    def __init__(self, fail=False):
        self.published = []
        self.fail = fail

    async def publish(self, channel, payload):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, json.loads(payload)))


@pytest.fixture
def redis_on(monkeypatch):
    monkeypatch.setenv("FF_USE_REDIS", "true")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    get_flags.cache_clear()
    get_settings.cache_clear()


def _install(monkeypatch, client):
    async def fake_get_redis():
        return client

    monkeypatch.setattr(core_redis, "_get_redis", fake_get_redis)


class TestRealtime:
    async def test_episode_event_goes_to_user_channel(self, redis_on, monkeypatch):
        client = FakeRedis()
        _install(monkeypatch, client)

        await realtime.episode_created("user-1", 7, 3)

        assert client.published == [(
            "user:user-1",
            {"type": "memory.episode_created", "data": {"episode_id": 7, "conversation_id": 3}},
        )]

    async def test_summary_event_goes_to_conversation_channel(self, redis_on, monkeypatch):
        client = FakeRedis()
        _install(monkeypatch, client)

        await realtime.summary_updated(3, 41)

        [(channel, event)] = client.published
        assert channel == "conversation:3"
        assert event["data"] == {"last_summarized_message_id": 41}

    async def test_flag_off_is_noop(self, monkeypatch):
        client = FakeRedis()
        _install(monkeypatch, client)

        await realtime.facts_extracted("user-1", 7, 2, 1)

        assert client.published == []

    async def test_publish_failure_is_swallowed(self, redis_on, monkeypatch, caplog):
        _install(monkeypatch, FakeRedis(fail=True))

        await realtime.chat_error(3, {"error": "boom"})

        assert "Redis publish failed" in caplog.text

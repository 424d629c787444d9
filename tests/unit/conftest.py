"""Unit test configuration and shared fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from dialog_migrator.core.config import (
    MigrationConfig,
    RateLimitSettings,
    RealtimeSyncSettings,
)
from dialog_migrator.services.memory_client import InMemoryClient
from dialog_migrator.services.rate_limiter import RateLimitConfig, RateLimiter
from dialog_migrator.types import ConversationInfo, DialogType, MessageInfo

BASE_DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_conversation(
    conversation_id: str = "c1",
    name: str = "",
    dialog_type: DialogType = DialogType.PRIVATE,
    message_count: int = 0,
) -> ConversationInfo:
    """Return a ConversationInfo with sensible defaults."""
    return ConversationInfo(
        id=conversation_id,
        name=name or f"Chat {conversation_id}",
        type=dialog_type,
        message_count=message_count,
    )


def make_messages(count: int, start_id: int = 1, hours_apart: int = 1) -> list[MessageInfo]:
    """Return ``count`` messages with consecutive ids, one every ``hours_apart`` hours."""
    return [
        MessageInfo(
            message_id=start_id + i,
            date=BASE_DATE + timedelta(hours=i * hours_apart),
        )
        for i in range(count)
    ]


def fast_rate_limit(**overrides: Any) -> RateLimitSettings:
    """Rate limit settings that never pace, so tests do not wait."""
    values: dict[str, Any] = {
        "batch_delay": 0.0,
        "min_batch_delay": 0.0,
        "max_batch_delay": 10.0,
        "max_requests_per_minute": 0,
    }
    values.update(overrides)
    return RateLimitSettings(**values)


def make_config(tmp_path: Path, **overrides: Any) -> MigrationConfig:
    """Return a MigrationConfig whose progress file lives under ``tmp_path``."""
    values: dict[str, Any] = {
        "source_account": "alice",
        "target_recipient": "bob",
        "progress_path": str(tmp_path / "progress.json"),
        "batch_size": 100,
        "rate_limit": fast_rate_limit(),
        "realtime_sync": RealtimeSyncSettings(),
    }
    values.update(overrides)
    return MigrationConfig(**values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def limiter(clock):
    """A non-pacing limiter driven by the fake clock."""
    return RateLimiter(
        RateLimitConfig(
            batch_delay=0.0,
            min_batch_delay=0.0,
            max_batch_delay=10.0,
            max_requests_per_minute=0,
        ),
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture()
def client():
    """An InMemoryClient that knows the ``bob`` recipient."""
    return InMemoryClient(entities={"bob": object()})


@pytest.fixture()
def config(tmp_path):
    """A default test configuration."""
    return make_config(tmp_path)


@pytest.fixture()
def conversation_factory():
    """Factory fixture: call with kwargs of ``make_conversation``."""
    return make_conversation


@pytest.fixture()
def messages_factory():
    """Factory fixture: call with kwargs of ``make_messages``."""
    return make_messages


@pytest.fixture()
def config_factory(tmp_path):
    """Factory fixture: call with MigrationConfig overrides."""

    def _factory(**overrides: Any) -> MigrationConfig:
        return make_config(tmp_path, **overrides)

    return _factory

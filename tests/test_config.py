"""Tests for settings and the configuration gate."""

import asyncio

import pytest

from chatmem.config import Settings
from chatmem.errors import NotPermitted, ValidationError
from chatmem.memory.gate import ConfigGate, FeatureFlags, MemoryConfig, Permission

# -- Settings ----------------------------------------------------------------


def test_settings_defaults() -> None:
    s = Settings()
    assert s.short_term_limit == 35
    assert s.session_timeout_seconds == 3600.0
    assert s.sweep_interval_seconds == 600.0
    assert s.memory_decision_threshold == 6.0
    assert s.duplicate_threshold == 0.9
    assert s.enable_auto_transfer is True
    assert s.enable_tool_driven_mode is False


def test_settings_init_values_win() -> None:
    s = Settings(short_term_limit=10, embedding_dimension=256)
    assert s.short_term_limit == 10
    assert s.embedding_dimension == 256


def test_config_from_settings() -> None:
    s = Settings(
        short_term_limit=12,
        session_timeout_seconds=90,
        owner_user_id="alice",
        enable_tool_driven_mode=True,
        enable_llm_summaries=True,
    )
    config = MemoryConfig.from_settings(s)
    assert config.short_term_limit == 12
    assert config.session_timeout == 90
    assert config.owner_user_id == "alice"
    assert config.features.tool_driven_mode is True
    assert config.features.llm_summaries is True


# -- MemoryConfig validation ---------------------------------------------------


@pytest.mark.parametrize(
    "changes",
    [
        {"short_term_limit": 0},
        {"session_timeout": 0},
        {"memory_decision_threshold": 11},
        {"memory_relevance_threshold": 1.5},
        {"duplicate_threshold": -0.1},
        {"max_relevant_memories": 0},
    ],
)
def test_config_rejects_out_of_range(changes: dict) -> None:
    with pytest.raises(ValueError):
        MemoryConfig(**changes)


def test_config_rejects_unknown_field() -> None:
    with pytest.raises(ValueError):
        MemoryConfig(no_such_setting=True)


def test_automatic_transfer_disabled_by_tool_driven_mode() -> None:
    assert MemoryConfig().automatic_transfer is True
    assert MemoryConfig(features=FeatureFlags(tool_driven_mode=True)).automatic_transfer is False
    assert MemoryConfig(features=FeatureFlags(auto_transfer=False)).automatic_transfer is False


# -- Permissions ---------------------------------------------------------------


async def test_check_allows_by_default() -> None:
    gate = ConfigGate()
    gate.check(Permission.SAVE)
    assert gate.allowed(Permission.DELETE)


async def test_check_raises_when_disabled() -> None:
    gate = ConfigGate()
    await gate.update({"permissions": {"allow_delete": False}})

    with pytest.raises(NotPermitted) as exc_info:
        gate.check(Permission.DELETE, "someone")
    assert exc_info.value.permission == "allow_delete"
    assert gate.allowed(Permission.SAVE, "someone")


async def test_owner_bypasses_disabled_permission() -> None:
    gate = ConfigGate(MemoryConfig(owner_user_id="owner"))
    await gate.update({"permissions": {"allow_save": False}})

    gate.check(Permission.SAVE, "owner")
    with pytest.raises(NotPermitted):
        gate.check(Permission.SAVE, "guest")


def test_empty_owner_is_nobody() -> None:
    gate = ConfigGate()
    assert gate.is_owner("") is False
    assert gate.is_owner(None) is False


# -- Updates -------------------------------------------------------------------


async def test_update_merges_nested_flags() -> None:
    gate = ConfigGate()
    config = await gate.update({"features": {"tool_driven_mode": True}})

    assert config.features.tool_driven_mode is True
    assert config.features.auto_transfer is True
    assert gate.config is config


async def test_invalid_update_leaves_config_untouched() -> None:
    gate = ConfigGate(MemoryConfig(short_term_limit=20))
    before = gate.config

    with pytest.raises(ValidationError):
        await gate.update({"short_term_limit": 50, "memory_decision_threshold": 42})

    assert gate.config is before
    assert gate.config.short_term_limit == 20


async def test_readers_keep_their_snapshot() -> None:
    gate = ConfigGate()
    snapshot = gate.config

    await asyncio.gather(
        gate.update({"short_term_limit": 10}),
        gate.update({"session_timeout": 30}),
    )

    assert snapshot.short_term_limit == 35
    assert gate.config.short_term_limit == 10
    assert gate.config.session_timeout == 30

"""Shared test fixtures."""

import pytest

from chatmem.config import Settings
from chatmem.engine import MemoryEngine
from chatmem.memory.gate import ConfigGate, MemoryConfig
from chatmem.memory.relationships import RelationshipMapper, RelationshipStore
from chatmem.memory.store import MemoryStore

OWNER_ID = "owner"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings pointing at a temporary database, with no retry delays."""
    return Settings(
        database_path=tmp_path / "test.db",
        embedding_dimension=64,
        embedding_backoff_seconds=0,
        store_backoff_seconds=0,
        owner_user_id=OWNER_ID,
    )


@pytest.fixture
def config() -> MemoryConfig:
    return MemoryConfig(short_term_limit=5, session_timeout=60, owner_user_id=OWNER_ID)


@pytest.fixture
def gate(config: MemoryConfig) -> ConfigGate:
    return ConfigGate(config)


@pytest.fixture
def store(tmp_path) -> MemoryStore:
    """An 8-dimensional store on a temporary database."""
    return MemoryStore(tmp_path / "test.db", 8, max_retries=1, backoff_seconds=0)


@pytest.fixture
def mapper(tmp_path, store: MemoryStore, gate: ConfigGate) -> RelationshipMapper:
    return RelationshipMapper(
        RelationshipStore(tmp_path / "test.db", max_retries=1, backoff_seconds=0), store, gate
    )


@pytest.fixture
def engine(test_settings: Settings, config: MemoryConfig, clock: FakeClock) -> MemoryEngine:
    """Engine with offline (hash-derived) embeddings and a fake clock."""
    return MemoryEngine(
        config,
        settings=test_settings,
        use_fallback_embeddings=True,
        bot_id="bot",
        clock=clock,
    )

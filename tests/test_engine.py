"""Tests for the MemoryEngine facade and its lifecycle."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatmem.context.models import ConversationMessage
from chatmem.engine import CONSOLIDATION_JOB_ID, SWEEP_JOB_ID, MemoryEngine
from chatmem.errors import NotPermitted, ValidationError
from chatmem.memory.gate import FeatureFlags, MemoryConfig
from chatmem.memory.models import MemoryOwner

ALICE = MemoryOwner(user_id="alice")


def _msg(text: str, author: str = "u1", **kwargs) -> ConversationMessage:
    return ConversationMessage(author_id=author, content=text, **kwargs)


def _vec(*values: float) -> list[float]:
    return [*values, *([0.0] * (64 - len(values)))]


async def _wait_for_background(engine: MemoryEngine) -> None:
    while engine.get_stats()["background_transfers"]:
        await asyncio.sleep(0.01)


# -- Lifecycle -----------------------------------------------------------------


async def test_init_schedules_sweep(engine: MemoryEngine) -> None:
    await engine.init()
    try:
        assert engine.running
        assert engine._scheduler.get_job(SWEEP_JOB_ID) is not None
        assert engine._scheduler.get_job(CONSOLIDATION_JOB_ID) is None
    finally:
        await engine.shutdown()
    assert not engine.running


async def test_init_schedules_consolidation_when_enabled(test_settings) -> None:
    engine = MemoryEngine(
        MemoryConfig(features=FeatureFlags(consolidation=True)),
        settings=test_settings,
        use_fallback_embeddings=True,
    )
    await engine.init()
    try:
        assert engine._scheduler.get_job(CONSOLIDATION_JOB_ID) is not None
    finally:
        await engine.shutdown()


async def test_shutdown_flushes_buffers(engine: MemoryEngine) -> None:
    await engine.init()
    await engine.append("user", "u1", _msg("I decided we will use Postgres for the research data"))

    await engine.shutdown()

    assert await engine.store.count() == 1


async def test_shutdown_without_flush(engine: MemoryEngine) -> None:
    await engine.append("user", "u1", _msg("I decided we will use Postgres for the research data"))

    await engine.shutdown(transfer_pending=False)

    assert await engine.store.count() == 0


async def test_shutdown_respects_tool_driven_mode(engine: MemoryEngine) -> None:
    await engine.update_config(features={"tool_driven_mode": True})
    await engine.append("user", "u1", _msg("I decided we will use Postgres for the research data"))

    await engine.shutdown()

    assert await engine.store.count() == 0


# -- Automatic transfers -------------------------------------------------------


async def test_overflow_schedules_background_transfer(engine: MemoryEngine) -> None:
    for i in range(6):
        text = f"I decided we will use Postgres for data, reason {i}"
        await engine.append("user", "u1", _msg(text))

    await _wait_for_background(engine)

    records = await engine.store.list_records()
    assert len(records) == 1
    assert records[0].metadata["trigger"] == "overflow"
    assert records[0].metadata["message_count"] == 5
    assert len(engine.get_history("user", "u1")) == 5


async def test_sweep_idle_transfers_and_evicts(engine: MemoryEngine, clock) -> None:
    await engine.append("user", "u1", _msg("I decided we will use Postgres for the research data"))
    clock.advance(61)

    evicted = await engine.sweep_idle()

    assert evicted == 1
    assert engine.get_stats()["active_contexts"] == 0
    records = await engine.store.list_records()
    assert [r.metadata["trigger"] for r in records] == ["idle"]


async def test_sweep_idle_never_raises(engine: MemoryEngine, monkeypatch) -> None:
    monkeypatch.setattr(
        engine.contexts, "sweep_idle", AsyncMock(side_effect=RuntimeError("boom"))
    )

    assert await engine.sweep_idle() == 0


# -- Search --------------------------------------------------------------------


async def test_find_similar_by_text_records_access(engine: MemoryEngine) -> None:
    saved = await engine.save_memory("Alice's cat is called Miso", owner=ALICE, importance=6)
    await engine.save_memory("The office moves to Berlin", owner=ALICE, importance=6)

    matches = await engine.find_similar("Alice's cat is called Miso", owner=ALICE, top_k=1)

    assert [m.record.id for m in matches] == [saved.record.id]
    assert matches[0].similarity == pytest.approx(1.0, abs=1e-5)
    assert (await engine.store.get(saved.record.id)).access_count == 1


async def test_find_similar_by_vector(engine: MemoryEngine) -> None:
    record = await engine.store.create_with_embedding("v", _vec(1.0), ALICE, importance=5)

    matches = await engine.find_similar(_vec(1.0, 0.1), owner=ALICE)

    assert matches[0].record.id == record.id


async def test_recall_applies_relevance_threshold(engine: MemoryEngine) -> None:
    saved = await engine.save_memory("Bob is allergic to peanuts", owner=ALICE, importance=9)

    hits = await engine.recall("Bob is allergic to peanuts", owner=ALICE)
    misses = await engine.recall("completely different question", owner=ALICE)

    assert [m.record.id for m in hits] == [saved.record.id]
    assert misses == []


async def test_search_requires_permission(engine: MemoryEngine) -> None:
    await engine.update_config(permissions={"allow_search": False})

    with pytest.raises(NotPermitted):
        await engine.recall("anything", actor_id="guest")
    assert await engine.recall("anything", actor_id="owner") == []


# -- Delete / consolidate / analytics ------------------------------------------


async def test_delete_memory_removes_edges(engine: MemoryEngine) -> None:
    a = await engine.store.create_with_embedding("a", _vec(1.0), ALICE, importance=5)
    b = await engine.store.create_with_embedding("b", _vec(0, 1.0), ALICE, importance=5)
    await engine.create_relationship(a.id, b.id, "causal", 0.8)

    assert await engine.delete_memory(a.id) is True
    assert await engine.find_related(b.id) == []
    assert await engine.delete_memory(a.id) is False


async def test_delete_requires_permission(engine: MemoryEngine) -> None:
    record = await engine.store.create_with_embedding("a", _vec(1.0), importance=5)
    await engine.update_config(permissions={"allow_delete": False})

    with pytest.raises(NotPermitted):
        await engine.delete_memory(record.id, actor_id="guest")
    assert await engine.store.get(record.id) is not None


async def test_consolidate_dry_run_then_apply(engine: MemoryEngine) -> None:
    primary = await engine.store.create_with_embedding("a", _vec(1.0, 0.02), ALICE, importance=8)
    dup = await engine.store.create_with_embedding("a!", _vec(1.0, 0.05), ALICE, importance=3)

    preview = await engine.consolidate(dry_run=True)
    assert [g.duplicate_ids for g in preview] == [[dup.id]]
    assert "consolidated_into" not in (await engine.store.get(dup.id)).metadata

    applied = await engine.consolidate()
    assert applied[0].primary.id == primary.id
    assert (await engine.store.get(dup.id)).metadata["consolidated_into"] == primary.id

    assert await engine.consolidate() == []


async def test_consolidate_threshold_range(engine: MemoryEngine) -> None:
    with pytest.raises(ValidationError):
        await engine.consolidate(threshold=0.3)


async def test_analytics_includes_relationships(engine: MemoryEngine) -> None:
    a = await engine.store.create_with_embedding("a", _vec(1.0), importance=9)
    b = await engine.store.create_with_embedding("b", _vec(0, 1.0), importance=2)
    await engine.create_relationship(a.id, b.id, "supportive", 0.6)

    report = await engine.analytics()

    assert report["total_memories"] == 2
    assert report["relationships"] == 1


# -- Config and stats ----------------------------------------------------------


async def test_update_config_applies_to_new_appends(engine: MemoryEngine) -> None:
    await engine.update_config(short_term_limit=2, features={"auto_transfer": False})
    for text in ("a", "b", "c"):
        await engine.append("user", "u1", _msg(text))

    assert [m.text for m in engine.get_history("user", "u1")] == ["b", "c"]


async def test_update_config_rejects_invalid(engine: MemoryEngine) -> None:
    with pytest.raises(ValidationError):
        await engine.update_config(short_term_limit=-1)
    assert engine.gate.config.short_term_limit == 5


async def test_get_stats(engine: MemoryEngine) -> None:
    await engine.append("user", "u1", _msg("a"))
    await engine.append("user", "u1", _msg("b"))
    await engine.append("channel", "c1", _msg("c"))

    stats = engine.get_stats()

    assert stats["active_contexts"] == 2
    assert stats["buffered_messages"] == 3
    assert stats["average_buffer_size"] == 1.5
    assert stats["in_flight_transfers"] == 0
    assert stats["running"] is False

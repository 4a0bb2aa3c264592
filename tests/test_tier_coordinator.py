from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dialogue_memory.errors import PersistenceError, StorageConstraintError  # noqa: E402
from dialogue_memory.memory.cold import ColdMemory  # noqa: E402
from dialogue_memory.memory.coordinator import TierCoordinator  # noqa: E402
from dialogue_memory.memory.hot import HotMemory  # noqa: E402
from dialogue_memory.memory.recall import ExpandHint  # noqa: E402
from dialogue_memory.memory.store import MemoryStore  # noqa: E402
from dialogue_memory.memory.types import ConversationTurn, MemoryTier  # noqa: E402
from dialogue_memory.memory.warm import WarmMemory  # noqa: E402


class _FlakyStore(MemoryStore):
    """Real SQLite store whose writes or tier reads can be switched off."""

    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.fail_writes = False
        self.fail_reads = False

    async def insert_turns(self, turns):  # type: ignore[no-untyped-def]
        if self.fail_writes:
            raise PersistenceError("disk unavailable")
        return await super().insert_turns(turns)

    async def get_recent_warm_turns(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        if self.fail_reads:
            raise PersistenceError("warm read failed")
        return await super().get_recent_warm_turns(*args, **kwargs)

    async def load_cold_entries(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        if self.fail_reads:
            raise PersistenceError("cold read failed")
        return await super().load_cold_entries(*args, **kwargs)


def _build(store: MemoryStore, *, turn_limit: int = 5, token_budget: int = 1500, context_budget: int = 8000):
    hot = HotMemory(turn_limit=turn_limit, token_budget=token_budget)
    coordinator = TierCoordinator(
        store,
        hot,
        WarmMemory(store),
        ColdMemory(store),
        context_token_budget=context_budget,
    )
    return coordinator, hot


def test_record_turn_persists_evicted_turn_as_warm_with_audit(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, hot = _build(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        turns = [
            ConversationTurn.create(
                session_id=session.id,
                user_id="u1",
                turn_number=n,
                user_message=f"message {n}",
                ai_response=f"reply {n}",
                user_tokens=300,
                ai_tokens=0,
            )
            for n in range(1, 7)
        ]
        evicted_sets = [await coordinator.record_turn(session.id, turn) for turn in turns]

        assert [len(item) for item in evicted_sets] == [0, 0, 0, 0, 0, 1]
        assert [turn.turn_number for turn in hot.load(session.id)] == [2, 3, 4, 5, 6]
        warm = await store.list_session_turns(session.id, tier=MemoryTier.WARM)
        assert [turn.id for turn in warm] == [turns[0].id]
        log = await store.list_transitions(turn_id=turns[0].id)
        assert [(item.from_tier, item.to_tier, item.reason) for item in log] == [
            (MemoryTier.HOT, MemoryTier.WARM, "hot_eviction")
        ]
        assert await store.count_session_turns(session.id, tier=MemoryTier.HOT) == 5

        with pytest.raises(ValueError):
            await coordinator.record_turn("another-session", turns[0])

    asyncio.run(scenario())


def test_record_exchange_numbers_turns_and_flags_identity(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, _ = _build(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        first = await coordinator.record_exchange(session.id, "u1", "hello there", "hi")
        second = await coordinator.record_exchange(session.id, "u1", "what's the weather like", "sunny")
        third = await coordinator.record_exchange(session.id, "u1", "My name is Taro and I live in Osaka", "nice")

        assert [first.turn_number, second.turn_number, third.turn_number] == [1, 2, 3]
        assert first.identity_critical is True
        assert second.identity_critical is False
        assert third.identity_critical is True
        assert first.user_tokens > 0 and first.ai_tokens > 0

    asyncio.run(scenario())


def test_failed_write_stays_queued_and_flushes_on_next_turn(tmp_path: Path) -> None:
    store = _FlakyStore(tmp_path / "memory.db")
    coordinator, hot = _build(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")

        store.fail_writes = True
        with pytest.raises(PersistenceError):
            await coordinator.record_exchange(session.id, "u1", "first", "one")
        assert [turn.user_message for turn in hot.load(session.id)] == ["first"]
        assert coordinator.pending_writes(session.id) == 1

        store.fail_writes = False
        await coordinator.record_exchange(session.id, "u1", "second", "two")

        assert coordinator.pending_writes(session.id) == 0
        stored = await store.list_session_turns(session.id)
        assert [turn.user_message for turn in stored] == ["first", "second"]

    asyncio.run(scenario())


def test_context_includes_hot_always_and_expands_on_hint(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, _ = _build(store, turn_limit=2, token_budget=1000)

    async def scenario() -> None:
        await store.init()
        past = await store.get_or_create_session("u1")
        await coordinator.record_exchange(past.id, "u1", "I keep bees on my balcony", "lovely")
        await coordinator.end_session(past.id)

        session = await store.get_or_create_session("u1")
        for text in ("we talked about pruning", "roses need sun", "compost tips", "watering schedule"):
            await coordinator.record_exchange(session.id, "u1", text, "ok")

        plain = await coordinator.assemble_context(session.id, "thanks", expand_hint=ExpandHint.none())
        assert [turn.user_message for turn in plain.hot] == ["compost tips", "watering schedule"]
        assert plain.warm == [] and plain.cold == []

        derived = await coordinator.assemble_context(session.id, "like we discussed earlier, what about pruning?")
        assert [turn.user_message for turn in derived.warm] == ["we talked about pruning", "roses need sun"]
        assert derived.cold == []

        full = await coordinator.assemble_context(
            session.id,
            "remember when I told you about my bees?",
            expand_hint=ExpandHint.all(("bees",)),
        )
        assert len(full.warm) == 2
        assert [entry.turn.session_id for entry in full.cold] == [past.id]
        assert full.tokens_used <= full.token_budget
        assert full.degraded_tiers == ()

        rendered = full.format_for_prompt()
        assert rendered.index("# Earlier Sessions") < rendered.index("# Earlier In This Session")
        assert rendered.index("# Earlier In This Session") < rendered.index("# Recent Conversation History")

    asyncio.run(scenario())


def test_context_never_splits_turns_to_fit_budget(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, _ = _build(store, turn_limit=1, token_budget=1000)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        for n in range(1, 5):
            turn = ConversationTurn.create(
                session_id=session.id,
                user_id="u1",
                turn_number=n,
                user_message=f"m{n}",
                ai_response="",
                user_tokens=100,
                ai_tokens=0,
            )
            await coordinator.record_turn(session.id, turn)

        bundle = await coordinator.assemble_context(
            session.id,
            "anything",
            total_token_budget=350,
            expand_hint=ExpandHint(include_warm=True),
        )

        assert [turn.turn_number for turn in bundle.hot] == [4]
        assert [turn.turn_number for turn in bundle.warm] == [2, 3]
        assert bundle.tokens_used == 300

    asyncio.run(scenario())


def test_context_degrades_when_tier_reads_fail(tmp_path: Path) -> None:
    store = _FlakyStore(tmp_path / "memory.db")
    coordinator, _ = _build(store, turn_limit=1, token_budget=1000)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        await coordinator.record_exchange(session.id, "u1", "older", "a")
        await coordinator.record_exchange(session.id, "u1", "newer", "b")

        store.fail_reads = True
        bundle = await coordinator.assemble_context(session.id, "anything", expand_hint=ExpandHint.all())

        assert [turn.user_message for turn in bundle.hot] == ["newer"]
        assert bundle.warm == [] and bundle.cold == []
        assert bundle.degraded_tiers == (MemoryTier.WARM, MemoryTier.COLD)

    asyncio.run(scenario())


def test_restore_session_rebuilds_hot_window_after_restart(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.db"
    store = MemoryStore(db_path)
    coordinator, _ = _build(store, turn_limit=3)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        for n in range(1, 6):
            await coordinator.record_exchange(session.id, "u1", f"line {n}", "ok")

        restarted, restarted_hot = _build(MemoryStore(db_path), turn_limit=3)
        restored = await restarted.restore_session(session.id)

        assert [turn.user_message for turn in restored] == ["line 3", "line 4", "line 5"]
        assert restarted_hot.token_total(session.id) == sum(turn.total_tokens for turn in restored)
        nxt = await restarted.record_exchange(session.id, "u1", "line 6", "ok")
        assert nxt.turn_number == 6

    asyncio.run(scenario())


def test_end_session_is_safe_to_repeat(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, hot = _build(store, turn_limit=2)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        for n in range(1, 5):
            await coordinator.record_exchange(session.id, "u1", f"line {n}", "ok")

        assert await coordinator.end_session(session.id) == 4
        assert await coordinator.end_session(session.id) == 0
        assert hot.load(session.id) == []
        assert await store.count_session_turns(session.id, tier=MemoryTier.COLD) == 4
        ended = await store.get_session(session.id)
        assert ended is not None and not ended.active

    asyncio.run(scenario())


def test_idle_sessions_are_expired(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, _ = _build(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        await coordinator.record_exchange(session.id, "u1", "hello", "hi")

        assert await coordinator.expire_idle_sessions(1800) == []
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        assert await coordinator.expire_idle_sessions(1800, now=later) == [session.id]
        assert await coordinator.expire_idle_sessions(0, now=later) == []

        ended = await store.get_session(session.id)
        assert ended is not None and ended.ended_at is not None

    asyncio.run(scenario())


def test_concurrent_sessions_do_not_interfere(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, hot = _build(store, turn_limit=3)

    async def run_session(user_id: str) -> str:
        session = await store.get_or_create_session(user_id)
        for n in range(1, 6):
            await coordinator.record_exchange(session.id, user_id, f"{user_id} says {n}", "ok")
        return session.id

    async def scenario() -> None:
        await store.init()
        ids = await asyncio.gather(run_session("alice"), run_session("bob"))
        for session_id, user_id in zip(ids, ("alice", "bob")):
            assert [turn.user_message for turn in hot.load(session_id)] == [f"{user_id} says {n}" for n in (3, 4, 5)]
            numbers = [turn.turn_number for turn in await store.list_session_turns(session_id)]
            assert numbers == [1, 2, 3, 4, 5]

    asyncio.run(scenario())


def _numbered(session_id: str, number: int, text: str) -> ConversationTurn:
    return ConversationTurn.create(
        session_id=session_id,
        user_id="u1",
        turn_number=number,
        user_message=text,
        ai_response="ok",
    )


def test_reused_turn_number_is_rejected_not_dropped(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, hot = _build(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        first = _numbered(session.id, 1, "first")
        await coordinator.record_turn(session.id, first)

        with pytest.raises(ValueError):
            await coordinator.record_turn(session.id, _numbered(session.id, 1, "impostor"))

        assert [turn.id for turn in hot.load(session.id)] == [first.id]
        assert coordinator.pending_writes(session.id) == 0
        stored = await store.list_session_turns(session.id)
        assert [turn.user_message for turn in stored] == ["first"]

    asyncio.run(scenario())


def test_reused_turn_number_after_restart_surfaces_store_rejection(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        coordinator, _ = _build(store)
        await coordinator.record_exchange(session.id, "u1", "first", "one")
        await coordinator.record_exchange(session.id, "u1", "second", "two")

        fresh, fresh_hot = _build(store)
        with pytest.raises(StorageConstraintError):
            await fresh.record_turn(session.id, _numbered(session.id, 2, "impostor"))

        assert fresh_hot.load(session.id) == []
        assert fresh.pending_writes(session.id) == 0
        stored = await store.list_session_turns(session.id)
        assert [turn.user_message for turn in stored] == ["first", "second"]

        nxt = await fresh.record_exchange(session.id, "u1", "third", "three")
        assert nxt.turn_number == 3

    asyncio.run(scenario())


def test_rejected_write_is_not_retried_forever(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, hot = _build(store)

    async def scenario() -> None:
        await store.init()
        with pytest.raises(StorageConstraintError):
            await coordinator.record_exchange("ghost", "u1", "hello", "hi")

        assert coordinator.pending_writes("ghost") == 0
        assert hot.load("ghost") == []
        assert "ghost" not in hot.sessions()
        assert await coordinator.end_session("ghost") == 0

    asyncio.run(scenario())


def test_session_locks_are_released_when_idle(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    coordinator, _ = _build(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        await asyncio.gather(
            *(coordinator.record_exchange(session.id, "u1", f"line {n}", "ok") for n in range(3))
        )
        assert session.id not in coordinator.session_locks

        await coordinator.end_session(session.id)
        assert session.id not in coordinator.session_locks
        assert coordinator.session_locks == {}

        numbers = [turn.turn_number for turn in await store.list_session_turns(session.id)]
        assert numbers == [1, 2, 3]

    asyncio.run(scenario())

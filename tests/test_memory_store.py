from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import aiosqlite
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dialogue_memory.errors import PersistenceError, StorageConstraintError  # noqa: E402
from dialogue_memory.memory.store import MemoryStore  # noqa: E402
from dialogue_memory.memory.types import ConversationTurn, MemoryTier  # noqa: E402


def _turn(session_id: str, number: int, text: str = "", tokens: int = 10) -> ConversationTurn:
    return ConversationTurn.create(
        session_id=session_id,
        user_id="u1",
        turn_number=number,
        user_message=text or f"message {number}",
        ai_response=f"reply {number}",
        user_tokens=tokens,
        ai_tokens=5,
    )


def test_session_is_reused_until_ended(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        first = await store.get_or_create_session("u1")
        again = await store.get_or_create_session("u1")
        other = await store.get_or_create_session("u2")

        assert first.id == again.id
        assert other.id != first.id
        assert first.active

        assert await store.mark_session_ended(first.id) is True
        assert await store.mark_session_ended(first.id) is False

        ended = await store.get_session(first.id)
        assert ended is not None and ended.ended_at is not None
        fresh = await store.get_or_create_session("u1")
        assert fresh.id != first.id
        assert [item.id for item in await store.list_user_sessions("u1")] == [fresh.id, first.id]

    asyncio.run(scenario())


def test_insert_turns_is_idempotent_and_updates_session_counters(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        turns = [_turn(session.id, 1), _turn(session.id, 2)]

        assert await store.insert_turns(turns) == 2
        assert await store.insert_turns(turns) == 0

        refreshed = await store.get_session(session.id)
        assert refreshed is not None
        assert refreshed.turn_count == 2
        assert refreshed.total_tokens == 30
        assert refreshed.tier is MemoryTier.HOT
        assert await store.next_turn_number(session.id) == 3

        stored = await store.get_turn(turns[0].id)
        assert stored is not None
        assert stored.tier is MemoryTier.HOT
        assert stored.identity_critical is False
        assert stored.user_message == "message 1"

    asyncio.run(scenario())


def test_transition_turns_only_moves_turns_in_source_tier(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        turns = [_turn(session.id, n) for n in range(1, 4)]
        await store.insert_turns(turns)

        moved = await store.transition_turns([turns[0].id, turns[1].id], "hot", "warm", "hot_eviction")
        again = await store.transition_turns([turns[0].id, "missing"], "hot", "warm", "hot_eviction")

        assert moved == [turns[0].id, turns[1].id]
        assert again == []
        assert await store.count_session_turns(session.id, tier="warm") == 2
        log = await store.list_transitions(session_id=session.id)
        assert [(item.from_tier, item.to_tier, item.reason) for item in log] == [
            (MemoryTier.HOT, MemoryTier.WARM, "hot_eviction"),
            (MemoryTier.HOT, MemoryTier.WARM, "hot_eviction"),
        ]
        refreshed = await store.get_session(session.id)
        assert refreshed is not None and refreshed.tier is MemoryTier.HOT

    asyncio.run(scenario())


def test_session_search_is_case_insensitive_beyond_ascii(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        turns = [
            _turn(session.id, 1, "We walked down the Hauptstraße"),
            _turn(session.id, 2, "Nothing relevant"),
            _turn(session.id, 3, "ПРИВІТ from Kyiv"),
        ]
        await store.insert_turns(turns)
        await store.transition_turns([turn.id for turn in turns], "hot", "warm", "hot_eviction")

        street = await store.search_session_turns(session.id, "HAUPTSTRASSE")
        greeting = await store.search_session_turns(session.id, "привіт")

        assert [turn.turn_number for turn in street] == [1]
        assert [turn.turn_number for turn in greeting] == [3]
        assert await store.search_session_turns(session.id, "   ") == []

    asyncio.run(scenario())


def test_init_refuses_newer_schema_unless_reset_allowed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "memory.db"
    store = MemoryStore(db_path)

    async def scenario() -> None:
        await store.init()
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA user_version = 99")
            await db.commit()

        monkeypatch.delenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
        with pytest.raises(PersistenceError):
            await store.init()

        monkeypatch.setenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
        await store.init()
        async with aiosqlite.connect(db_path) as db:
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
        assert row is not None and int(row[0]) == MemoryStore.SCHEMA_VERSION

    asyncio.run(scenario())


def test_sqlite_errors_surface_as_persistence_error(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        # Tables were never created.
        with pytest.raises(PersistenceError):
            await store.get_turn("anything")

        await store.init()
        await store.ping()
        with pytest.raises(StorageConstraintError):
            # Turns must belong to an existing session.
            await store.insert_turns([_turn("no-such-session", 1)])

    asyncio.run(scenario())


def test_insert_turns_rejects_a_different_turn_with_a_taken_number(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        original = _turn(session.id, 1, "original")
        assert await store.insert_turns([original]) == 1

        with pytest.raises(StorageConstraintError):
            await store.insert_turns([_turn(session.id, 2, "fresh"), _turn(session.id, 1, "impostor")])

        stored = await store.list_session_turns(session.id)
        assert [turn.user_message for turn in stored] == ["original"]
        refreshed = await store.get_session(session.id)
        assert refreshed is not None and refreshed.turn_count == 1
        assert await store.insert_turns([original]) == 0

    asyncio.run(scenario())

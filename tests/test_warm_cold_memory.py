from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dialogue_memory.memory.cold import ColdMemory  # noqa: E402
from dialogue_memory.memory.compression import ExtractiveCompressor  # noqa: E402
from dialogue_memory.memory.coordinator import TierCoordinator  # noqa: E402
from dialogue_memory.memory.hot import HotMemory  # noqa: E402
from dialogue_memory.memory.store import MemoryStore  # noqa: E402
from dialogue_memory.memory.types import ConversationTurn, MemoryTier  # noqa: E402
from dialogue_memory.memory.warm import WarmMemory  # noqa: E402


def _turn(
    session_id: str,
    number: int,
    *,
    user_id: str = "u1",
    text: str = "",
    tokens: int = 100,
    critical: bool = False,
) -> ConversationTurn:
    return ConversationTurn.create(
        session_id=session_id,
        user_id=user_id,
        turn_number=number,
        user_message=text or f"Turn {number} talks about gardening and tomatoes.",
        ai_response=f"Reply {number}: water them in the morning.",
        user_tokens=tokens,
        ai_tokens=0,
        identity_critical=critical,
    )


async def _seed_warm(store: MemoryStore, session_id: str, turns: list[ConversationTurn]) -> None:
    await store.insert_turns(turns)
    await store.transition_turns([turn.id for turn in turns], MemoryTier.HOT, MemoryTier.WARM, "hot_eviction")


def test_warm_load_is_greedy_newest_first_then_chronological(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    warm = WarmMemory(store, turn_limit=50, token_budget=15000)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        sizes = [100, 100, 500, 100, 200]
        turns = [_turn(session.id, n, tokens=size) for n, size in enumerate(sizes, start=1)]
        await _seed_warm(store, session.id, turns)

        # Newest first: 200 + 100 fit, the 500-token turn 3 would overflow and stops selection.
        loaded = await warm.load(session.id, 50, 450)
        assert [turn.turn_number for turn in loaded] == [4, 5]
        assert sum(turn.total_tokens for turn in loaded) <= 450

        capped = await warm.load(session.id, 2, 10000)
        assert [turn.turn_number for turn in capped] == [4, 5]

        everything = await warm.load(session.id)
        assert [turn.turn_number for turn in everything] == [1, 2, 3, 4, 5]

        excluded = await warm.load(session.id, exclude_turn_ids=[turns[4].id])
        assert [turn.turn_number for turn in excluded] == [1, 2, 3, 4]

        assert await warm.load(session.id, 5, 0) == []

    asyncio.run(scenario())


def test_warm_search_is_scoped_to_session_and_case_insensitive(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    warm = WarmMemory(store)

    async def scenario() -> None:
        await store.init()
        mine = await store.get_or_create_session("u1")
        theirs = await store.get_or_create_session("u2")
        await _seed_warm(store, mine.id, [_turn(mine.id, 1, text="I adopted a Greyhound"), _turn(mine.id, 2)])
        await _seed_warm(store, theirs.id, [_turn(theirs.id, 1, user_id="u2", text="greyhound racing")])

        matches = await warm.search(mine.id, "GREYHOUND")

        assert [(turn.session_id, turn.turn_number) for turn in matches] == [(mine.id, 1)]
        assert await warm.count(mine.id) == 2

    asyncio.run(scenario())


def test_session_end_archives_thirty_warm_turns(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    hot = HotMemory(turn_limit=5, token_budget=1500)
    cold = ColdMemory(store, ExtractiveCompressor(max_chars=120), query_limit=100)
    coordinator = TierCoordinator(store, hot, WarmMemory(store), cold)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        critical_numbers = {1, 12, 25}
        turns = [_turn(session.id, n, tokens=20, critical=n in critical_numbers) for n in range(1, 31)]
        await _seed_warm(store, session.id, turns)

        archived = await coordinator.end_session(session.id)

        assert archived == 30
        assert hot.load(session.id) == []
        assert await store.count_session_turns(session.id, tier="warm") == 0
        assert await store.count_session_turns(session.id, tier="cold") == 30

        entries = await cold.load("u1")
        assert len(entries) == 30
        verbatim = [entry for entry in entries if entry.verbatim]
        assert sorted(entry.turn.turn_number for entry in verbatim) == sorted(critical_numbers)
        assert sum(1 for entry in entries if not entry.verbatim) == 27
        assert await store.count_user_cold_summaries("u1") == 27

        ended = await store.get_session(session.id)
        assert ended is not None and ended.ended_at is not None
        assert ended.tier is MemoryTier.COLD

    asyncio.run(scenario())


def test_warm_to_cold_is_idempotent(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    cold = ColdMemory(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        await _seed_warm(store, session.id, [_turn(session.id, n, critical=n == 2) for n in range(1, 5)])

        first = await cold.transition_warm_to_cold(session.id)
        tiers_after_first = [turn.tier for turn in await store.list_session_turns(session.id)]
        second = await cold.transition_warm_to_cold(session.id)
        tiers_after_second = [turn.tier for turn in await store.list_session_turns(session.id)]

        assert first == 4
        assert second == 0
        assert tiers_after_first == tiers_after_second == [MemoryTier.COLD] * 4
        log = await store.list_transitions(session_id=session.id)
        assert sum(1 for item in log if item.to_tier is MemoryTier.COLD) == 4
        assert await store.count_user_cold_summaries("u1") == 3

    asyncio.run(scenario())


def test_cold_round_trip_keeps_critical_text_and_summarizes_the_rest(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    cold = ColdMemory(store, ExtractiveCompressor(max_chars=80))
    long_text = "My sister Olga lives in Lviv. " + "We spoke about many unrelated errands today. " * 8

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        critical = _turn(session.id, 1, text="My name is Ada and I am allergic to peanuts.", critical=True)
        plain = _turn(session.id, 2, text=long_text)
        await _seed_warm(store, session.id, [critical, plain])
        await cold.transition_warm_to_cold(session.id)

        entries = {entry.turn_id: entry for entry in await cold.load("u1")}

        kept = entries[critical.id]
        assert kept.verbatim
        assert kept.turn.user_message == critical.user_message
        assert kept.turn.ai_response == critical.ai_response

        compressed = entries[plain.id]
        assert not compressed.verbatim
        assert compressed.summary is not None
        assert compressed.summary.original_turn_id == plain.id
        assert compressed.summary.summary_text.strip()
        assert compressed.summary.compressed_tokens < compressed.summary.original_tokens
        assert compressed.turn.user_message == long_text

        stored = await store.get_turn_summary(plain.id)
        assert stored is not None and stored.summary_text == compressed.summary.summary_text

    asyncio.run(scenario())


def test_cold_load_and_search_span_sessions_most_recent_first(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    cold = ColdMemory(store, query_limit=100)

    async def scenario() -> None:
        await store.init()
        first = await store.get_or_create_session("u1")
        await _seed_warm(store, first.id, [_turn(first.id, 1, text="Planning a trip to Porto")])
        await cold.transition_warm_to_cold(first.id)
        await store.mark_session_ended(first.id)

        second = await store.get_or_create_session("u1")
        await _seed_warm(store, second.id, [_turn(second.id, 1, text="Learning to bake sourdough")])
        await cold.transition_warm_to_cold(second.id)

        recent = await cold.load("u1")
        assert [entry.turn.session_id for entry in recent] == [second.id, first.id]
        assert [entry.turn.session_id for entry in await cold.load("u1", 1)] == [second.id]

        hits = await cold.search("u1", "porto")
        assert [entry.turn.session_id for entry in hits] == [first.id]
        assert await cold.search("someone-else", "porto") == []

    asyncio.run(scenario())


def test_manual_override_keeps_summaries_attached_to_cold_turns(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    cold = ColdMemory(store)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        turn = _turn(session.id, 3)
        await store.insert_turns([turn])

        to_cold = await cold.mark_tier(turn.id, "cold")
        assert to_cold is not None
        assert (to_cold.from_tier, to_cold.to_tier, to_cold.reason) == (MemoryTier.HOT, MemoryTier.COLD, "manual")
        assert await store.get_turn_summary(turn.id) is not None

        back = await cold.mark_tier(turn.id, MemoryTier.WARM)
        assert back is not None and back.to_tier is MemoryTier.WARM
        assert await store.get_turn_summary(turn.id) is None
        assert (await store.get_turn(turn.id)).tier is MemoryTier.WARM

        assert await cold.mark_tier("missing", "cold") is None

    asyncio.run(scenario())


def test_recorded_tiers_never_move_backwards_outside_manual_overrides(tmp_path: Path) -> None:
    store = MemoryStore(tmp_path / "memory.db")
    hot = HotMemory(turn_limit=2, token_budget=10000)
    cold = ColdMemory(store)
    coordinator = TierCoordinator(store, hot, WarmMemory(store), cold)

    async def scenario() -> None:
        await store.init()
        session = await store.get_or_create_session("u1")
        for number in range(1, 7):
            await coordinator.record_exchange(session.id, "u1", f"question {number}", f"answer {number}")
        some_turn = hot.load(session.id)[0]
        await coordinator.override_tier(some_turn.id, MemoryTier.COLD)
        await coordinator.override_tier(some_turn.id, MemoryTier.HOT)
        await coordinator.end_session(session.id)

        log = await store.list_transitions(session_id=session.id)
        assert log
        for item in log:
            if item.reason == "manual":
                continue
            assert item.to_tier.rank > item.from_tier.rank
        assert {item.reason for item in log} == {"hot_eviction", "session_end", "manual"}

        summaries = await store.count_user_cold_summaries("u1")
        cold_non_critical = [
            turn
            for turn in await store.list_session_turns(session.id, tier="cold")
            if not turn.identity_critical
        ]
        assert summaries == len(cold_non_critical)

    asyncio.run(scenario())

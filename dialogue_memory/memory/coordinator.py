from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List

from ..errors import PersistenceError, StorageConstraintError
from .cold import ColdMemory
from .hot import HotMemory
from .identity import is_identity_critical
from .recall import ExpandHint
from .types import (
    REASON_HOT_EVICTION,
    REASON_SESSION_END,
    ColdMemoryEntry,
    ContextBundle,
    ConversationTurn,
    MemoryTier,
    TierTransition,
)
from .warm import WarmMemory


logger = logging.getLogger("dialogue_memory")


@dataclass(slots=True)
class _PendingWrites:
    inserts: list[ConversationTurn] = field(default_factory=list)
    handoffs: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.inserts or self.handoffs)


class TierCoordinator:
    """Owns the Hot -> Warm -> Cold state machine and assembles token-bounded context.

    Every public operation on a session runs under that session's lock, so turns of one
    session are handled strictly in order while different sessions proceed concurrently.
    """

    def __init__(
        self,
        store,
        hot: HotMemory,
        warm: WarmMemory,
        cold: ColdMemory,
        *,
        context_token_budget: int = 8000,
    ) -> None:
        self.store = store
        self.hot = hot
        self.warm = warm
        self.cold = cold
        self.context_token_budget = max(1, int(context_token_budget))
        self.session_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_users: dict[str, int] = defaultdict(int)
        self._pending: dict[str, _PendingWrites] = defaultdict(_PendingWrites)
        self._next_turn_numbers: dict[str, int] = {}

    def pending_writes(self, session_id: str) -> int:
        pending = self._pending.get(str(session_id))
        if not pending:
            return 0
        return len(pending.inserts) + len(pending.handoffs)

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        # A lock is kept only while some task holds or waits for it.
        lock = self.session_locks[session_id]
        self._lock_users[session_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if self._lock_users[session_id] <= 0:
                self._lock_users.pop(session_id, None)
                if self.session_locks.get(session_id) is lock:
                    del self.session_locks[session_id]

    def _reject_inserts(self, session_id: str, pending: _PendingWrites) -> list[ConversationTurn]:
        rejected = list(pending.inserts)
        rejected_ids = {turn.id for turn in rejected}
        pending.inserts.clear()
        pending.handoffs[:] = [turn_id for turn_id in pending.handoffs if turn_id not in rejected_ids]
        for turn in rejected:
            self.hot.discard(session_id, turn.id)
        if not self.hot.load(session_id):
            self.hot.clear(session_id)
        # Renumber from the store on the next exchange.
        self._next_turn_numbers.pop(session_id, None)
        if not pending:
            self._pending.pop(session_id, None)
        return rejected

    async def _flush_pending(self, session_id: str) -> None:
        pending = self._pending.get(session_id)
        if not pending:
            return
        if pending.inserts:
            try:
                await self.store.insert_turns(pending.inserts)
            except StorageConstraintError as exc:
                rejected = self._reject_inserts(session_id, pending)
                logger.error(
                    "[memory.turns] session=%s dropped turns=%s rejected by store: %s",
                    session_id,
                    [turn.turn_number for turn in rejected],
                    exc,
                )
                raise
            pending.inserts.clear()
        if pending.handoffs:
            moved = await self.store.transition_turns(
                pending.handoffs,
                MemoryTier.HOT,
                MemoryTier.WARM,
                REASON_HOT_EVICTION,
            )
            pending.handoffs.clear()
            if moved:
                logger.info(
                    "[memory.tier] session=%s hot->warm turns=%s reason=%s",
                    session_id,
                    len(moved),
                    REASON_HOT_EVICTION,
                )
        self._pending.pop(session_id, None)

    async def _allocate_turn_number(self, session_id: str) -> int:
        number = self._next_turn_numbers.get(session_id)
        if number is None:
            try:
                number = await self.store.next_turn_number(session_id)
            except PersistenceError as exc:
                hot_numbers = [turn.turn_number for turn in self.hot.load(session_id)]
                number = (max(hot_numbers) + 1) if hot_numbers else 1
                logger.warning("[memory.turns] session=%s turn number from hot window: %s", session_id, exc)
        self._next_turn_numbers[session_id] = number + 1
        return number

    async def _record_locked(self, session_id: str, turn: ConversationTurn) -> List[ConversationTurn]:
        evicted = self.hot.append_with_evictions(turn)
        known = self._next_turn_numbers.get(session_id, 0)
        self._next_turn_numbers[session_id] = max(known, turn.turn_number + 1)

        pending = self._pending[session_id]
        pending.inserts.append(turn.with_tier(MemoryTier.HOT))
        pending.handoffs.extend(item.id for item in evicted)
        if evicted:
            logger.debug(
                "[memory.hot] session=%s evicted=%s hot_tokens=%s",
                session_id,
                [item.turn_number for item in evicted],
                self.hot.token_total(session_id),
            )
        await self._flush_pending(session_id)
        return evicted

    def _last_turn_number(self, session_id: str) -> int | None:
        known = self._next_turn_numbers.get(session_id)
        if known is not None:
            return known - 1
        hot_numbers = [turn.turn_number for turn in self.hot.load(session_id)]
        return max(hot_numbers) if hot_numbers else None

    async def record_turn(self, session_id: str, turn: ConversationTurn) -> List[ConversationTurn]:
        """Append `turn` to Hot and persist it, handing any evicted turns to Warm.

        Returns the evicted turns. Turn numbers must increase within a session; a number
        at or below the last recorded one raises ValueError and leaves Hot untouched.
        A transient storage failure is raised after the turn is already in Hot, and the
        unwritten rows stay queued for the next write. A write the store rejects for good
        (StorageConstraintError) drops the turn from Hot and from the queue before raising.
        """
        session_id = str(session_id)
        if turn.session_id != session_id:
            raise ValueError(f"turn {turn.id} belongs to session {turn.session_id}, not {session_id}")
        async with self._session_lock(session_id):
            last = self._last_turn_number(session_id)
            if last is not None and turn.turn_number <= last:
                raise ValueError(
                    f"turn {turn.id} reuses turn number {turn.turn_number} in session {session_id}; last is {last}"
                )
            return await self._record_locked(session_id, turn)

    async def record_exchange(
        self,
        session_id: str,
        user_id: str,
        user_message: str,
        ai_response: str,
        *,
        identity_critical: bool | None = None,
    ) -> ConversationTurn:
        session_id = str(session_id)
        async with self._session_lock(session_id):
            number = await self._allocate_turn_number(session_id)
            critical = is_identity_critical(number, user_message) if identity_critical is None else identity_critical
            turn = ConversationTurn.create(
                session_id=session_id,
                user_id=user_id,
                turn_number=number,
                user_message=user_message,
                ai_response=ai_response,
                identity_critical=critical,
            )
            await self._record_locked(session_id, turn)
            return turn

    async def restore_session(self, session_id: str) -> List[ConversationTurn]:
        """Rebuild the Hot window of an active session from turns persisted as Hot."""
        session_id = str(session_id)
        async with self._session_lock(session_id):
            current = self.hot.load(session_id)
            if current:
                return current
            persisted = await self.store.list_session_turns(session_id, tier=MemoryTier.HOT)
            if not persisted:
                return []
            evicted = self.hot.seed(session_id, persisted)
            if evicted:
                self._pending[session_id].handoffs.extend(item.id for item in evicted)
                await self._flush_pending(session_id)
            self._next_turn_numbers[session_id] = max(turn.turn_number for turn in persisted) + 1
            restored = self.hot.load(session_id)
            logger.info("[memory.hot] session=%s restored=%s", session_id, len(restored))
            return restored

    async def end_session(self, session_id: str) -> int:
        """Hand the rest of Hot to Warm, archive Warm into Cold and close the session.

        Returns the number of turns archived into Cold. Safe to call again after a
        failure or on an already ended session.
        """
        session_id = str(session_id)
        async with self._session_lock(session_id):
            await self._flush_pending(session_id)
            handed = await self.store.transition_session_tier(
                session_id,
                MemoryTier.HOT,
                MemoryTier.WARM,
                REASON_SESSION_END,
            )
            self.hot.clear(session_id)
            archived = await self.cold.transition_warm_to_cold(session_id, reason=REASON_SESSION_END)
            ended = await self.store.mark_session_ended(session_id)
            self._next_turn_numbers.pop(session_id, None)
            logger.info(
                "[memory.session] ended session=%s hot_to_warm=%s archived=%s newly_ended=%s",
                session_id,
                len(handed),
                archived,
                ended,
            )
            return archived

    async def expire_idle_sessions(self, idle_timeout_seconds: int, *, now: datetime | None = None) -> List[str]:
        if int(idle_timeout_seconds) <= 0:
            return []
        reference = now or datetime.now(timezone.utc)
        cutoff = (reference - timedelta(seconds=int(idle_timeout_seconds))).isoformat()
        ended: list[str] = []
        for session in await self.store.list_idle_sessions(cutoff):
            try:
                await self.end_session(session.id)
            except PersistenceError:
                logger.exception("[memory.session] idle expiry failed for session=%s", session.id)
                continue
            ended.append(session.id)
        return ended

    async def override_tier(self, turn_id: str, tier: MemoryTier | str) -> TierTransition | None:
        target = MemoryTier.parse(tier)
        session_id = self.hot.find_session(turn_id)
        if session_id is None:
            return await self.cold.mark_tier(turn_id, target)

        async with self._session_lock(session_id):
            await self._flush_pending(session_id)
            transition = await self.cold.mark_tier(turn_id, target)
            if transition is not None and target is not MemoryTier.HOT:
                self.hot.discard(session_id, turn_id)
            return transition

    def _rank_cold(self, entries: list[ColdMemoryEntry], terms: tuple[str, ...]) -> list[ColdMemoryEntry]:
        # Recency order in, keyword hits first out; ties keep recency.
        if not terms:
            return entries
        scored = [
            (sum(1 for term in terms if entry.matches(term)), index, entry)
            for index, entry in enumerate(entries)
        ]
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [entry for _, _, entry in scored]

    async def _load_cold_candidates(self, user_id: str, terms: tuple[str, ...]) -> list[ColdMemoryEntry]:
        recent = await self.cold.load(user_id)
        seen = {entry.turn_id for entry in recent}
        merged = list(recent)
        for term in terms:
            for entry in await self.cold.search(user_id, term):
                if entry.turn_id in seen:
                    continue
                seen.add(entry.turn_id)
                merged.append(entry)
        merged.sort(key=lambda entry: (entry.turn.created_at, entry.turn.turn_number), reverse=True)
        return self._rank_cold(merged, terms)

    async def _resolve_user_id(self, session_id: str, user_id: str | None) -> str | None:
        if user_id:
            return str(user_id)
        hot = self.hot.load(session_id)
        if hot:
            return hot[-1].user_id
        session = await self.store.get_session(session_id)
        return session.user_id if session is not None else None

    async def assemble_context(
        self,
        session_id: str,
        user_message: str,
        total_token_budget: int | None = None,
        expand_hint: ExpandHint | None = None,
        *,
        user_id: str | None = None,
    ) -> ContextBundle:
        session_id = str(session_id)
        budget = self.context_token_budget if total_token_budget is None else max(0, int(total_token_budget))
        hint = expand_hint if expand_hint is not None else ExpandHint.from_message(user_message)

        async with self._session_lock(session_id):
            hot = self.hot.load(session_id)
            bundle = ContextBundle(session_id=session_id, hot=hot, token_budget=budget)
            degraded: list[MemoryTier] = []

            if hint.include_warm and bundle.tokens_remaining > 0:
                try:
                    bundle.warm = await self.warm.load(
                        session_id,
                        self.warm.turn_limit,
                        min(bundle.tokens_remaining, self.warm.token_budget),
                        exclude_turn_ids=[turn.id for turn in hot],
                    )
                except PersistenceError as exc:
                    degraded.append(MemoryTier.WARM)
                    logger.warning("[memory.context] session=%s warm tier unavailable: %s", session_id, exc)

            if hint.include_cold and bundle.tokens_remaining > 0:
                try:
                    owner = await self._resolve_user_id(session_id, user_id)
                    candidates = await self._load_cold_candidates(owner, hint.search_terms) if owner else []
                except PersistenceError as exc:
                    degraded.append(MemoryTier.COLD)
                    logger.warning("[memory.context] session=%s cold tier unavailable: %s", session_id, exc)
                else:
                    remaining = bundle.tokens_remaining
                    picked: list[ColdMemoryEntry] = []
                    for entry in candidates:
                        if entry.token_count > remaining:
                            continue
                        picked.append(entry)
                        remaining -= entry.token_count
                    bundle.cold = picked

            bundle.degraded_tiers = tuple(degraded)

        logger.debug(
            "[memory.context] session=%s hot=%s warm=%s cold=%s tokens=%s/%s",
            session_id,
            len(bundle.hot),
            len(bundle.warm),
            len(bundle.cold),
            bundle.tokens_used,
            budget,
        )
        return bundle

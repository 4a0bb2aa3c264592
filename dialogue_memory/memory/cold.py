from __future__ import annotations

import logging
from typing import List

from .compression import ExtractiveCompressor, TurnCompressor
from .types import REASON_SESSION_END, ColdMemoryEntry, MemoryTier, TierTransition


logger = logging.getLogger("dialogue_memory")


class ColdMemory:
    """User-scoped archive spanning every session of a user.

    Identity-critical turns are kept verbatim; every other turn is archived together
    with a summary produced by the compressor.
    """

    def __init__(self, store, compressor: TurnCompressor | None = None, query_limit: int = 100) -> None:
        self.store = store
        self.compressor: TurnCompressor = compressor or ExtractiveCompressor()
        self.query_limit = max(1, int(query_limit))

    @classmethod
    def from_settings(cls, store, settings: object, compressor: TurnCompressor | None = None) -> "ColdMemory":
        return cls(
            store,
            compressor=compressor or ExtractiveCompressor.from_settings(settings),
            query_limit=int(getattr(settings, "cold_query_limit", 100)),
        )

    async def transition_warm_to_cold(self, session_id: str, *, reason: str = REASON_SESSION_END) -> int:
        moved = await self.store.archive_warm_turns(session_id, self.compressor.compress, reason)
        logger.info("[memory.cold] session=%s archived=%s reason=%s", session_id, moved, reason)
        return moved

    async def load(self, user_id: str, max_turns: int | None = None) -> List[ColdMemoryEntry]:
        limit = self.query_limit if max_turns is None else max(0, int(max_turns))
        if limit <= 0:
            return []
        return await self.store.load_cold_entries(user_id, limit)

    async def search(self, user_id: str, keyword: str) -> List[ColdMemoryEntry]:
        return await self.store.search_cold_entries(user_id, keyword, limit=self.query_limit)

    async def mark_tier(self, turn_id: str, tier: MemoryTier | str) -> TierTransition | None:
        transition = await self.store.override_turn_tier(turn_id, tier, self.compressor.compress)
        if transition is None:
            logger.warning("[memory.tier] manual override skipped: turn=%s not found", turn_id)
            return None
        logger.info(
            "[memory.tier] turn=%s %s->%s reason=%s",
            transition.turn_id,
            transition.from_tier.value,
            transition.to_tier.value,
            transition.reason,
        )
        return transition

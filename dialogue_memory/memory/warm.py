from __future__ import annotations

import logging
from typing import Iterable, List

from .types import ConversationTurn


logger = logging.getLogger("dialogue_memory")


class WarmMemory:
    """Session-scoped recall of persisted turns that already left the Hot window.

    Storage errors propagate unchanged; retries are the caller's business.
    """

    def __init__(self, store, turn_limit: int = 50, token_budget: int = 15000) -> None:
        self.store = store
        self.turn_limit = max(1, int(turn_limit))
        self.token_budget = max(1, int(token_budget))

    @classmethod
    def from_settings(cls, store, settings: object) -> "WarmMemory":
        return cls(
            store,
            turn_limit=int(getattr(settings, "warm_turn_limit", 50)),
            token_budget=int(getattr(settings, "warm_token_budget", 15000)),
        )

    async def load(
        self,
        session_id: str,
        max_turns: int | None = None,
        max_token_budget: int | None = None,
        *,
        exclude_turn_ids: Iterable[str] = (),
    ) -> List[ConversationTurn]:
        turn_cap = self.turn_limit if max_turns is None else max(0, int(max_turns))
        budget = self.token_budget if max_token_budget is None else max(0, int(max_token_budget))
        if turn_cap <= 0 or budget <= 0:
            return []

        newest_first = await self.store.get_recent_warm_turns(
            session_id,
            turn_cap,
            exclude_turn_ids=exclude_turn_ids,
        )
        picked: list[ConversationTurn] = []
        used = 0
        for turn in newest_first:
            if used + turn.total_tokens > budget:
                break
            picked.append(turn)
            used += turn.total_tokens

        picked.reverse()
        logger.debug(
            "[memory.warm] session=%s candidates=%s loaded=%s tokens=%s budget=%s",
            session_id,
            len(newest_first),
            len(picked),
            used,
            budget,
        )
        return picked

    async def search(self, session_id: str, keyword: str) -> List[ConversationTurn]:
        return await self.store.search_session_turns(session_id, keyword)

    async def count(self, session_id: str) -> int:
        return await self.store.count_session_turns(session_id, tier="warm")

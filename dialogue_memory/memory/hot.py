from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Iterable

from .types import ConversationTurn, MemoryTier


@dataclass(slots=True)
class _HotBuffer:
    turns: Deque[ConversationTurn] = field(default_factory=deque)
    total_tokens: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


class HotMemory:
    """In-process recency window per session.

    Never touches storage. Each session buffer carries its own lock; the registry
    lock only guards creation and removal of buffers.
    """

    def __init__(self, turn_limit: int = 5, token_budget: int = 1500) -> None:
        self.turn_limit = max(1, int(turn_limit))
        self.token_budget = max(1, int(token_budget))
        self._buffers: dict[str, _HotBuffer] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: object) -> "HotMemory":
        return cls(
            turn_limit=int(getattr(settings, "hot_turn_limit", 5)),
            token_budget=int(getattr(settings, "hot_token_budget", 1500)),
        )

    def _buffer(self, session_id: str) -> _HotBuffer:
        key = str(session_id)
        with self._registry_lock:
            buffer = self._buffers.get(key)
            if buffer is None:
                buffer = _HotBuffer()
                self._buffers[key] = buffer
            return buffer

    def _over_budget(self, buffer: _HotBuffer) -> bool:
        return buffer.total_tokens > self.token_budget or len(buffer.turns) > self.turn_limit

    def append_with_evictions(self, turn: ConversationTurn) -> list[ConversationTurn]:
        """Append `turn` and return every evicted turn, oldest first.

        A turn larger than the whole token budget is evicted as soon as it lands.
        """
        buffer = self._buffer(turn.session_id)
        evicted: list[ConversationTurn] = []
        with buffer.lock:
            buffer.turns.append(turn.with_tier(MemoryTier.HOT))
            buffer.total_tokens += turn.total_tokens
            while buffer.turns and self._over_budget(buffer):
                oldest = buffer.turns.popleft()
                buffer.total_tokens -= oldest.total_tokens
                evicted.append(oldest)
        return evicted

    def append(self, turn: ConversationTurn) -> ConversationTurn | None:
        evicted = self.append_with_evictions(turn)
        return evicted[-1] if evicted else None

    def load(self, session_id: str) -> list[ConversationTurn]:
        buffer = self._buffers.get(str(session_id))
        if buffer is None:
            return []
        with buffer.lock:
            return list(buffer.turns)

    def seed(self, session_id: str, turns: Iterable[ConversationTurn]) -> list[ConversationTurn]:
        evicted: list[ConversationTurn] = []
        for turn in sorted(turns, key=lambda item: item.turn_number):
            if str(turn.session_id) != str(session_id):
                continue
            evicted.extend(self.append_with_evictions(turn))
        return evicted

    def discard(self, session_id: str, turn_id: str) -> ConversationTurn | None:
        buffer = self._buffers.get(str(session_id))
        if buffer is None:
            return None
        with buffer.lock:
            for turn in buffer.turns:
                if turn.id == turn_id:
                    buffer.turns.remove(turn)
                    buffer.total_tokens -= turn.total_tokens
                    return turn
        return None

    def find_session(self, turn_id: str) -> str | None:
        with self._registry_lock:
            items = list(self._buffers.items())
        for session_id, buffer in items:
            with buffer.lock:
                if any(turn.id == turn_id for turn in buffer.turns):
                    return session_id
        return None

    def clear(self, session_id: str) -> None:
        with self._registry_lock:
            self._buffers.pop(str(session_id), None)

    def token_total(self, session_id: str) -> int:
        buffer = self._buffers.get(str(session_id))
        if buffer is None:
            return 0
        with buffer.lock:
            return buffer.total_tokens

    def turn_ids(self, session_id: str) -> list[str]:
        return [turn.id for turn in self.load(session_id)]

    def sessions(self) -> list[str]:
        with self._registry_lock:
            return list(self._buffers)

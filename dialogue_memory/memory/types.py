from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable


class MemoryTier(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @classmethod
    def parse(cls, value: "MemoryTier | str") -> "MemoryTier":
        if isinstance(value, MemoryTier):
            return value
        raw = str(value or "").strip().lower()
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"Unknown memory tier: {value!r}") from None


_TIER_RANK = {MemoryTier.HOT: 0, MemoryTier.WARM: 1, MemoryTier.COLD: 2}

REASON_HOT_EVICTION = "hot_eviction"
REASON_SESSION_END = "session_end"
REASON_MANUAL = "manual"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def estimate_tokens(text: str) -> int:
    # Whitespace words scaled for sub-word tokenization, never below a char/4 estimate.
    cleaned = str(text or "").strip()
    if not cleaned:
        return 0
    words = len(cleaned.split())
    return max(math.ceil(words * 4 / 3), math.ceil(len(cleaned) / 4))


@dataclass(slots=True)
class ConversationTurn:
    id: str
    session_id: str
    user_id: str
    turn_number: int
    user_message: str
    ai_response: str
    user_tokens: int = 0
    ai_tokens: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    tier: MemoryTier = MemoryTier.HOT
    identity_critical: bool = False

    @property
    def total_tokens(self) -> int:
        return max(0, int(self.user_tokens)) + max(0, int(self.ai_tokens))

    @classmethod
    def create(
        cls,
        *,
        session_id: str,
        user_id: str,
        turn_number: int,
        user_message: str,
        ai_response: str,
        user_tokens: int | None = None,
        ai_tokens: int | None = None,
        identity_critical: bool = False,
    ) -> "ConversationTurn":
        return cls(
            id=new_id(),
            session_id=str(session_id),
            user_id=str(user_id),
            turn_number=max(1, int(turn_number)),
            user_message=str(user_message or ""),
            ai_response=str(ai_response or ""),
            user_tokens=estimate_tokens(user_message) if user_tokens is None else max(0, int(user_tokens)),
            ai_tokens=estimate_tokens(ai_response) if ai_tokens is None else max(0, int(ai_tokens)),
            identity_critical=bool(identity_critical),
        )

    def with_tier(self, tier: MemoryTier | str) -> "ConversationTurn":
        return replace(self, tier=MemoryTier.parse(tier))

    def format_lines(self) -> list[str]:
        lines = [f"User: {self.user_message}"]
        if self.ai_response:
            lines.append(f"Assistant: {self.ai_response}")
        return lines


@dataclass(slots=True)
class ConversationSession:
    id: str
    user_id: str
    started_at: str
    ended_at: str | None = None
    turn_count: int = 0
    total_tokens: int = 0
    last_activity_at: str | None = None
    tier: MemoryTier = MemoryTier.HOT

    @property
    def active(self) -> bool:
        return self.ended_at is None


@dataclass(slots=True, frozen=True)
class TierTransition:
    id: str
    turn_id: str
    from_tier: MemoryTier
    to_tier: MemoryTier
    reason: str
    transitioned_at: str


@dataclass(slots=True, frozen=True)
class TurnSummary:
    id: str
    original_turn_id: str
    summary_text: str
    keywords: tuple[str, ...] = ()
    created_at: str = field(default_factory=utc_now_iso)
    original_tokens: int = 0
    compressed_tokens: int = 0


@dataclass(slots=True)
class ColdMemoryEntry:
    """A cold turn as seen by readers: verbatim when identity-critical, otherwise its summary."""

    turn: ConversationTurn
    summary: TurnSummary | None = None

    @property
    def turn_id(self) -> str:
        return self.turn.id

    @property
    def verbatim(self) -> bool:
        return self.summary is None

    @property
    def token_count(self) -> int:
        if self.summary is not None:
            return max(1, int(self.summary.compressed_tokens or estimate_tokens(self.summary.summary_text)))
        return self.turn.total_tokens

    @property
    def text(self) -> str:
        if self.summary is not None:
            return self.summary.summary_text
        return "\n".join(self.turn.format_lines())

    def matches(self, keyword: str) -> bool:
        needle = str(keyword or "").strip().casefold()
        if not needle:
            return False
        haystacks: list[str] = [self.turn.user_message, self.turn.ai_response]
        if self.summary is not None:
            haystacks.append(self.summary.summary_text)
            haystacks.extend(self.summary.keywords)
        return any(needle in str(item).casefold() for item in haystacks)


@dataclass(slots=True)
class ContextBundle:
    session_id: str
    hot: list[ConversationTurn] = field(default_factory=list)
    warm: list[ConversationTurn] = field(default_factory=list)
    cold: list[ColdMemoryEntry] = field(default_factory=list)
    token_budget: int = 0
    degraded_tiers: tuple[MemoryTier, ...] = ()

    @property
    def tokens_used(self) -> int:
        return (
            sum(turn.total_tokens for turn in self.hot)
            + sum(turn.total_tokens for turn in self.warm)
            + sum(entry.token_count for entry in self.cold)
        )

    @property
    def tokens_remaining(self) -> int:
        return max(0, int(self.token_budget) - self.tokens_used)

    @property
    def is_empty(self) -> bool:
        return not (self.hot or self.warm or self.cold)

    def turn_ids(self) -> list[str]:
        ids = [entry.turn_id for entry in self.cold]
        ids.extend(turn.id for turn in self.warm)
        ids.extend(turn.id for turn in self.hot)
        return ids

    def format_for_prompt(self, *, include: Iterable[MemoryTier] | None = None) -> str:
        tiers = set(include) if include is not None else {MemoryTier.HOT, MemoryTier.WARM, MemoryTier.COLD}
        sections: list[str] = []
        if MemoryTier.COLD in tiers and self.cold:
            lines = ["# Earlier Sessions"]
            for entry in sorted(self.cold, key=lambda item: (item.turn.created_at, item.turn.turn_number)):
                prefix = "" if entry.verbatim else "(summary) "
                lines.append(f"{prefix}{entry.text}")
            sections.append("\n".join(lines))
        if MemoryTier.WARM in tiers and self.warm:
            lines = ["# Earlier In This Session"]
            for turn in self.warm:
                lines.extend(turn.format_lines())
            sections.append("\n".join(lines))
        if MemoryTier.HOT in tiers and self.hot:
            lines = ["# Recent Conversation History"]
            for turn in self.hot:
                lines.extend(turn.format_lines())
            sections.append("\n".join(lines))
        return "\n\n".join(sections)

from __future__ import annotations

import re
from collections import Counter
from typing import Protocol

from .types import ConversationTurn, TurnSummary, estimate_tokens, new_id, utc_now_iso


_STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been before being below
    between both but by can could did do does doing down during each few for from further had has have
    having he her here hers herself him himself his how i if in into is it its itself just like me more
    most my myself no nor not now of off on once only or other our ours ourselves out over own same she
    should so some such than that the their theirs them themselves then there these they this those
    through to too under until up very was we were what when where which while who whom why will with
    would you your yours yourself yourselves also really yeah okay ok sure thanks thank please im ive
    dont cant its thats user assistant
    """.split()
)

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"[^\W\d_][\w'-]{2,}", flags=re.UNICODE)


class TurnCompressor(Protocol):
    def compress(self, turn: ConversationTurn) -> TurnSummary: ...


def extract_keywords(text: str, limit: int = 8) -> list[str]:
    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    for index, match in enumerate(_WORD_RE.finditer(str(text or ""))):
        word = match.group(0).casefold().strip("'-")
        if len(word) < 3 or word in _STOPWORDS:
            continue
        counts[word] += 1
        first_seen.setdefault(word, index)
    ranked = sorted(counts, key=lambda word: (-counts[word], first_seen[word]))
    return ranked[: max(0, int(limit))]


def _leading_sentences(text: str, max_chars: int) -> str:
    cleaned = " ".join(str(text or "").split())
    if len(cleaned) <= max_chars:
        return cleaned
    picked: list[str] = []
    used = 0
    for sentence in _SENTENCE_SPLIT_RE.split(cleaned):
        extra = len(sentence) + (1 if picked else 0)
        if used + extra > max_chars:
            break
        picked.append(sentence)
        used += extra
    if picked:
        return " ".join(picked)
    return cleaned[: max(1, max_chars - 3)].rstrip() + "..."


class ExtractiveCompressor:
    """Summarizes a turn by keeping its leading sentences.

    Short turns pass through unchanged. The user side gets roughly two thirds of the
    character budget, since it carries the facts worth recalling later.
    """

    def __init__(self, max_chars: int = 480, keyword_limit: int = 8) -> None:
        self.max_chars = max(40, int(max_chars))
        self.keyword_limit = max(0, int(keyword_limit))

    @classmethod
    def from_settings(cls, settings: object) -> "ExtractiveCompressor":
        return cls(max_chars=int(getattr(settings, "summary_max_chars", 480)))

    def compress(self, turn: ConversationTurn) -> TurnSummary:
        user_budget = max(20, (self.max_chars * 2) // 3)
        user_part = _leading_sentences(turn.user_message, user_budget)
        ai_budget = max(20, self.max_chars - len(user_part))
        ai_part = _leading_sentences(turn.ai_response, ai_budget) if turn.ai_response else ""

        summary_text = f"User: {user_part}"
        if ai_part:
            summary_text += f" | Assistant: {ai_part}"
        if not user_part and not ai_part:
            summary_text = f"(empty turn {turn.turn_number})"

        return TurnSummary(
            id=new_id(),
            original_turn_id=turn.id,
            summary_text=summary_text,
            keywords=tuple(extract_keywords(f"{turn.user_message} {turn.ai_response}", self.keyword_limit)),
            created_at=utc_now_iso(),
            original_tokens=turn.total_tokens,
            compressed_tokens=estimate_tokens(summary_text),
        )

from __future__ import annotations

import re
from dataclasses import dataclass

from .compression import extract_keywords


_WARM_CUES = (
    "earlier",
    "before",
    "we discussed",
    "we talked about",
    "last time",
    "continuing",
    "as i said",
    "like you said",
    "you said",
    "above",
    "go back to",
)

_COLD_CUES = (
    "always",
    "you mentioned once",
    "remember when",
    "in the past",
    "do you remember",
    "last week",
    "last month",
    "previous conversation",
    "previous session",
    "months ago",
    "years ago",
    "you know me",
)


def _contains_cue(text: str, cue: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(cue)}(?!\w)", text) is not None


@dataclass(slots=True, frozen=True)
class ExpandHint:
    """Which persisted tiers the caller wants pulled into the context, plus search terms."""

    include_warm: bool = False
    include_cold: bool = False
    search_terms: tuple[str, ...] = ()

    @classmethod
    def none(cls) -> "ExpandHint":
        return cls()

    @classmethod
    def all(cls, search_terms: tuple[str, ...] = ()) -> "ExpandHint":
        return cls(include_warm=True, include_cold=True, search_terms=tuple(search_terms))

    @classmethod
    def from_message(cls, message: str) -> "ExpandHint":
        lowered = " ".join(str(message or "").casefold().split())
        if not lowered:
            return cls()
        include_cold = any(_contains_cue(lowered, cue) for cue in _COLD_CUES)
        # Cross-session recall implies the current session is relevant too.
        include_warm = include_cold or any(_contains_cue(lowered, cue) for cue in _WARM_CUES)
        terms: tuple[str, ...] = ()
        if include_warm:
            cue_words = {word for cue in (*_WARM_CUES, *_COLD_CUES) for word in cue.split()}
            terms = tuple(word for word in extract_keywords(lowered, limit=10) if word not in cue_words)[:5]
        return cls(include_warm=include_warm, include_cold=include_cold, search_terms=terms)

    @property
    def expands(self) -> bool:
        return self.include_warm or self.include_cold

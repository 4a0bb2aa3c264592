from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List


@dataclass(slots=True, frozen=True)
class IdentitySignal:
    kind: str
    value: str
    evidence_quote: str


_NAME_PATTERNS = [
    r"\bmy\s+name\s+is\s+([A-Za-z][A-Za-z'`-]{1,39})\b",
    r"\b(?:call\s+me|i\s+go\s+by)\s+([A-Za-z][A-Za-z'`-]{1,39})\b",
]

# "i am/i'm <word>" is ambiguous ("i'm tired"); only accept capitalized short tokens.
_SOFT_NAME_PATTERN = r"\b(?:I am|I'm)\s+([A-Z][a-z'`-]{1,23})\b"

_AGE_PATTERNS = [
    # A bare number after "i'm" needs an age context: "i'm 5 minutes late" is not an age.
    r"\b(?:i am|i'm)\s+(\d{1,3})(?:\s*(?:years?\s+old|y/?o)\b|\s*[.,;!?](?!\d)|\s*$|\s+and\b)",
    r"\b(\d{1,3})\s*years?\s+old\b",
]

_FACT_PATTERNS: list[tuple[str, str]] = [
    ("location", r"\b(?:i\s+live\s+in|i'm\s+from|i\s+am\s+from|i\s+moved\s+to|i\s+grew\s+up\s+in)\s+([\w' .-]{2,60})"),
    ("occupation", r"\b(?:i\s+work\s+(?:as|at|for)|my\s+job\s+is|i\s+study\s+at)\s+([\w' .-]{2,60})"),
    ("relationship", r"\bmy\s+(wife|husband|partner|girlfriend|boyfriend|son|daughter|mother|father|mom|dad|sister|brother|kids?|children)\b"),
    ("preference", r"\b(?:my\s+favou?rite\s+\w+\s+is|i\s+(?:really\s+)?(?:love|hate|prefer))\s+([\w' .-]{2,60})"),
    ("health", r"\b(?:i'm\s+allergic\s+to|i\s+am\s+allergic\s+to|i\s+have\s+(?:an?\s+)?(?:allergy|diabetes|asthma|adhd|anxiety|depression))\s*([\w' .-]{0,60})"),
    ("pronouns", r"\bmy\s+pronouns\s+are\s+([\w/ ]{2,20})"),
]


def _clean_value(value: str) -> str:
    return str(value or "").strip(" .,!?:;").strip()


def detect_identity_signals(text: str) -> List[IdentitySignal]:
    """First-person personal facts stated in `text`, one per kind."""
    src = " ".join(str(text or "").strip().split())
    if not src:
        return []

    out: dict[str, IdentitySignal] = {}

    def _put(kind: str, value: str, quote: str) -> None:
        cleaned = _clean_value(value)
        if kind in out:
            return
        if not cleaned and kind not in {"health"}:
            return
        out[kind] = IdentitySignal(kind=kind, value=cleaned[:120], evidence_quote=quote.strip()[:220])

    for pattern in _NAME_PATTERNS:
        m = re.search(pattern, src, flags=re.IGNORECASE)
        if m:
            _put("name", m.group(1), m.group(0))
            break
    else:
        m = re.search(_SOFT_NAME_PATTERN, src)
        if m:
            _put("name", m.group(1), m.group(0))

    lowered = src.casefold()
    for pattern in _AGE_PATTERNS:
        m = re.search(pattern, lowered)
        if not m:
            continue
        try:
            age = int(m.group(1))
        except (TypeError, ValueError):
            continue
        if 3 <= age <= 120:
            _put("age", str(age), m.group(0))
            break

    for kind, pattern in _FACT_PATTERNS:
        m = re.search(pattern, lowered)
        if m:
            _put(kind, m.group(1) if m.groups() else m.group(0), m.group(0))

    return list(out.values())


def is_identity_critical(turn_number: int, user_message: str) -> bool:
    if int(turn_number) <= 1:
        return True
    return bool(detect_identity_signals(user_message))

from __future__ import annotations

import math
import re
from typing import Iterable

from .types import BOUNDARIES, DOMAIN_NAMES, DOMAINS, BoundaryState, RecognitionOutput, boundary_domains


_DOMAIN_VOCABULARY: dict[str, frozenset[str]] = {
    "CD": frozenset(
        """
        algorithm code program programming software function compute computation computer data logic
        math mathematics number numbers calculate formula system systems model database api bug debug
        python rust javascript structure pattern optimize efficiency automate binary network
        """.split()
    ),
    "SD": frozenset(
        """
        science scientific research evidence experiment hypothesis theory physics chemistry biology
        study studies measure measurement observe observation empirical test data analysis cause effect
        nature climate energy evolution brain neuroscience medicine quantum universe
        """.split()
    ),
    "CuD": frozenset(
        """
        culture cultural society social history historical tradition traditions art music literature
        language story stories meaning values religion philosophy community family people politics
        ethics moral identity belief beliefs myth ritual heritage film book books
        """.split()
    ),
    "ED": frozenset(
        """
        feel feeling feelings felt experience experienced emotion emotions sense sensing body heart
        love fear anxious anxiety happy sad grief joy hope worry alone lonely personal myself memory
        remember intuition aware awareness presence moment life living hurt excited
        """.split()
    ),
}

_WORD_RE = re.compile(r"[^\W\d_]+", flags=re.UNICODE)

BASE_ACTIVATION = 0.3
MESSAGE_HIT_WEIGHT = 0.15
CONTEXT_HIT_WEIGHT = 0.04
MAX_ACTIVATION = 0.95


def _words(text: str) -> list[str]:
    return [match.group(0).casefold() for match in _WORD_RE.finditer(str(text or ""))]


def _round(value: float) -> float:
    return round(max(0.0, min(1.0, float(value))), 4)


class FallbackCalculator:
    """Network-free recognition from keyword matches against each domain's vocabulary.

    The message weighs much more than prior context. Boundary permeability is the
    geometric mean of the two domain activations, so a boundary only opens when
    both sides are engaged.
    """

    def __init__(self, base_activation: float = BASE_ACTIVATION) -> None:
        self.base_activation = _round(base_activation)

    def domain_hits(self, text: str) -> dict[str, int]:
        hits = {domain: 0 for domain in DOMAINS}
        for word in _words(text):
            for domain, vocabulary in _DOMAIN_VOCABULARY.items():
                if word in vocabulary:
                    hits[domain] += 1
        return hits

    def calculate(self, message: str, context_lines: Iterable[str] = ()) -> RecognitionOutput:
        message_hits = self.domain_hits(message)
        context_hits = self.domain_hits("\n".join(str(line) for line in context_lines or ()))

        activations: dict[str, float] = {}
        for domain in DOMAINS:
            raw = (
                self.base_activation
                + MESSAGE_HIT_WEIGHT * min(message_hits[domain], 4)
                + CONTEXT_HIT_WEIGHT * min(context_hits[domain], 5)
            )
            activations[domain] = _round(min(MAX_ACTIVATION, raw))

        boundaries: dict[str, BoundaryState] = {}
        for boundary in BOUNDARIES:
            left, right = boundary_domains(boundary)
            boundaries[boundary] = BoundaryState.from_permeability(
                _round(math.sqrt(activations[left] * activations[right]))
            )

        return RecognitionOutput(
            domain_activations=activations,
            boundaries=boundaries,
            patterns=self._patterns(message, message_hits, activations),
            rationale=self._rationale(message_hits, activations),
        )

    def _patterns(self, message: str, hits: dict[str, int], activations: dict[str, float]) -> list[str]:
        patterns: list[str] = []
        engaged = [domain for domain in DOMAINS if hits[domain] > 0]
        if len(engaged) >= 2:
            names = " and ".join(DOMAIN_NAMES[domain] for domain in engaged[:2])
            patterns.append(f"cross-domain interest: {names}")
        elif len(engaged) == 1:
            patterns.append(f"focused {DOMAIN_NAMES[engaged[0]]} inquiry")
        else:
            patterns.append("open conversational exchange")
        if "?" in str(message or ""):
            patterns.append("question seeking understanding")
        if activations["ED"] >= 0.6:
            patterns.append("personal experience foregrounded")
        return patterns

    def _rationale(self, hits: dict[str, int], activations: dict[str, float]) -> str:
        top = max(DOMAINS, key=lambda domain: (activations[domain], -DOMAINS.index(domain)))
        if not any(hits.values()):
            return "Deterministic recognition: no domain vocabulary in the message, baseline activations."
        return (
            "Deterministic recognition from keyword matches; "
            f"strongest domain {top} ({DOMAIN_NAMES[top]}) at {activations[top]:.2f}."
        )

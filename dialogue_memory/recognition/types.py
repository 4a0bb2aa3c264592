from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


DOMAINS: tuple[str, ...] = ("CD", "SD", "CuD", "ED")

DOMAIN_NAMES: dict[str, str] = {
    "CD": "computational",
    "SD": "scientific",
    "CuD": "cultural",
    "ED": "experiential",
}

BOUNDARIES: tuple[str, ...] = ("CD-SD", "CD-CuD", "CD-ED", "SD-CuD", "SD-ED", "CuD-ED")

TRANSITIONAL_THRESHOLD = 0.6
TRANSCENDENT_THRESHOLD = 0.8


class BoundaryStatus(str, Enum):
    MAINTAINED = "Maintained"
    TRANSITIONAL = "Transitional"
    TRANSCENDENT = "Transcendent"


def status_for_permeability(permeability: float) -> BoundaryStatus:
    p = float(permeability)
    if p < TRANSITIONAL_THRESHOLD:
        return BoundaryStatus.MAINTAINED
    if p <= TRANSCENDENT_THRESHOLD:
        return BoundaryStatus.TRANSITIONAL
    return BoundaryStatus.TRANSCENDENT


def boundary_domains(boundary: str) -> tuple[str, str]:
    left, _, right = str(boundary).partition("-")
    return left, right


@dataclass(slots=True, frozen=True)
class BoundaryState:
    permeability: float
    status: BoundaryStatus

    @classmethod
    def from_permeability(cls, permeability: float) -> "BoundaryState":
        p = float(permeability)
        return cls(permeability=p, status=status_for_permeability(p))


@dataclass(slots=True)
class RecognitionOutput:
    domain_activations: Dict[str, float]
    boundaries: Dict[str, BoundaryState]
    patterns: List[str] = field(default_factory=list)
    rationale: str = ""

    def with_derived_statuses(self) -> "RecognitionOutput":
        return RecognitionOutput(
            domain_activations=dict(self.domain_activations),
            boundaries={
                name: BoundaryState.from_permeability(state.permeability)
                for name, state in self.boundaries.items()
            },
            patterns=list(self.patterns),
            rationale=self.rationale,
        )

    def dominant_domains(self, limit: int = 2) -> list[str]:
        ranked = sorted(self.domain_activations.items(), key=lambda item: (-item[1], DOMAINS.index(item[0]) if item[0] in DOMAINS else 99))
        return [name for name, _ in ranked[: max(0, int(limit))]]

    def to_dict(self) -> dict[str, Any]:
        """Flat wire shape, the same one the validator accepts back."""
        return {
            "reasoning": self.rationale,
            "domain_activations": {name: self.domain_activations[name] for name in self.domain_activations},
            "boundary_permeabilities": {name: state.permeability for name, state in self.boundaries.items()},
            "boundary_statuses": {name: state.status.value for name, state in self.boundaries.items()},
            "identified_patterns": list(self.patterns),
        }

    def summary_line(self) -> str:
        activations = ", ".join(f"{name}={self.domain_activations.get(name, 0.0):.2f}" for name in DOMAINS)
        transitional = [
            f"{name}:{state.status.value}"
            for name, state in self.boundaries.items()
            if state.status is not BoundaryStatus.MAINTAINED
        ]
        return f"activations[{activations}] boundaries[{', '.join(transitional) or 'all maintained'}]"


@dataclass(slots=True)
class RecognitionDiagnostics:
    backend_name: str
    model_name: str
    attempts: int
    retry_count: int
    fallback_used: bool
    latency_ms: int
    error: str = ""
    error_kind: str = ""


@dataclass(slots=True)
class RecognitionStats:
    calls: int = 0
    model_successes: int = 0
    fallbacks: int = 0
    retries: int = 0
    timeouts: int = 0
    validation_failures: int = 0
    provider_errors: int = 0

    def record(self, diagnostics: RecognitionDiagnostics) -> None:
        self.calls += 1
        self.retries += max(0, int(diagnostics.retry_count))
        if diagnostics.fallback_used:
            self.fallbacks += 1
        else:
            self.model_successes += 1

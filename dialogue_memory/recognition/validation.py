from __future__ import annotations

import json
import math
import re
from typing import Any, Mapping

from ..errors import ValidationError
from .types import BOUNDARIES, DOMAINS, BoundaryState, RecognitionOutput, boundary_domains


_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*|\s*```$")

MAX_PATTERNS = 10
MAX_PATTERN_CHARS = 200
MAX_RATIONALE_CHARS = 1200


def _strip_json_fences(text: str) -> str:
    cleaned = _THINK_RE.sub("", str(text or "")).strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_RE.sub("", cleaned).strip()
    if cleaned.startswith("{") and cleaned.endswith("}"):
        return cleaned
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start >= 0 and end > start:
        return cleaned[start : end + 1]
    return cleaned


def parse_recognition_json(raw: str) -> dict[str, Any]:
    text = _strip_json_fences(raw)
    if not text:
        raise ValidationError("payload", "empty response")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError("payload", f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("payload", "JSON root must be an object")
    return payload


def _unit_score(value: Any, field: str) -> float:
    # bool is an int subclass; "true" is not a score.
    if isinstance(value, bool) or value is None:
        raise ValidationError(field, f"expected a number in [0, 1], got {value!r}")
    if isinstance(value, (int, float)):
        score = float(value)
    elif isinstance(value, str):
        try:
            score = float(value.strip())
        except ValueError:
            raise ValidationError(field, f"expected a number in [0, 1], got {value!r}") from None
    else:
        raise ValidationError(field, f"expected a number in [0, 1], got {type(value).__name__}")
    if math.isnan(score) or math.isinf(score) or score < 0.0 or score > 1.0:
        raise ValidationError(field, f"value {score} outside [0, 1]")
    return score


def _lookup_boundary(section: Mapping[str, Any], boundary: str) -> Any:
    if boundary in section:
        return section[boundary]
    left, right = boundary_domains(boundary)
    for alias in (f"{right}-{left}", f"{left}_{right}", f"{left}/{right}"):
        if alias in section:
            return section[alias]
    raise ValidationError(f"boundaries.{boundary}", "missing boundary")


def _require_mapping(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    section = payload.get(key)
    if not isinstance(section, Mapping):
        raise ValidationError(key, "missing or not an object")
    return section


def _clean_patterns(raw: Any) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("patterns", "expected a list")
    patterns: list[str] = []
    for item in raw:
        if isinstance(item, Mapping):
            text = str(item.get("description") or item.get("pattern") or "").strip()
        elif isinstance(item, str):
            text = item.strip()
        else:
            continue
        text = " ".join(text.split())
        if text and text not in patterns:
            patterns.append(text[:MAX_PATTERN_CHARS])
        if len(patterns) >= MAX_PATTERNS:
            break
    return patterns


def _from_flat(payload: Mapping[str, Any]) -> RecognitionOutput:
    activations_raw = _require_mapping(payload, "domain_activations")
    permeabilities_raw = _require_mapping(payload, "boundary_permeabilities")

    activations: dict[str, float] = {}
    for domain in DOMAINS:
        if domain not in activations_raw:
            raise ValidationError(f"domain_activations.{domain}", "missing domain")
        activations[domain] = _unit_score(activations_raw[domain], f"domain_activations.{domain}")

    boundaries: dict[str, BoundaryState] = {}
    for boundary in BOUNDARIES:
        value = _lookup_boundary(permeabilities_raw, boundary)
        boundaries[boundary] = BoundaryState.from_permeability(
            _unit_score(value, f"boundary_permeabilities.{boundary}")
        )

    return RecognitionOutput(
        domain_activations=activations,
        boundaries=boundaries,
        patterns=_clean_patterns(payload.get("identified_patterns")),
        rationale=str(payload.get("reasoning") or "").strip()[:MAX_RATIONALE_CHARS],
    )


def _from_rich(payload: Mapping[str, Any]) -> RecognitionOutput:
    domains_raw = _require_mapping(payload, "domain_recognitions")
    states_raw = _require_mapping(payload, "boundary_states")

    activations: dict[str, float] = {}
    for domain in DOMAINS:
        item = domains_raw.get(domain)
        if item is None:
            raise ValidationError(f"domain_recognitions.{domain}", "missing domain")
        value = item.get("activation") if isinstance(item, Mapping) else item
        activations[domain] = _unit_score(value, f"domain_recognitions.{domain}.activation")

    boundaries: dict[str, BoundaryState] = {}
    for boundary in BOUNDARIES:
        item = _lookup_boundary(states_raw, boundary)
        value = item.get("permeability") if isinstance(item, Mapping) else item
        boundaries[boundary] = BoundaryState.from_permeability(
            _unit_score(value, f"boundary_states.{boundary}.permeability")
        )

    return RecognitionOutput(
        domain_activations=activations,
        boundaries=boundaries,
        patterns=_clean_patterns(payload.get("pattern_recognitions")),
        rationale=str(payload.get("recognition_report") or "").strip()[:MAX_RATIONALE_CHARS],
    )


def validate_recognition_payload(payload: Mapping[str, Any]) -> RecognitionOutput:
    """Single trust boundary for model output.

    Returns a fully conformant value or raises ValidationError. Statuses supplied by
    the model are ignored and derived from permeability.
    """
    if "domain_recognitions" in payload or "boundary_states" in payload:
        return _from_rich(payload)
    if "domain_activations" in payload or "boundary_permeabilities" in payload:
        return _from_flat(payload)
    raise ValidationError("payload", "no domain activations in response")


def parse_recognition_output(raw: str) -> RecognitionOutput:
    return validate_recognition_payload(parse_recognition_json(raw))


def check_recognition_output(output: RecognitionOutput) -> None:
    """Re-check an already built output against every range and key rule."""
    for domain in DOMAINS:
        if domain not in output.domain_activations:
            raise ValidationError(f"domain_activations.{domain}", "missing domain")
        _unit_score(output.domain_activations[domain], f"domain_activations.{domain}")
    for boundary in BOUNDARIES:
        state = output.boundaries.get(boundary)
        if state is None:
            raise ValidationError(f"boundaries.{boundary}", "missing boundary")
        _unit_score(state.permeability, f"boundaries.{boundary}.permeability")
        if state.status is not BoundaryState.from_permeability(state.permeability).status:
            raise ValidationError(f"boundaries.{boundary}.status", "status does not match permeability")

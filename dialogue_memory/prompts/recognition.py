from __future__ import annotations

import json
import re

from .json_loader import load_prompt_json

_DEFAULTS = {
    "schema_hint_object": {
        "reasoning": "one or two sentences",
        "domain_activations": {"CD": 0.0, "SD": 0.0, "CuD": 0.0, "ED": 0.0},
        "boundary_permeabilities": {
            "CD-SD": 0.0,
            "CD-CuD": 0.0,
            "CD-ED": 0.0,
            "SD-CuD": 0.0,
            "SD-ED": 0.0,
            "CuD-ED": 0.0,
        },
        "identified_patterns": ["short pattern description"],
    },
    "system_prompt": (
        "You recognize which perspectives a user message engages. "
        "Domains: CD computational (logic, structure, systems), SD scientific (evidence, causality, empirical study), "
        "CuD cultural (meaning, history, society, values), ED experiential (feelings, lived experience, embodiment). "
        "Score each domain activation from 0.0 to 1.0. "
        "For each boundary between two domains, score permeability from 0.0 to 1.0: how freely understanding "
        "flows between them in this message. "
        "List 1-3 short patterns you recognize in the exchange. "
        "Return only one valid JSON object, no markdown and no commentary. Schema: {schema_hint}"
    ),
    "full_prompt_template": (
        "{system_prompt}\n\n"
        "Conversation context (oldest -> newest):\n{context}\n\n"
        "Previous recognition:\n{previous}\n\n"
        "Current user message:\n{message}\n\n"
        "Return JSON."
    ),
    "reduced_prompt_template": (
        "{system_prompt}\n\n"
        "Recent conversation:\n{context}\n\n"
        "Current user message:\n{message}\n\n"
        "Return JSON."
    ),
    "minimal_prompt_template": (
        "Score domains CD, SD, CuD, ED and boundaries CD-SD, CD-CuD, CD-ED, SD-CuD, SD-ED, CuD-ED "
        "with numbers from 0.0 to 1.0 for this message. "
        "Return only JSON shaped like {schema_hint}\n\n"
        "Message: {message}"
    ),
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("recognition.json", _DEFAULTS)


def _schema_hint() -> str:
    schema = _cfg().get("schema_hint_object", _DEFAULTS["schema_hint_object"])
    if not isinstance(schema, dict):
        schema = _DEFAULTS["schema_hint_object"]
    return json.dumps(schema, ensure_ascii=False, separators=(",", ":"))


def _template(key: str) -> str:
    return str(_cfg().get(key, _DEFAULTS[key]))


def _render(template: str, **values: str) -> str:
    # Templates carry literal JSON braces, so only the known placeholders are substituted,
    # in one pass so that substituted text is never rescanned.
    pattern = re.compile("|".join(re.escape("{" + name + "}") for name in values))
    return pattern.sub(lambda match: str(values[match.group(0)[1:-1]]), template)


def build_recognition_system_prompt() -> str:
    return _render(_template("system_prompt"), schema_hint=_schema_hint())


def build_full_recognition_prompt(message: str, context: str, previous: str = "") -> str:
    return _render(
        _template("full_prompt_template"),
        system_prompt=build_recognition_system_prompt(),
        context=context or "(no earlier context)",
        previous=previous or "(none)",
        message=message,
    )


def build_reduced_recognition_prompt(message: str, context: str) -> str:
    return _render(
        _template("reduced_prompt_template"),
        system_prompt=build_recognition_system_prompt(),
        context=context or "(no earlier context)",
        message=message,
    )


def build_minimal_recognition_prompt(message: str) -> str:
    return _render(_template("minimal_prompt_template"), schema_hint=_schema_hint(), message=message)

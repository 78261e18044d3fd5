from __future__ import annotations

import json
import math
import re
from enum import Enum
from typing import Any

SEMANTIC_FILTERING = "semantic_filtering"
CATEGORY_IDENTIFICATION = "category_identification"
DRAFT_GENERATION = "draft_generation"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_CONFIDENCE = re.compile(r"confidence[:\s]+(\d+\.?\d*)", re.IGNORECASE)
_PERCENT = re.compile(r"(\d+)%")
_CATEGORY = re.compile(r"category[:\s]+([^\n]+)", re.IGNORECASE)
_INCLUDE_WORDS = re.compile(r"\b(include|included|yes|relevant)\b")
_EXCLUDE_WORDS = re.compile(r"\b(exclude|excluded|no|not relevant)\b")


class CriteriaPhase(str, Enum):
    INCLUSION = "inclusion"
    EXCLUSION = "exclusion"


def estimate_tokens(prompt: str, text: str) -> int:
    return math.ceil((len(prompt) + len(text)) / 4)


def extract_confidence(text: str) -> float | None:
    match = _CONFIDENCE.search(text)
    if match:
        return float(match.group(1))
    match = _PERCENT.search(text)
    if match:
        return float(match.group(1)) / 100
    return None


def parse_response(text: str, task_type: str = "generic") -> dict[str, Any]:
    """Turn raw model output into a result mapping.

    The first ``{...}`` span is decoded as JSON when it is valid; otherwise
    the text is interpreted according to ``task_type``.
    """
    match = _JSON_OBJECT.search(text)
    if match:
        try:
            decoded = json.loads(match.group(0))
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded

    if task_type == SEMANTIC_FILTERING:
        return _parse_filtering(text)
    if task_type == CATEGORY_IDENTIFICATION:
        category = _CATEGORY.search(text)
        first_line = text.strip().split("\n")[0].strip() if text.strip() else ""
        return {
            "category": category.group(1).strip() if category else first_line,
            "description": text,
        }
    if task_type == DRAFT_GENERATION:
        return {"draft": text}
    return {"text": text}


def _parse_filtering(text: str) -> dict[str, Any]:
    lowered = text.lower()
    include = bool(_INCLUDE_WORDS.search(lowered))
    exclude = bool(_EXCLUDE_WORDS.search(lowered))
    reasoning = next(
        (
            line
            for line in text.split("\n")
            if "reason" in line.lower() or "because" in line.lower()
        ),
        text,
    )
    return {
        "decision": "include" if include and not exclude else "exclude",
        "reasoning": reasoning.strip(),
    }


def criteria_met(result: dict[str, Any] | None, phase: CriteriaPhase | str) -> bool:
    """Whether ``result`` says the item satisfies the criteria of ``phase``.

    ``meets_criteria`` always refers to the criteria the prompt asked about,
    so in the exclusion phase ``True`` means "matches an exclusion criterion".
    The ``decision`` field is honoured only when it names the phase's own
    outcome.
    """
    if not result:
        return False
    phase = CriteriaPhase(phase)
    if result.get("meets_criteria") is True:
        return True
    decision = str(result.get("decision") or "").strip().lower()
    if phase is CriteriaPhase.INCLUSION:
        return decision == "include"
    return decision == "exclude"

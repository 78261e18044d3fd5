from __future__ import annotations

import pytest

from open_llm_scheduler.parsing import (
    CATEGORY_IDENTIFICATION,
    DRAFT_GENERATION,
    SEMANTIC_FILTERING,
    CriteriaPhase,
    criteria_met,
    estimate_tokens,
    extract_confidence,
    parse_response,
)


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("abcd", "") == 1
    assert estimate_tokens("abcd", "e") == 2
    assert estimate_tokens("", "") == 0


def test_embedded_json_object_wins() -> None:
    text = 'Here you go:\n```json\n{"meets_criteria": true, "reasoning": "fits"}\n```'

    assert parse_response(text, SEMANTIC_FILTERING) == {
        "meets_criteria": True,
        "reasoning": "fits",
    }


def test_invalid_json_falls_back_to_task_parsing() -> None:
    text = "Decision: exclude {not json}\nBecause the sample is too small."

    result = parse_response(text, SEMANTIC_FILTERING)

    assert result["decision"] == "exclude"
    assert result["reasoning"] == "Because the sample is too small."


def test_filtering_needs_an_unambiguous_include() -> None:
    assert parse_response("INCLUDE", SEMANTIC_FILTERING)["decision"] == "include"
    assert parse_response("Yes, relevant.", SEMANTIC_FILTERING)["decision"] == "include"
    # Include and exclude both mentioned.
    mixed = parse_response("Include? No.", SEMANTIC_FILTERING)
    assert mixed["decision"] == "exclude"
    # Substrings of other words are not decisions.
    assert parse_response("Nothing noteworthy", SEMANTIC_FILTERING)["decision"] == "exclude"
    inconclusive = parse_response("The study is inconclusive", SEMANTIC_FILTERING)
    assert inconclusive["decision"] == "exclude"


def test_category_and_draft_parsing() -> None:
    category = parse_response(
        "Category: Machine Learning\nPapers about models.", CATEGORY_IDENTIFICATION
    )
    assert category["category"] == "Machine Learning"
    assert category["description"].startswith("Category:")

    fallback = parse_response("Clinical trials\nmore text", CATEGORY_IDENTIFICATION)
    assert fallback["category"] == "Clinical trials"

    assert parse_response("Dear editor,", DRAFT_GENERATION) == {"draft": "Dear editor,"}
    assert parse_response("plain", "generic") == {"text": "plain"}


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Confidence: 0.85", 0.85),
        ("confidence 7", 7.0),
        ("I am 90% sure", 0.9),
        ("no score here", None),
    ],
)
def test_extract_confidence(text: str, expected: float | None) -> None:
    assert extract_confidence(text) == expected


def test_criteria_met_follows_phase() -> None:
    assert criteria_met({"meets_criteria": True}, CriteriaPhase.INCLUSION)
    assert criteria_met({"meets_criteria": True}, "exclusion")
    assert criteria_met({"decision": "include"}, "inclusion")
    assert not criteria_met({"decision": "include"}, "exclusion")
    assert criteria_met({"decision": "Exclude"}, "exclusion")
    assert not criteria_met({"decision": "exclude"}, "inclusion")
    assert not criteria_met({"meets_criteria": False, "decision": "unsure"}, "inclusion")
    assert not criteria_met(None, "inclusion")


def test_criteria_met_rejects_unknown_phase() -> None:
    with pytest.raises(ValueError):
        criteria_met({"decision": "include"}, "screening")

from __future__ import annotations

import httpx
import pytest

from autograder.config import Settings
from autograder.errors import EmptyAnswerKeyError, EmptySubmissionError
from autograder.similarity import (
    DEFAULT_SEMANTIC_REASONING,
    SimilarityEngine,
    format_term_list,
    normalize_text,
    tokenize,
)

from helpers import MITOCHONDRIA_ANSWER, MITOCHONDRIA_KEY, failing_gateway, make_gateway, operation_router


def test_normalize_text_decodes_entities_and_strips_markup() -> None:
    assert normalize_text("<p>Energy &amp; ATP&nbsp;Synthesis!</p>") == "energy atp synthesis"
    assert normalize_text(None) == ""


def test_comparison_signs_are_text_not_markup() -> None:
    assert normalize_text("If x < mitochondria produce energy > y") == "if x mitochondria produce energy y"
    assert normalize_text("<p>ATP</p><p>synthesis</p>") == "atp synthesis"
    assert "energy" in tokenize("&lt;b&gt;energy&lt;/b&gt;")

    result = SimilarityEngine().analyze("mitochondria produce energy", "If x < mitochondria produce energy > y")

    assert result.matched_terms == ["energy", "mitochondria", "produce"]
    assert result.final_percent == 100.0


def test_tokenize_drops_short_words_and_deduplicates() -> None:
    assert tokenize("The ATP, the atp and an ox") == ["and", "atp", "the"]


def test_overlap_example_is_deterministic() -> None:
    engine = SimilarityEngine()

    result = engine.analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_ANSWER)

    assert result.method == "overlap"
    assert result.matched_terms == ["atp", "energy", "mitochondria"]
    assert result.missing_terms == ["produce", "synthesis", "via"]
    assert result.key_terms_count == 6
    assert result.student_terms_count == 5
    assert result.union_terms_count == 8
    assert result.coverage_percent == 50.0
    assert result.jaccard_percent == 37.5
    assert result.final_percent == 46.25
    assert result.reasoning.splitlines() == [
        "Key terms matched: 3 of 6 (50%).",
        "Overall term overlap (Jaccard): 37.5% (matched 3 of 8 unique terms).",
        "Final similarity = (70% x 50%) + (30% x 37.5%) = 46.25%.",
        "Short words under 3 characters are ignored.",
    ]
    assert engine.analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_ANSWER) == result


def test_identical_text_scores_full_marks() -> None:
    result = SimilarityEngine().analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_KEY)
    assert result.coverage_percent == 100.0
    assert result.jaccard_percent == 100.0
    assert result.final_percent == 100.0


def test_disjoint_text_scores_zero() -> None:
    result = SimilarityEngine().analyze(MITOCHONDRIA_KEY, "photosynthesis happens in chloroplasts")
    assert result.final_percent == 0.0
    assert result.matched_terms == []


def test_overlap_ignores_case_and_punctuation() -> None:
    engine = SimilarityEngine()
    plain = engine.analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_ANSWER)
    shouted = engine.analyze(MITOCHONDRIA_KEY.upper(), "The MITOCHONDRIA... make ATP -- energy!!")
    assert shouted.final_percent == plain.final_percent
    assert shouted.matched_terms == plain.matched_terms


def test_more_coverage_never_lowers_the_score() -> None:
    engine = SimilarityEngine()
    partial = engine.analyze(MITOCHONDRIA_KEY, "mitochondria")
    fuller = engine.analyze(MITOCHONDRIA_KEY, "mitochondria energy")
    assert fuller.final_percent >= partial.final_percent


@pytest.mark.parametrize("student", ["", "   ", None])
def test_blank_submission_raises(student) -> None:
    with pytest.raises(EmptySubmissionError):
        SimilarityEngine().analyze(MITOCHONDRIA_KEY, student)


@pytest.mark.parametrize("key", ["", "a an of", "<b>&amp;</b>", None])
def test_key_without_terms_raises(key) -> None:
    with pytest.raises(EmptyAnswerKeyError):
        SimilarityEngine().analyze(key, MITOCHONDRIA_ANSWER)


def test_semantic_scoring_counts_partial_matches_as_half() -> None:
    content = {
        "matched_concepts": ["mitochondria", "energy"],
        "partial_concepts": ["atp synthesis"],
        "missing_concepts": ["electron transport"],
        "reasoning": "Covers the main idea.",
    }
    gateway = make_gateway(
        Settings(),
        operation_router({"semantic_similarity": httpx.Response(200, json={"provider": "vendor", "content": content})}),
    )

    result = SimilarityEngine(gateway).analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_ANSWER)

    assert result.method == "semantic"
    assert result.final_percent == 62.5
    assert result.partial_terms == ["atp synthesis"]
    assert result.key_terms_count == 4
    assert result.reasoning == (
        "Covers the main idea.\nSimilarity: (2 full + 1 partial x 0.5) / 4 = 62.5%."
    )


def test_semantic_fenced_json_without_concepts_uses_clamped_percent() -> None:
    content = '```json\n{"similarity_percent": 130}\n```'
    gateway = make_gateway(
        Settings(),
        operation_router({"semantic_similarity": httpx.Response(200, json={"content": content})}),
    )

    result = SimilarityEngine(gateway).analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_ANSWER)

    assert result.method == "semantic"
    assert result.final_percent == 100.0
    assert result.reasoning == DEFAULT_SEMANTIC_REASONING


@pytest.mark.parametrize(
    "handler",
    [
        failing_gateway,
        operation_router({"semantic_similarity": httpx.Response(200, json={"content": "no json here"})}),
        operation_router({"semantic_similarity": httpx.Response(200, json={"content": {"note": "empty"}})}),
    ],
)
def test_semantic_failure_falls_back_to_overlap(handler) -> None:
    gateway = make_gateway(Settings(), handler)

    result = SimilarityEngine(gateway).analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_ANSWER)

    assert result.method == "overlap"
    assert result.final_percent == 46.25


def test_unconfigured_gateway_uses_overlap_without_calling_out() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    gateway = make_gateway(Settings(), handler, key="")
    result = SimilarityEngine(gateway).analyze(MITOCHONDRIA_KEY, MITOCHONDRIA_ANSWER)
    assert result.method == "overlap"
    assert calls == []


def test_format_term_list_truncates_long_lists() -> None:
    terms = [f"term{index:02d}" for index in range(15)]
    line = format_term_list(terms, "Matched", limit=12)
    assert line.startswith("Matched: term00, term01")
    assert line.endswith("term11 (+3 more)")
    assert format_term_list([], "Missing") == ""

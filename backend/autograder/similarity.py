"""Answer-key similarity scoring with explainable term-level evidence.

Two strategies produce the same :class:`SimilarityResult` shape:

* ``overlap`` - deterministic term overlap, a 70/30 blend of key coverage and
  Jaccard similarity.
* ``semantic`` - concept alignment judged by the grading gateway. Any gateway
  failure falls back to ``overlap`` so a result is always produced.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import EmptyAnswerKeyError, EmptySubmissionError, GatewayDecodeError, GatewayError
from .gateway import GatewayClient, coerce_float, decode_json_content
from .markup import strip_markup


logger = logging.getLogger(__name__)


MIN_TOKEN_LENGTH = 3
COVERAGE_WEIGHT = 0.7
JACCARD_WEIGHT = 0.3
PARTIAL_CREDIT = 0.5
TERM_DISPLAY_LIMIT = 12

DEFAULT_SEMANTIC_REASONING = (
    "Similarity based on alignment of meaning and reasoning between the key answer "
    "and the student response."
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")

SimilarityMethod = Literal["overlap", "semantic"]


class SimilarityResult(BaseModel):
    method: SimilarityMethod
    matched_terms: List[str] = Field(default_factory=list)
    missing_terms: List[str] = Field(default_factory=list)
    partial_terms: List[str] = Field(default_factory=list)
    key_terms_count: int = 0
    student_terms_count: int = 0
    matched_terms_count: int = 0
    partial_terms_count: int = 0
    union_terms_count: int = 0
    coverage_percent: float = 0.0
    jaccard_percent: Optional[float] = None
    final_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    weights: Dict[str, float] = Field(default_factory=dict)
    reasoning: str = ""


def normalize_text(text: Optional[str]) -> str:
    """Decode entities, drop markup and reduce to lowercase alphanumeric words."""
    if not text:
        return ""
    lowered = _NON_ALNUM.sub(" ", strip_markup(text).lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def tokenize(text: Optional[str]) -> List[str]:
    """Sorted, deduplicated terms of at least ``MIN_TOKEN_LENGTH`` characters."""
    normalized = normalize_text(text)
    if not normalized:
        return []
    return sorted({token for token in normalized.split(" ") if len(token) >= MIN_TOKEN_LENGTH})


def format_percent(value: float) -> str:
    rendered = f"{value:.2f}".rstrip("0").rstrip(".")
    return rendered or "0"


def format_term_list(terms: Iterable[str], prefix: str, limit: int = TERM_DISPLAY_LIMIT) -> str:
    """Render evidence terms as ``prefix: a, b, c (+N more)`` or an empty string."""
    items = [term for term in terms if term]
    if not items:
        return ""
    shown = items[: max(limit, 1)]
    line = f"{prefix}: {', '.join(shown)}"
    remaining = len(items) - len(shown)
    if remaining > 0:
        line += f" (+{remaining} more)"
    return line


def _clamp_percent(value: float) -> float:
    return round(max(0.0, min(100.0, value)), 2)


def overlap_similarity(key_terms: List[str], student_terms: List[str]) -> SimilarityResult:
    key_set = set(key_terms)
    student_set = set(student_terms)
    matched = sorted(key_set & student_set)
    missing = sorted(key_set - student_set)

    key_count = len(key_set)
    student_count = len(student_set)
    matched_count = len(matched)
    union_count = key_count + student_count - matched_count

    coverage = (matched_count / key_count) * 100 if key_count else 0.0
    jaccard = (matched_count / union_count) * 100 if union_count else 0.0
    final = _clamp_percent(COVERAGE_WEIGHT * coverage + JACCARD_WEIGHT * jaccard)
    coverage_display = round(coverage, 2)
    jaccard_display = round(jaccard, 2)

    reasoning = "\n".join(
        [
            f"Key terms matched: {matched_count} of {key_count} ({format_percent(coverage_display)}%).",
            (
                f"Overall term overlap (Jaccard): {format_percent(jaccard_display)}% "
                f"(matched {matched_count} of {union_count} unique terms)."
            ),
            (
                f"Final similarity = (70% x {format_percent(coverage_display)}%) + "
                f"(30% x {format_percent(jaccard_display)}%) = {format_percent(final)}%."
            ),
            f"Short words under {MIN_TOKEN_LENGTH} characters are ignored.",
        ]
    )

    return SimilarityResult(
        method="overlap",
        matched_terms=matched,
        missing_terms=missing,
        key_terms_count=key_count,
        student_terms_count=student_count,
        matched_terms_count=matched_count,
        union_terms_count=union_count,
        coverage_percent=coverage_display,
        jaccard_percent=jaccard_display,
        final_percent=final,
        weights={"coverage": COVERAGE_WEIGHT, "jaccard": JACCARD_WEIGHT},
        reasoning=reasoning,
    )


def _concept_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    concepts: List[str] = []
    seen = set()
    for entry in value:
        if isinstance(entry, dict):
            entry = entry.get("concept") or entry.get("name") or entry.get("term")
        label = str(entry or "").strip()
        if label and label.lower() not in seen:
            seen.add(label.lower())
            concepts.append(label)
    return concepts


def semantic_from_content(content: Any) -> SimilarityResult:
    """Build a semantic result from decoded gateway content."""
    data = decode_json_content(content)
    matched = _concept_list(data.get("matched_concepts"))
    partial_source = data.get("partially_matched_concepts")
    if partial_source is None:
        partial_source = data.get("partial_concepts")
    partial = _concept_list(partial_source)
    missing = _concept_list(data.get("missing_concepts"))
    total = len(matched) + len(partial) + len(missing)

    reasoning = str(data.get("reasoning") or "").strip() or DEFAULT_SEMANTIC_REASONING
    if total > 0:
        final = _clamp_percent((len(matched) + PARTIAL_CREDIT * len(partial)) / total * 100)
        reasoning += (
            f"\nSimilarity: ({len(matched)} full + {len(partial)} partial x 0.5) / {total} "
            f"= {format_percent(final)}%."
        )
    elif data.get("similarity_percent") is not None:
        final = _clamp_percent(coerce_float(data.get("similarity_percent")))
    else:
        raise GatewayDecodeError("Semantic response carried neither concepts nor a similarity percent.")

    return SimilarityResult(
        method="semantic",
        matched_terms=matched,
        missing_terms=missing,
        partial_terms=partial,
        key_terms_count=max(total, 1),
        student_terms_count=len(matched) + len(partial),
        matched_terms_count=len(matched),
        partial_terms_count=len(partial),
        union_terms_count=total,
        coverage_percent=final,
        final_percent=final,
        weights={"full": 1.0, "partial": PARTIAL_CREDIT},
        reasoning=reasoning,
    )


class SimilarityEngine:
    """Scores a student answer against an answer key."""

    def __init__(self, gateway: Optional[GatewayClient] = None) -> None:
        self._gateway = gateway

    def analyze(self, key: Optional[str], student: Optional[str]) -> SimilarityResult:
        if not student or not student.strip():
            raise EmptySubmissionError("Student submission text is empty.")
        key_terms = tokenize(key)
        if not key_terms:
            raise EmptyAnswerKeyError("Answer key contains no usable terms.")

        if self._gateway is not None and self._gateway.is_ready():
            try:
                return self.semantic(key or "", student)
            except GatewayError as exc:
                logger.warning("Semantic similarity unavailable, using term overlap: %s", exc)

        return overlap_similarity(key_terms, tokenize(student))

    def semantic(self, key: str, student: str) -> SimilarityResult:
        if self._gateway is None:
            raise GatewayError("No grading gateway is attached to the similarity engine.")
        response = self._gateway.grade(
            "semantic_similarity",
            {"answer_key": key, "student_answer": student},
            quality="balanced",
        )
        return semantic_from_content(response.content)


__all__ = [
    "DEFAULT_SEMANTIC_REASONING",
    "MIN_TOKEN_LENGTH",
    "SimilarityEngine",
    "SimilarityResult",
    "format_percent",
    "format_term_list",
    "normalize_text",
    "overlap_similarity",
    "semantic_from_content",
    "tokenize",
]

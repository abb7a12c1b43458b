"""Rubric snapshots and reconciliation of gateway criterion scores against them."""

from __future__ import annotations

import hashlib
import json
from typing import Any, List, Literal, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .gateway import GatewayCriterion, coerce_float
from .markup import strip_markup


RubricMethod = Literal["rubric", "rubric_ranges"]


class RubricLevel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = 0
    label: str = ""
    description: str = ""
    score: float = 0.0


class RubricCriterion(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = 0
    name: str
    max_score: float = 0.0
    levels: Tuple[RubricLevel, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _derive_max_score(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("max_score") is None:
            levels = data.get("levels") or []
            scores = [
                coerce_float(level.get("score") if isinstance(level, dict) else getattr(level, "score", 0))
                for level in levels
            ]
            data = {**data, "max_score": max(scores) if scores else 0.0}
        return data


def _criteria_fingerprint(criteria: Sequence[Any]) -> str:
    rows = [
        criterion.model_dump(mode="json") if isinstance(criterion, BaseModel) else criterion
        for criterion in criteria
    ]
    canonical = json.dumps(rows, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


class RubricSnapshot(BaseModel):
    """Immutable copy of a rubric taken when a submission is queued."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    method: RubricMethod = "rubric"
    version: Optional[int] = None
    definition_id: Optional[int] = None
    criteria: Tuple[RubricCriterion, ...] = ()
    max_score: float = 0.0
    hash: str = ""

    @model_validator(mode="before")
    @classmethod
    def _fill_totals(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        criteria = [
            item if isinstance(item, RubricCriterion) else RubricCriterion.model_validate(item)
            for item in data.get("criteria") or []
        ]
        filled = {**data, "criteria": tuple(criteria)}
        if data.get("max_score") is None:
            filled["max_score"] = sum(criterion.max_score for criterion in criteria)
        if not data.get("hash"):
            filled["hash"] = _criteria_fingerprint(criteria)
        return filled

    @property
    def rubric_version(self) -> Optional[int]:
        return self.version if self.version is not None else self.definition_id


class RubricCriterionScore(BaseModel):
    criterion_id: int
    name: str
    score: float
    max_score: float
    feedback: str = ""
    level_id: Optional[int] = None
    level_label: Optional[str] = None


class RubricMapping(BaseModel):
    criteria: List[RubricCriterionScore] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    calculated_score: float = 0.0
    max_score: float = 0.0
    reported_score: Optional[float] = None


def clean_label(text: Optional[str]) -> str:
    return strip_markup(text)


def normalize_name(text: Optional[str]) -> str:
    return clean_label(text).lower()


def _format_score(value: float) -> str:
    rendered = f"{value:.2f}".rstrip("0").rstrip(".")
    return rendered or "0"


def rubric_to_json(snapshot: RubricSnapshot) -> str:
    """Render the rubric the way it is presented to the grading gateway."""
    document = {
        "name": snapshot.name,
        "max_score": snapshot.max_score,
        "criteria": [
            {
                "name": clean_label(criterion.name),
                "max_score": criterion.max_score,
                "levels": [
                    {
                        "label": clean_label(level.label),
                        "score": level.score,
                        "description": clean_label(level.description),
                    }
                    for level in criterion.levels
                ],
            }
            for criterion in snapshot.criteria
        ],
    }
    return json.dumps(document, ensure_ascii=False)


def match_level(levels: Sequence[RubricLevel], score: float) -> Optional[RubricLevel]:
    """Exact score match, else the closest level (earliest wins ties)."""
    if not levels:
        return None
    for level in levels:
        if abs(level.score - score) < 1e-9:
            return level
    return min(levels, key=lambda level: abs(level.score - score))


def _as_gateway_criterion(entry: Any) -> GatewayCriterion:
    if isinstance(entry, GatewayCriterion):
        return entry
    if isinstance(entry, Mapping):
        return GatewayCriterion(
            name=str(entry.get("name") or "").strip(),
            score=coerce_float(entry.get("score")),
            feedback=str(entry.get("feedback") or "").strip(),
        )
    return GatewayCriterion()


def map_scores(
    ai_criteria: Sequence[Any],
    rubric: RubricSnapshot,
    reported_score: Optional[float] = None,
) -> RubricMapping:
    """Reconcile named criterion scores with the rubric snapshot.

    Each rubric criterion takes the first unused entry with an equal normalized
    name, else the first unused entry whose name is contained in the criterion
    name. Shape mismatches never raise; they surface as warnings.
    """
    entries = [_as_gateway_criterion(entry) for entry in ai_criteria]
    used = [False] * len(entries)
    scores: List[RubricCriterionScore] = []
    warnings: List[str] = []

    for criterion in rubric.criteria:
        target = normalize_name(criterion.name)
        match_index: Optional[int] = None
        for index, entry in enumerate(entries):
            if not used[index] and normalize_name(entry.name) == target:
                match_index = index
                break
        if match_index is None:
            for index, entry in enumerate(entries):
                candidate = normalize_name(entry.name)
                if not used[index] and candidate and candidate in target:
                    match_index = index
                    break

        if match_index is None:
            warnings.append(f"Missing criteria in AI response: {clean_label(criterion.name)}")
            score = 0.0
            feedback = ""
        else:
            used[match_index] = True
            entry = entries[match_index]
            score = max(entry.score, 0.0)
            if score > criterion.max_score:
                warnings.append(
                    f"Score for '{clean_label(criterion.name)}' exceeded maximum "
                    f"{_format_score(criterion.max_score)}; clamped"
                )
                score = criterion.max_score
            feedback = entry.feedback

        level = match_level(criterion.levels, score)
        scores.append(
            RubricCriterionScore(
                criterion_id=criterion.id,
                name=criterion.name,
                score=score,
                max_score=criterion.max_score,
                feedback=feedback,
                level_id=level.id if level else None,
                level_label=level.label if level else None,
            )
        )

    for index, entry in enumerate(entries):
        if not used[index]:
            label = clean_label(entry.name) or f"criterion #{index + 1}"
            warnings.append(f"Warning: rubric changed: {label}")

    return RubricMapping(
        criteria=scores,
        warnings=warnings,
        calculated_score=sum(item.score for item in scores),
        max_score=rubric.max_score,
        reported_score=reported_score,
    )


__all__ = [
    "RubricCriterion",
    "RubricCriterionScore",
    "RubricLevel",
    "RubricMapping",
    "RubricSnapshot",
    "clean_label",
    "map_scores",
    "match_level",
    "normalize_name",
    "rubric_to_json",
]

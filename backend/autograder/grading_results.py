"""Draft grading results, their rubric rows, and the export shape for reviewers."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import delete, select, update

from .db.base import utcnow
from .db.models import GradingResultModel, RubricScoreModel
from .db.session import session_scope
from .errors import IllegalTransitionError
from .rubric import RubricCriterionScore


logger = logging.getLogger(__name__)


class ResultStatus(str, Enum):
    DRAFT = "draft"
    RELEASED = "released"
    REJECTED = "rejected"


class GradingMethod(str, Enum):
    RUBRIC_RANGES = "rubric_ranges"
    RUBRIC = "rubric"
    KEYMATCH = "keymatch"


REVIEWED_STATUSES = (ResultStatus.RELEASED, ResultStatus.REJECTED)


class ResultDraft(BaseModel):
    queue_id: Optional[int] = None
    module_name: str
    module_instance_id: int
    user_id: int
    course_id: Optional[int] = None
    submission_id: Optional[int] = None
    grade: float
    max_grade: float = 100.0
    reasoning: str = ""
    confidence: Optional[float] = None
    method: GradingMethod
    provider: str
    quality: str = "balanced"
    rubric_version: Optional[int] = None
    rubric_analysis: Optional[Any] = None
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    criteria: List[RubricCriterionScore] = Field(default_factory=list)


class GradingResult(ResultDraft):
    id: int
    status: ResultStatus = ResultStatus.DRAFT
    reviewed: bool = False
    reviewer_id: Optional[int] = None
    review_note: Optional[str] = None
    created_at: datetime
    reviewed_at: Optional[datetime] = None


class ExportedCriterion(BaseModel):
    name: str
    score: Optional[float] = None
    max_score: Optional[float] = None
    feedback: str = ""
    level: Optional[str] = None


class ResultExport(BaseModel):
    id: int
    queue_id: Optional[int] = None
    grade: Optional[float] = None
    max_grade: float
    status: ResultStatus
    reasoning: str = ""
    confidence: Optional[float] = None
    method: GradingMethod
    provider: str
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    criteria: List[ExportedCriterion] = Field(default_factory=list)


class ExplainedCriterion(BaseModel):
    id: Optional[int] = None
    name: str
    level_id: Optional[int] = None
    level_name: str = ""
    points: float = 0.0
    max_points: float = 0.0
    reasoning: str = ""


class GradeExplanation(BaseModel):
    """What a student sees once a grade is released."""

    result_id: int
    grade: float
    max_grade: float
    reasoning: str = ""
    confidence: Optional[float] = None
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    criteria: List[ExplainedCriterion] = Field(default_factory=list)


class ResultStore:
    """Persists draft results and guards their review transitions."""

    def create_draft(self, draft: ResultDraft, *, now: Optional[datetime] = None) -> GradingResult:
        """Store a draft; a queue item that already produced a result gets that result back."""
        now = now or utcnow()
        with session_scope() as session:
            if draft.queue_id is not None:
                existing = self._find_by_queue(session, draft.queue_id)
                if existing is not None:
                    logger.info("Queue item %s already produced result %s", draft.queue_id, existing.id)
                    return self._model_to_domain(existing)
            model = GradingResultModel(
                queue_id=draft.queue_id,
                module_name=draft.module_name,
                module_instance_id=draft.module_instance_id,
                user_id=draft.user_id,
                course_id=draft.course_id,
                submission_id=draft.submission_id,
                grade=draft.grade,
                max_grade=draft.max_grade,
                reasoning=draft.reasoning,
                confidence=draft.confidence,
                method=draft.method.value,
                provider=draft.provider,
                quality=draft.quality,
                rubric_version=draft.rubric_version,
                rubric_analysis=draft.rubric_analysis,
                strengths=list(draft.strengths),
                improvements=list(draft.improvements),
                warnings=list(draft.warnings),
                status=ResultStatus.DRAFT.value,
                reviewed=False,
                created_at=now,
            )
            model.rubric_scores = [
                RubricScoreModel(
                    criterion_id=criterion.criterion_id,
                    criterion_name=criterion.name,
                    level_id=criterion.level_id,
                    level_label=criterion.level_label,
                    score=criterion.score,
                    max_score=criterion.max_score,
                    feedback=criterion.feedback,
                    created_at=now,
                )
                for criterion in draft.criteria
            ]
            session.add(model)
            session.flush()
            logger.info(
                "Stored %s draft result %s for user %s (%s/%s)",
                draft.method.value,
                model.id,
                draft.user_id,
                draft.module_name,
                draft.module_instance_id,
            )
            return self._model_to_domain(model)

    def get(self, result_id: int) -> GradingResult:
        with session_scope(commit=False) as session:
            return self._model_to_domain(self._get_model(session, result_id))

    def find_by_queue(self, queue_id: int) -> Optional[GradingResult]:
        with session_scope(commit=False) as session:
            model = self._find_by_queue(session, queue_id)
            return self._model_to_domain(model) if model is not None else None

    def latest_by_user(self, module_name: str, module_instance_id: int) -> Dict[int, GradingResult]:
        """Newest result per user for one activity."""
        with session_scope(commit=False) as session:
            rows = session.execute(
                select(GradingResultModel)
                .where(
                    GradingResultModel.module_name == module_name,
                    GradingResultModel.module_instance_id == module_instance_id,
                )
                .order_by(GradingResultModel.created_at.asc(), GradingResultModel.id.asc())
            ).scalars().all()
            return {row.user_id: self._model_to_domain(row) for row in rows}

    def latest_released(
        self,
        module_name: str,
        module_instance_id: int,
        user_id: int,
    ) -> Optional[GradingResult]:
        with session_scope(commit=False) as session:
            model = session.execute(
                select(GradingResultModel)
                .where(
                    GradingResultModel.module_name == module_name,
                    GradingResultModel.module_instance_id == module_instance_id,
                    GradingResultModel.user_id == user_id,
                    GradingResultModel.status == ResultStatus.RELEASED.value,
                )
                .order_by(
                    GradingResultModel.reviewed_at.desc(),
                    GradingResultModel.created_at.desc(),
                    GradingResultModel.id.desc(),
                )
                .limit(1)
            ).scalar_one_or_none()
            return self._model_to_domain(model) if model is not None else None

    def has_active_result(self, module_name: str, module_instance_id: int, user_id: int) -> bool:
        """True when a draft or released result already exists for the user."""
        with session_scope(commit=False) as session:
            stmt = (
                select(GradingResultModel.id)
                .where(
                    GradingResultModel.module_name == module_name,
                    GradingResultModel.module_instance_id == module_instance_id,
                    GradingResultModel.user_id == user_id,
                    GradingResultModel.status != ResultStatus.REJECTED.value,
                )
                .limit(1)
            )
            return session.execute(stmt).scalar_one_or_none() is not None

    def mark_reviewed(
        self,
        result_id: int,
        status: ResultStatus,
        reviewer_id: int,
        *,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> GradingResult:
        """Move a draft to a terminal status; anything else is an illegal transition."""
        if status not in REVIEWED_STATUSES:
            raise IllegalTransitionError(f"Results cannot be moved back to '{status.value}'.")
        now = now or utcnow()
        with session_scope() as session:
            outcome = session.execute(
                update(GradingResultModel)
                .where(
                    GradingResultModel.id == result_id,
                    GradingResultModel.status == ResultStatus.DRAFT.value,
                )
                .values(
                    status=status.value,
                    reviewed=True,
                    reviewer_id=reviewer_id,
                    review_note=note,
                    reviewed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            model = self._get_model(session, result_id)
            if outcome.rowcount != 1:
                raise IllegalTransitionError(
                    f"Result {result_id} is already '{model.status}' and cannot be {status.value}."
                )
            session.refresh(model)
            return self._model_to_domain(model)

    def export(self, result_id: int) -> ResultExport:
        return to_export(self.get(result_id))

    def purge_reviewed(self, cutoff: datetime) -> int:
        """Delete released/rejected results (and their rubric rows) created before ``cutoff``."""
        reviewed = [status.value for status in REVIEWED_STATUSES]
        with session_scope() as session:
            expired_ids = select(GradingResultModel.id).where(
                GradingResultModel.status.in_(reviewed),
                GradingResultModel.created_at < cutoff,
            )
            session.execute(
                delete(RubricScoreModel)
                .where(RubricScoreModel.result_id.in_(expired_ids))
                .execution_options(synchronize_session=False)
            )
            result = session.execute(
                delete(GradingResultModel)
                .where(
                    GradingResultModel.status.in_(reviewed),
                    GradingResultModel.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_by_queue(self, session, queue_id: int) -> Optional[GradingResultModel]:
        return session.execute(
            select(GradingResultModel)
            .where(GradingResultModel.queue_id == queue_id)
            .order_by(GradingResultModel.id.asc())
            .limit(1)
        ).scalar_one_or_none()

    def _get_model(self, session, result_id: int) -> GradingResultModel:
        model = session.get(GradingResultModel, result_id)
        if model is None:
            raise LookupError(f"Grading result {result_id} does not exist.")
        return model

    def _model_to_domain(self, model: GradingResultModel) -> GradingResult:
        criteria = [
            RubricCriterionScore(
                criterion_id=row.criterion_id,
                name=row.criterion_name or "",
                score=row.score or 0.0,
                max_score=row.max_score or 0.0,
                feedback=row.feedback or "",
                level_id=row.level_id,
                level_label=row.level_label,
            )
            for row in model.rubric_scores
        ]
        return GradingResult(
            id=model.id,
            queue_id=model.queue_id,
            module_name=model.module_name,
            module_instance_id=model.module_instance_id,
            user_id=model.user_id,
            course_id=model.course_id,
            submission_id=model.submission_id,
            grade=model.grade if model.grade is not None else 0.0,
            max_grade=model.max_grade,
            reasoning=model.reasoning or "",
            confidence=model.confidence,
            method=GradingMethod(model.method),
            provider=model.provider,
            quality=model.quality,
            rubric_version=model.rubric_version,
            rubric_analysis=model.rubric_analysis,
            strengths=list(model.strengths or []),
            improvements=list(model.improvements or []),
            warnings=list(model.warnings or []),
            criteria=criteria,
            status=ResultStatus(model.status),
            reviewed=bool(model.reviewed),
            reviewer_id=model.reviewer_id,
            review_note=model.review_note,
            created_at=model.created_at,
            reviewed_at=model.reviewed_at,
        )


def to_export(result: GradingResult) -> ResultExport:
    return ResultExport(
        id=result.id,
        queue_id=result.queue_id,
        grade=result.grade,
        max_grade=result.max_grade,
        status=result.status,
        reasoning=result.reasoning,
        confidence=result.confidence,
        method=result.method,
        provider=result.provider,
        strengths=list(result.strengths),
        improvements=list(result.improvements),
        warnings=list(result.warnings),
        criteria=[
            ExportedCriterion(
                name=criterion.name,
                score=criterion.score,
                max_score=criterion.max_score,
                feedback=criterion.feedback,
                level=criterion.level_label,
            )
            for criterion in result.criteria
        ],
    )


def to_explanation(result: GradingResult) -> GradeExplanation:
    return GradeExplanation(
        result_id=result.id,
        grade=result.grade,
        max_grade=result.max_grade,
        reasoning=result.reasoning,
        confidence=result.confidence,
        strengths=list(result.strengths),
        improvements=list(result.improvements),
        criteria=[
            ExplainedCriterion(
                id=criterion.criterion_id,
                name=criterion.name or "Criterion",
                level_id=criterion.level_id,
                level_name=criterion.level_label or "",
                points=criterion.score,
                max_points=criterion.max_score,
                reasoning=criterion.feedback,
            )
            for criterion in result.criteria
        ],
    )


result_store = ResultStore()


__all__ = [
    "ExplainedCriterion",
    "ExportedCriterion",
    "GradeExplanation",
    "GradingMethod",
    "GradingResult",
    "ResultDraft",
    "ResultExport",
    "ResultStatus",
    "ResultStore",
    "REVIEWED_STATUSES",
    "result_store",
    "to_export",
    "to_explanation",
]

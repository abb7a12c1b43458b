"""Reviewer decisions on draft results: release to the gradebook or reject."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .audit import AuditTrail, audit_trail
from .collaborators import Gradebook, LoggingGradebook
from .config import Settings
from .db.base import utcnow
from .errors import IllegalTransitionError
from .grading_results import ResultStatus, ResultStore, result_store
from .telemetry import emit_event


logger = logging.getLogger(__name__)

DEFAULT_REJECTION_NOTE = "Teacher rejected AI grade, will grade manually"


class ReviewOutcome(BaseModel):
    result_id: int
    status: ResultStatus
    reviewed_at: datetime


class ReviewWorkflow:
    def __init__(
        self,
        *,
        settings: Settings,
        results: Optional[ResultStore] = None,
        audit: Optional[AuditTrail] = None,
        gradebook: Optional[Gradebook] = None,
    ) -> None:
        self._push_feedback = settings.push_feedback
        self._results = results or result_store
        self._audit = audit or audit_trail
        self._gradebook: Gradebook = gradebook or LoggingGradebook()

    def release(self, result_id: int, reviewer_id: int, *, now: Optional[datetime] = None) -> ReviewOutcome:
        """Publish a draft grade; the gradebook push happens before the status flips."""
        now = now or utcnow()
        draft = self._results.get(result_id)
        if draft.status != ResultStatus.DRAFT:
            raise IllegalTransitionError(
                f"Result {result_id} is already '{draft.status.value}' and cannot be released."
            )
        self._gradebook.push_grade(draft, include_feedback=self._push_feedback)
        released = self._results.mark_reviewed(result_id, ResultStatus.RELEASED, reviewer_id, now=now)
        self._audit.log_action(
            "released",
            queue_id=released.queue_id,
            result_id=released.id,
            actor_id=reviewer_id,
            details=f"Grade {released.grade:g}/{released.max_grade:g} released",
            now=now,
        )
        emit_event(
            "grade_reviewed",
            result_id=released.id,
            queue_id=released.queue_id,
            status=released.status,
            reviewer_id=reviewer_id,
        )
        emit_event(
            "grade_released",
            result_id=released.id,
            user_id=released.user_id,
            grade=released.grade,
            max_grade=released.max_grade,
        )
        logger.info("Result %s released by reviewer %s", result_id, reviewer_id)
        return ReviewOutcome(result_id=released.id, status=released.status, reviewed_at=released.reviewed_at or now)

    def reject(
        self,
        result_id: int,
        reviewer_id: int,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ReviewOutcome:
        now = now or utcnow()
        note = (reason or "").strip() or DEFAULT_REJECTION_NOTE
        rejected = self._results.mark_reviewed(
            result_id, ResultStatus.REJECTED, reviewer_id, note=note, now=now
        )
        self._audit.log_action(
            "rejected",
            queue_id=rejected.queue_id,
            result_id=rejected.id,
            actor_id=reviewer_id,
            details=note,
            now=now,
        )
        emit_event(
            "grade_reviewed",
            result_id=rejected.id,
            queue_id=rejected.queue_id,
            status=rejected.status,
            reviewer_id=reviewer_id,
        )
        logger.info("Result %s rejected by reviewer %s", result_id, reviewer_id)
        return ReviewOutcome(result_id=rejected.id, status=rejected.status, reviewed_at=rejected.reviewed_at or now)


__all__ = ["DEFAULT_REJECTION_NOTE", "ReviewOutcome", "ReviewWorkflow"]

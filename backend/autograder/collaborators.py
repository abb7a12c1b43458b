"""Contracts for the host systems the grading core talks to."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol

from sqlalchemy import select

from .db.models import GradingQueueItemModel
from .db.session import session_scope
from .grading_queue import QueueJob
from .grading_results import GradingResult


logger = logging.getLogger(__name__)


class Gradebook(Protocol):
    def push_grade(self, result: GradingResult, *, include_feedback: bool = True) -> None:
        """Write ``result.grade`` (and optionally its reasoning) to the host gradebook."""


class SubmissionSource(Protocol):
    def list_submitted_users(self, module_name: str, module_instance_id: int) -> List[int]:
        ...

    def load_job(self, module_name: str, module_instance_id: int, user_id: int) -> Optional[QueueJob]:
        ...


class LoggingGradebook:
    """Gradebook stand-in that records pushes in the log and in memory."""

    def __init__(self) -> None:
        self.pushed: List[Dict[str, object]] = []

    def push_grade(self, result: GradingResult, *, include_feedback: bool = True) -> None:
        entry: Dict[str, object] = {
            "result_id": result.id,
            "user_id": result.user_id,
            "module_name": result.module_name,
            "module_instance_id": result.module_instance_id,
            "grade": result.grade,
            "max_grade": result.max_grade,
        }
        if include_feedback:
            entry["feedback"] = result.reasoning
        self.pushed.append(entry)
        logger.info(
            "Pushed grade %.2f/%.2f for user %s to %s/%s gradebook",
            result.grade,
            result.max_grade,
            result.user_id,
            result.module_name,
            result.module_instance_id,
        )


class StoredSubmissionSource:
    """Rebuilds jobs from the most recent queued request per user."""

    def list_submitted_users(self, module_name: str, module_instance_id: int) -> List[int]:
        with session_scope(commit=False) as session:
            rows = session.execute(
                select(GradingQueueItemModel.user_id)
                .where(
                    GradingQueueItemModel.module_name == module_name,
                    GradingQueueItemModel.module_instance_id == module_instance_id,
                )
                .distinct()
                .order_by(GradingQueueItemModel.user_id.asc())
            ).scalars().all()
            return list(rows)

    def load_job(self, module_name: str, module_instance_id: int, user_id: int) -> Optional[QueueJob]:
        with session_scope(commit=False) as session:
            model = session.execute(
                select(GradingQueueItemModel)
                .where(
                    GradingQueueItemModel.module_name == module_name,
                    GradingQueueItemModel.module_instance_id == module_instance_id,
                    GradingQueueItemModel.user_id == user_id,
                )
                .order_by(GradingQueueItemModel.created_at.desc(), GradingQueueItemModel.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if model is None:
                return None
            request = (model.payload or {}).get("request")
            if not isinstance(request, dict):
                return None
            return QueueJob.model_validate(request)


__all__ = ["Gradebook", "LoggingGradebook", "StoredSubmissionSource", "SubmissionSource"]

"""Persistent grading queue: pending -> processing -> done | failed."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from statistics import mean
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, or_, select, update

from .config import Settings
from .db.base import utcnow
from .db.models import GradingQueueItemModel
from .db.session import session_scope
from .errors import QueueTransitionError
from .rubric import RubricSnapshot


logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = (QueueStatus.DONE, QueueStatus.FAILED)
OPEN_STATUS_VALUES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


class QueueJob(BaseModel):
    """Submission context captured when a job is queued."""

    model_config = ConfigDict(extra="allow")

    userid: int
    courseid: Optional[int] = None
    module_name: str = ""
    module_instance_id: int = 0
    submission_text: str = ""
    answer_key: Optional[str] = None
    rubric_snapshot: Optional[RubricSnapshot] = None
    rubric_json: Optional[str] = None
    max_grade: float = 100.0
    question: Optional[str] = None
    submission_id: Optional[int] = None
    cmid: Optional[int] = None
    custom_instructions: Optional[str] = None


class QueueItem(BaseModel):
    id: int
    status: QueueStatus
    payload: Dict[str, Any] = Field(default_factory=dict)
    retries: int = 0
    last_error: Optional[str] = None
    next_run_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    user_id: int
    course_id: Optional[int] = None
    cmid: Optional[int] = None
    module_name: str
    module_instance_id: int
    component: str = ""
    event_name: str = ""

    @property
    def request(self) -> Dict[str, Any]:
        request = self.payload.get("request")
        return request if isinstance(request, dict) else {}

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self.payload.get("history") or [])


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    oldest_pending_at: Optional[datetime] = None
    average_processing_seconds: Optional[float] = None


def _history_entry(event: str, now: datetime, **fields: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"event": event, "at": now.isoformat()}
    entry.update({key: value for key, value in fields.items() if value is not None})
    return entry


class GradingQueue:
    """Database-backed queue with batch-pull claiming and bounded retries."""

    def __init__(self, settings: Settings) -> None:
        self._max_retries = max(settings.max_retries, 1)
        self._retry_delay = max(settings.retry_delay_seconds, 0)
        self._batch_size = max(settings.queue_batch_size, 1)
        self._claim_timeout = max(settings.claim_timeout_seconds, 1)

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def enqueue(
        self,
        job: QueueJob,
        *,
        component: str = "",
        event_name: str = "",
        now: Optional[datetime] = None,
    ) -> int:
        now = now or utcnow()
        request = job.model_dump(mode="json", exclude_none=True)
        with session_scope() as session:
            model = GradingQueueItemModel(
                user_id=job.userid,
                course_id=job.courseid,
                cmid=job.cmid,
                module_name=job.module_name,
                module_instance_id=job.module_instance_id,
                component=component or f"mod_{job.module_name}",
                event_name=event_name,
                status=QueueStatus.PENDING.value,
                payload={"request": request, "history": [_history_entry("queued", now)]},
                retries=0,
                created_at=now,
            )
            session.add(model)
            session.flush()
            queue_id = model.id
        logger.info(
            "Queued submission of user %s for %s/%s as item %s",
            job.userid,
            job.module_name,
            job.module_instance_id,
            queue_id,
        )
        return queue_id

    def dequeue_eligible(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> List[QueueItem]:
        """Claim up to ``limit`` eligible items, oldest first.

        Each candidate is claimed with a conditional update on its pending
        status; rows another worker claimed first are skipped. Claims older than
        the claim timeout are released first.
        """
        now = now or utcnow()
        limit = limit or self._batch_size
        self.release_stale_claims(now)
        with session_scope() as session:
            stmt = (
                select(GradingQueueItemModel.id)
                .where(
                    GradingQueueItemModel.status == QueueStatus.PENDING.value,
                    or_(
                        GradingQueueItemModel.next_run_at.is_(None),
                        GradingQueueItemModel.next_run_at <= now,
                    ),
                )
                .order_by(GradingQueueItemModel.created_at.asc(), GradingQueueItemModel.id.asc())
                .limit(limit)
            )
            candidates = list(session.execute(stmt).scalars().all())
            claimed: List[int] = []
            for queue_id in candidates:
                result = session.execute(
                    update(GradingQueueItemModel)
                    .where(
                        GradingQueueItemModel.id == queue_id,
                        GradingQueueItemModel.status == QueueStatus.PENDING.value,
                    )
                    .values(status=QueueStatus.PROCESSING.value, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(queue_id)
                else:
                    logger.debug("Queue item %s was claimed elsewhere", queue_id)

        if not claimed:
            return []
        with session_scope(commit=False) as session:
            rows = session.execute(
                select(GradingQueueItemModel)
                .where(GradingQueueItemModel.id.in_(claimed))
                .order_by(GradingQueueItemModel.created_at.asc(), GradingQueueItemModel.id.asc())
            ).scalars().all()
            return [self._model_to_domain(row) for row in rows]

    def complete(
        self,
        queue_id: int,
        *,
        result_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> QueueItem:
        now = now or utcnow()
        with session_scope() as session:
            model = self._get_model(session, queue_id)
            self._require_processing(model)
            model.status = QueueStatus.DONE.value
            model.completed_at = now
            model.last_error = None
            model.payload = self._append_history(
                model.payload, _history_entry("completed", now, result_id=result_id)
            )
            session.flush()
            return self._model_to_domain(model)

    def record_failure(
        self,
        queue_id: int,
        error: str,
        *,
        trace: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QueueItem:
        """Count a failed attempt; reschedule with linear backoff or fail terminally."""
        now = now or utcnow()
        with session_scope() as session:
            model = self._get_model(session, queue_id)
            self._require_processing(model)
            self._apply_failure(model, error, trace, now)
            session.flush()
            return self._model_to_domain(model)

    def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Count claims held longer than the claim timeout as failed attempts."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self._claim_timeout)
        released = 0
        with session_scope() as session:
            stale = session.execute(
                select(GradingQueueItemModel)
                .where(
                    GradingQueueItemModel.status == QueueStatus.PROCESSING.value,
                    GradingQueueItemModel.claimed_at.is_not(None),
                    GradingQueueItemModel.claimed_at < cutoff,
                )
                .order_by(GradingQueueItemModel.id.asc())
            ).scalars().all()
            for model in stale:
                self._apply_failure(
                    model,
                    f"Claim expired after {self._claim_timeout} seconds without completion.",
                    None,
                    now,
                )
                released += 1
        return released

    def has_open_item(self, module_name: str, module_instance_id: int, user_id: int) -> bool:
        with session_scope(commit=False) as session:
            stmt = (
                select(GradingQueueItemModel.id)
                .where(
                    GradingQueueItemModel.module_name == module_name,
                    GradingQueueItemModel.module_instance_id == module_instance_id,
                    GradingQueueItemModel.user_id == user_id,
                    GradingQueueItemModel.status.in_(OPEN_STATUS_VALUES),
                )
                .limit(1)
            )
            return session.execute(stmt).scalar_one_or_none() is not None

    def open_items(self, module_name: str, module_instance_id: int) -> List[QueueItem]:
        """Pending and processing items of one activity, oldest first."""
        with session_scope(commit=False) as session:
            rows = session.execute(
                select(GradingQueueItemModel)
                .where(
                    GradingQueueItemModel.module_name == module_name,
                    GradingQueueItemModel.module_instance_id == module_instance_id,
                    GradingQueueItemModel.status.in_(OPEN_STATUS_VALUES),
                )
                .order_by(GradingQueueItemModel.created_at.asc(), GradingQueueItemModel.id.asc())
            ).scalars().all()
            return [self._model_to_domain(row) for row in rows]

    def get(self, queue_id: int) -> QueueItem:
        with session_scope(commit=False) as session:
            return self._model_to_domain(self._get_model(session, queue_id))

    def stats(self, now: Optional[datetime] = None) -> QueueStats:
        now = now or utcnow()
        with session_scope(commit=False) as session:
            counts = dict(
                session.execute(
                    select(GradingQueueItemModel.status, func.count(GradingQueueItemModel.id)).group_by(
                        GradingQueueItemModel.status
                    )
                ).all()
            )
            oldest = session.execute(
                select(GradingQueueItemModel.created_at)
                .where(GradingQueueItemModel.status == QueueStatus.PENDING.value)
                .order_by(GradingQueueItemModel.created_at.asc())
                .limit(1)
            ).scalar_one_or_none()
            durations = [
                (completed - created).total_seconds()
                for created, completed in session.execute(
                    select(GradingQueueItemModel.created_at, GradingQueueItemModel.completed_at).where(
                        GradingQueueItemModel.status == QueueStatus.DONE.value,
                        GradingQueueItemModel.completed_at.is_not(None),
                    )
                ).all()
                if created is not None and completed is not None and completed <= now
            ]

        return QueueStats(
            pending=counts.get(QueueStatus.PENDING.value, 0),
            processing=counts.get(QueueStatus.PROCESSING.value, 0),
            completed=counts.get(QueueStatus.DONE.value, 0),
            failed=counts.get(QueueStatus.FAILED.value, 0),
            total=sum(counts.values()),
            oldest_pending_at=oldest,
            average_processing_seconds=round(mean(durations), 2) if durations else None,
        )

    def purge_expired(self, cutoff: datetime) -> int:
        """Delete terminal items completed before ``cutoff``."""
        with session_scope() as session:
            result = session.execute(
                delete(GradingQueueItemModel)
                .where(
                    GradingQueueItemModel.status.in_([status.value for status in TERMINAL_STATUSES]),
                    GradingQueueItemModel.completed_at.is_not(None),
                    GradingQueueItemModel.completed_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d finished queue items completed before %s", removed, cutoff.isoformat())
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_model(self, session, queue_id: int) -> GradingQueueItemModel:
        model = session.get(GradingQueueItemModel, queue_id)
        if model is None:
            raise LookupError(f"Queue item {queue_id} does not exist.")
        return model

    def _apply_failure(
        self,
        model: GradingQueueItemModel,
        error: str,
        trace: Optional[str],
        now: datetime,
    ) -> None:
        model.retries = (model.retries or 0) + 1
        model.last_error = error
        model.claimed_at = None
        if model.retries >= self._max_retries:
            model.status = QueueStatus.FAILED.value
            model.completed_at = now
            model.next_run_at = None
            entry = _history_entry("failed", now, attempt=model.retries, error=error, trace=trace)
            logger.error("Queue item %s failed permanently: %s", model.id, error)
        else:
            model.status = QueueStatus.PENDING.value
            model.next_run_at = now + timedelta(seconds=self._retry_delay * model.retries)
            entry = _history_entry(
                "retry",
                now,
                attempt=model.retries,
                error=error,
                next_run_at=model.next_run_at.isoformat(),
            )
            logger.warning(
                "Queue item %s failed (attempt %d/%d), retrying at %s: %s",
                model.id,
                model.retries,
                self._max_retries,
                model.next_run_at.isoformat(),
                error,
            )
        model.payload = self._append_history(model.payload, entry)

    def _require_processing(self, model: GradingQueueItemModel) -> None:
        if model.status != QueueStatus.PROCESSING.value:
            raise QueueTransitionError(
                f"Queue item {model.id} is '{model.status}', expected '{QueueStatus.PROCESSING.value}'."
            )

    @staticmethod
    def _append_history(payload: Optional[Dict[str, Any]], entry: Dict[str, Any]) -> Dict[str, Any]:
        current = dict(payload or {})
        current["history"] = [*(current.get("history") or []), entry]
        return current

    def _model_to_domain(self, model: GradingQueueItemModel) -> QueueItem:
        return QueueItem(
            id=model.id,
            status=QueueStatus(model.status),
            payload=dict(model.payload or {}),
            retries=model.retries or 0,
            last_error=model.last_error,
            next_run_at=model.next_run_at,
            claimed_at=model.claimed_at,
            created_at=model.created_at,
            completed_at=model.completed_at,
            user_id=model.user_id,
            course_id=model.course_id,
            cmid=model.cmid,
            module_name=model.module_name,
            module_instance_id=model.module_instance_id,
            component=model.component,
            event_name=model.event_name,
        )


__all__ = [
    "GradingQueue",
    "QueueItem",
    "QueueJob",
    "QueueStats",
    "QueueStatus",
    "TERMINAL_STATUSES",
]

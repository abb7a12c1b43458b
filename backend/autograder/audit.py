"""Append-only audit trail for queue and review actions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import delete, func, select

from .db.base import utcnow
from .db.models import GradingAuditLogModel
from .db.session import session_scope
from .errors import RateLimitExceededError


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = 0
DEFAULT_SEARCH_LIMIT = 50
MAX_SEARCH_LIMIT = 200


class AuditEntry(BaseModel):
    id: int
    queue_id: Optional[int] = None
    result_id: Optional[int] = None
    action: str
    actor_id: int = SYSTEM_ACTOR
    details: Optional[str] = None
    created_at: datetime


class AuditTrail:
    def log_action(
        self,
        action: str,
        *,
        queue_id: Optional[int] = None,
        result_id: Optional[int] = None,
        actor_id: int = SYSTEM_ACTOR,
        details: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuditEntry:
        with session_scope() as session:
            model = GradingAuditLogModel(
                queue_id=queue_id,
                result_id=result_id,
                action=action,
                actor_id=actor_id,
                details=details,
                created_at=now or utcnow(),
            )
            session.add(model)
            session.flush()
            logger.debug("Audit %s queue=%s result=%s actor=%s", action, queue_id, result_id, actor_id)
            return self._model_to_domain(model)

    def list_for_queue(self, queue_id: int) -> List[AuditEntry]:
        with session_scope(commit=False) as session:
            rows = session.execute(
                select(GradingAuditLogModel)
                .where(GradingAuditLogModel.queue_id == queue_id)
                .order_by(GradingAuditLogModel.created_at.asc(), GradingAuditLogModel.id.asc())
            ).scalars().all()
            return [self._model_to_domain(row) for row in rows]

    def list_for_result(self, result_id: int) -> List[AuditEntry]:
        with session_scope(commit=False) as session:
            rows = session.execute(
                select(GradingAuditLogModel)
                .where(GradingAuditLogModel.result_id == result_id)
                .order_by(GradingAuditLogModel.created_at.asc(), GradingAuditLogModel.id.asc())
            ).scalars().all()
            return [self._model_to_domain(row) for row in rows]

    def search(
        self,
        *,
        queue_id: Optional[int] = None,
        result_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> List[AuditEntry]:
        """Newest entries first, filtered by any combination of ids; ``limit`` is kept within 1..200."""
        stmt = select(GradingAuditLogModel)
        if queue_id:
            stmt = stmt.where(GradingAuditLogModel.queue_id == queue_id)
        if result_id:
            stmt = stmt.where(GradingAuditLogModel.result_id == result_id)
        if actor_id is not None:
            stmt = stmt.where(GradingAuditLogModel.actor_id == actor_id)
        stmt = stmt.order_by(GradingAuditLogModel.created_at.desc(), GradingAuditLogModel.id.desc()).limit(
            min(max(1, limit), MAX_SEARCH_LIMIT)
        )
        with session_scope(commit=False) as session:
            return [self._model_to_domain(row) for row in session.execute(stmt).scalars().all()]

    def count_recent(self, actor_id: int, action: str, since: datetime) -> int:
        with session_scope(commit=False) as session:
            return session.execute(
                select(func.count(GradingAuditLogModel.id)).where(
                    GradingAuditLogModel.actor_id == actor_id,
                    GradingAuditLogModel.action == action,
                    GradingAuditLogModel.created_at >= since,
                )
            ).scalar_one()

    def enforce_rate_limit(
        self,
        actor_id: int,
        action: str,
        limit: int,
        window_seconds: int,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise when ``actor_id`` already logged ``limit`` ``action`` entries in the window."""
        if limit <= 0:
            return
        now = now or utcnow()
        recent = self.count_recent(actor_id, action, now - timedelta(seconds=window_seconds))
        if recent >= limit:
            raise RateLimitExceededError(
                f"Rate limit exceeded: {limit} '{action}' actions per {window_seconds} seconds."
            )

    def purge_before(self, cutoff: datetime) -> int:
        with session_scope() as session:
            result = session.execute(
                delete(GradingAuditLogModel)
                .where(GradingAuditLogModel.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    def _model_to_domain(self, model: GradingAuditLogModel) -> AuditEntry:
        return AuditEntry(
            id=model.id,
            queue_id=model.queue_id,
            result_id=model.result_id,
            action=model.action,
            actor_id=model.actor_id,
            details=model.details,
            created_at=model.created_at,
        )


audit_trail = AuditTrail()


__all__ = ["AuditEntry", "AuditTrail", "SYSTEM_ACTOR", "audit_trail"]

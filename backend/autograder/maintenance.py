"""Retention cleanup for finished queue items, reviewed results and audit rows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from .audit import AuditTrail, audit_trail
from .config import Settings
from .db.base import utcnow
from .grading_queue import GradingQueue
from .grading_results import ResultStore, result_store


logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30


class CleanupReport(BaseModel):
    cutoff: Optional[datetime] = None
    queue_items: int = 0
    results: int = 0
    audit_entries: int = 0


def retention_cutoff(settings: Settings, now: Optional[datetime] = None) -> Optional[datetime]:
    if settings.data_retention_months <= 0:
        return None
    return (now or utcnow()) - timedelta(days=settings.data_retention_months * DAYS_PER_MONTH)


def cleanup_old_data(
    settings: Settings,
    *,
    now: Optional[datetime] = None,
    queue: Optional[GradingQueue] = None,
    results: Optional[ResultStore] = None,
    audit: Optional[AuditTrail] = None,
) -> CleanupReport:
    """Purge data older than the retention window. Draft results are always kept."""
    cutoff = retention_cutoff(settings, now)
    if cutoff is None:
        logger.info("Data retention disabled; nothing to clean up")
        return CleanupReport()

    queue = queue or GradingQueue(settings)
    results = results or result_store
    audit = audit or audit_trail

    report = CleanupReport(
        cutoff=cutoff,
        results=results.purge_reviewed(cutoff),
        queue_items=queue.purge_expired(cutoff),
        audit_entries=audit.purge_before(cutoff),
    )
    logger.info(
        "Retention cleanup before %s removed %d queue items, %d results, %d audit entries",
        cutoff.isoformat(),
        report.queue_items,
        report.results,
        report.audit_entries,
    )
    return report


__all__ = ["CleanupReport", "cleanup_old_data", "retention_cutoff"]

"""Entry points that put submissions on the grading queue."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from .activity_settings import ActivitySettingsStore
from .audit import SYSTEM_ACTOR, AuditTrail, audit_trail
from .collaborators import SubmissionSource
from .config import Settings
from .grading_queue import GradingQueue, QueueJob
from .grading_results import ResultStore, result_store
from .telemetry import emit_event


logger = logging.getLogger(__name__)

BATCH_ACTION = "batchqueued"


class BatchError(BaseModel):
    user_id: int
    message: str


class BatchOutcome(BaseModel):
    queued: int = 0
    already_graded: int = 0
    errors: List[BatchError] = Field(default_factory=list)
    queue_ids: List[int] = Field(default_factory=list)


class SubmissionIntake:
    def __init__(
        self,
        *,
        settings: Settings,
        queue: Optional[GradingQueue] = None,
        results: Optional[ResultStore] = None,
        audit: Optional[AuditTrail] = None,
        activity_settings: Optional[ActivitySettingsStore] = None,
    ) -> None:
        self._settings = settings
        self._queue = queue or GradingQueue(settings)
        self._results = results or result_store
        self._audit = audit or audit_trail
        self._activity_settings = activity_settings or ActivitySettingsStore(settings)

    def queue_submission(
        self,
        job: QueueJob,
        *,
        event_name: str = "submission_created",
        component: str = "",
    ) -> Optional[int]:
        """Queue a submission event. Returns ``None`` when grading is off for the activity."""
        if not self._settings.enabled:
            logger.debug("Automated grading disabled; ignoring %s", event_name)
            return None
        activity = self._activity_settings.get(job.module_name, job.module_instance_id)
        if not activity.enabled:
            logger.debug(
                "Grading not enabled for %s/%s; ignoring %s",
                job.module_name,
                job.module_instance_id,
                event_name,
            )
            return None

        job = self._with_defaults(job, activity.custom_instructions)
        queue_id = self._queue.enqueue(job, component=component, event_name=event_name)
        self._audit.log_action(
            "queued",
            queue_id=queue_id,
            actor_id=job.userid,
            details=f"Queued from {event_name}",
        )
        emit_event(
            "submission_queued",
            queue_id=queue_id,
            user_id=job.userid,
            module_name=job.module_name,
            module_instance_id=job.module_instance_id,
        )
        return queue_id

    def trigger_batch(
        self,
        module_name: str,
        module_instance_id: int,
        source: SubmissionSource,
        *,
        user_ids: Optional[Sequence[int]] = None,
        requested_by: int = SYSTEM_ACTOR,
    ) -> BatchOutcome:
        """Queue every submitted user that has no open queue item and no draft or released result."""
        self._audit.enforce_rate_limit(
            requested_by,
            BATCH_ACTION,
            self._settings.batch_rate_limit,
            self._settings.batch_rate_window_seconds,
        )
        activity = self._activity_settings.get(module_name, module_instance_id)
        requested = user_ids if user_ids else source.list_submitted_users(module_name, module_instance_id)
        targets = list(dict.fromkeys(requested))
        outcome = BatchOutcome()

        for user_id in targets:
            try:
                if self._results.has_active_result(
                    module_name, module_instance_id, user_id
                ) or self._queue.has_open_item(module_name, module_instance_id, user_id):
                    outcome.already_graded += 1
                    continue
                job = source.load_job(module_name, module_instance_id, user_id)
                if job is None:
                    raise LookupError(f"No submission found for user {user_id}.")
                job = self._with_defaults(job, activity.custom_instructions)
                queue_id = self._queue.enqueue(job, event_name="batch_trigger")
            except Exception as exc:  # noqa: BLE001
                logger.warning("Batch queueing failed for user %s: %s", user_id, exc)
                outcome.errors.append(BatchError(user_id=user_id, message=str(exc) or exc.__class__.__name__))
                continue
            outcome.queued += 1
            outcome.queue_ids.append(queue_id)
            emit_event(
                "submission_queued",
                queue_id=queue_id,
                user_id=user_id,
                module_name=module_name,
                module_instance_id=module_instance_id,
            )

        self._audit.log_action(
            BATCH_ACTION,
            actor_id=requested_by,
            details=(
                f"{module_name}/{module_instance_id}: queued {outcome.queued}, "
                f"already graded {outcome.already_graded}, errors {len(outcome.errors)}"
            ),
        )
        logger.info(
            "Batch for %s/%s queued %d submissions (%d already graded, %d errors)",
            module_name,
            module_instance_id,
            outcome.queued,
            outcome.already_graded,
            len(outcome.errors),
        )
        return outcome

    def _with_defaults(self, job: QueueJob, custom_instructions: str) -> QueueJob:
        updates = {}
        instructions = (job.custom_instructions or custom_instructions or "").strip()
        if instructions and not job.custom_instructions:
            updates["custom_instructions"] = instructions
        if not (job.answer_key or "").strip() and instructions:
            updates["answer_key"] = instructions
        return job.model_copy(update=updates) if updates else job


__all__ = ["BATCH_ACTION", "BatchError", "BatchOutcome", "SubmissionIntake"]

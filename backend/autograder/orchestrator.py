"""Per-item grading pipeline driven by the queue worker.

Stages: ``NEW -> SCORED -> FINALIZING -> AUTO_RELEASED | AWAITING_REVIEW``.
Rubric grading through the gateway is attempted first when a rubric is
attached; any failure there falls through to answer-key matching. Failures
before the draft is stored become retry/failure bookkeeping on the queue item.
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .activity_settings import ActivitySettings, ActivitySettingsStore
from .audit import SYSTEM_ACTOR, AuditTrail, audit_trail
from .collaborators import Gradebook, LoggingGradebook
from .config import Settings
from .db.base import utcnow
from .errors import EmptySubmissionError, InvalidPayloadError, MissingAnswerKeyError
from .gateway import GatewayClient, decode_grade_content
from .grading_queue import GradingQueue, QueueItem, QueueJob, QueueStatus
from .grading_results import GradingMethod, GradingResult, ResultDraft, ResultStatus, ResultStore, result_store
from .rubric import RubricCriterionScore, map_scores, rubric_to_json
from .similarity import SimilarityEngine, format_term_list
from .telemetry import emit_event


logger = logging.getLogger(__name__)

DEFAULT_QUESTION = "Grade this student submission."
DEFAULT_RUBRIC_REASONING = "Graded against the rubric criteria."


class GradingStage(str, Enum):
    NEW = "new"
    SCORED = "scored"
    FINALIZING = "finalizing"
    AUTO_RELEASED = "auto_released"
    AWAITING_REVIEW = "awaiting_review"


class ScoredSubmission(BaseModel):
    grade: float
    max_grade: float
    reasoning: str
    confidence: Optional[float] = None
    method: GradingMethod
    provider: str
    rubric_version: Optional[int] = None
    rubric_analysis: Optional[Any] = None
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    criteria: List[RubricCriterionScore] = Field(default_factory=list)


class ProcessOutcome(BaseModel):
    queue_id: int
    queue_status: QueueStatus
    stage: GradingStage
    result_id: Optional[int] = None
    error: Optional[str] = None


class PassSummary(BaseModel):
    claimed: int = 0
    completed: int = 0
    auto_released: int = 0
    retried: int = 0
    failed: int = 0
    errors: int = 0


class GradingOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        queue: Optional[GradingQueue] = None,
        results: Optional[ResultStore] = None,
        audit: Optional[AuditTrail] = None,
        activity_settings: Optional[ActivitySettingsStore] = None,
        gateway: Optional[GatewayClient] = None,
        similarity: Optional[SimilarityEngine] = None,
        gradebook: Optional[Gradebook] = None,
    ) -> None:
        self._settings = settings
        self._queue = queue or GradingQueue(settings)
        self._results = results or result_store
        self._audit = audit or audit_trail
        self._activity_settings = activity_settings or ActivitySettingsStore(settings)
        self._gateway = gateway or GatewayClient(settings)
        self._similarity = similarity or SimilarityEngine(self._gateway)
        self._gradebook: Gradebook = gradebook or LoggingGradebook()

    def run_pass(self, *, limit: Optional[int] = None, now: Optional[datetime] = None) -> PassSummary:
        """Claim eligible items and process them oldest first."""
        summary = PassSummary()
        if not self._settings.enabled:
            logger.info("Automated grading is disabled; skipping queue pass")
            return summary

        items = self._queue.dequeue_eligible(limit=limit, now=now)
        summary.claimed = len(items)
        for item in items:
            try:
                outcome = self.process_item(item, now=now)
            except Exception:  # noqa: BLE001
                logger.exception("Unhandled failure while processing queue item %s", item.id)
                summary.errors += 1
                continue
            if outcome.queue_status == QueueStatus.DONE:
                summary.completed += 1
                if outcome.stage == GradingStage.AUTO_RELEASED:
                    summary.auto_released += 1
            elif outcome.queue_status == QueueStatus.FAILED:
                summary.failed += 1
            else:
                summary.retried += 1

        if items:
            logger.info(
                "Grading pass finished: %d claimed, %d completed, %d retried, %d failed",
                summary.claimed,
                summary.completed,
                summary.retried,
                summary.failed,
            )
        return summary

    def process_item(self, item: QueueItem, *, now: Optional[datetime] = None) -> ProcessOutcome:
        now = now or utcnow()
        stage = GradingStage.NEW
        self._log_stage(item, stage)
        emit_event(
            "grading_started",
            queue_id=item.id,
            user_id=item.user_id,
            module_name=item.module_name,
            module_instance_id=item.module_instance_id,
            attempt=item.retries + 1,
        )

        try:
            job = self._validate(item)
            activity = self._activity_settings.get(job.module_name, job.module_instance_id)
            result = self._results.find_by_queue(item.id)
            if result is None:
                scored = self._score(item, job, activity)
                stage = GradingStage.SCORED
                self._log_stage(item, stage)
                result = self._results.create_draft(
                    ResultDraft(
                        queue_id=item.id,
                        module_name=job.module_name,
                        module_instance_id=job.module_instance_id,
                        user_id=job.userid,
                        course_id=job.courseid,
                        submission_id=job.submission_id,
                        quality=activity.quality,
                        **scored.model_dump(),
                    ),
                    now=now,
                )
            else:
                logger.info("Queue item %s already produced result %s, finishing it", item.id, result.id)
            stage = GradingStage.FINALIZING
            self._log_stage(item, stage)
            self._queue.complete(item.id, result_id=result.id, now=now)
        except Exception as exc:  # noqa: BLE001
            return self._handle_failure(item, exc, stage, now)

        emit_event(
            "grading_completed",
            queue_id=item.id,
            result_id=result.id,
            method=result.method,
            provider=result.provider,
            grade=result.grade,
            max_grade=result.max_grade,
        )

        if activity.auto_release and result.status == ResultStatus.DRAFT:
            stage = self._auto_release(item, result, now)
        else:
            stage = self._hold_for_review(item, result)
        self._log_stage(item, stage)
        return ProcessOutcome(
            queue_id=item.id,
            queue_status=QueueStatus.DONE,
            stage=stage,
            result_id=result.id,
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _validate(self, item: QueueItem) -> QueueJob:
        request = item.request
        if not request:
            raise InvalidPayloadError(f"Queue item {item.id} carries no job request.")
        try:
            job = QueueJob.model_validate(request)
        except ValidationError as exc:
            raise InvalidPayloadError(f"Queue item {item.id} has an invalid job request: {exc}") from exc
        if not job.module_name or job.module_instance_id <= 0:
            raise InvalidPayloadError(f"Queue item {item.id} is missing its activity reference.")
        if not job.submission_text or not job.submission_text.strip():
            raise EmptySubmissionError(f"Queue item {item.id} has no submission text.")
        return job

    def _score(self, item: QueueItem, job: QueueJob, activity: ActivitySettings) -> ScoredSubmission:
        max_grade = job.max_grade if job.max_grade > 0 else 100.0
        has_rubric = job.rubric_snapshot is not None or bool((job.rubric_json or "").strip())
        if has_rubric and self._gateway.is_ready():
            try:
                return self._grade_with_rubric(job, activity, max_grade)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Rubric grading failed for queue item %s, falling back to answer key: %s",
                    item.id,
                    exc,
                )
        return self._grade_with_key(job, max_grade)

    def _grade_with_rubric(
        self,
        job: QueueJob,
        activity: ActivitySettings,
        max_grade: float,
    ) -> ScoredSubmission:
        snapshot = job.rubric_snapshot
        payload: Dict[str, Any] = {
            "module": job.module_name,
            "instanceid": job.module_instance_id,
            "courseid": job.courseid,
            "question": job.question or DEFAULT_QUESTION,
            "submission": job.submission_text,
            "rubric_json": rubric_to_json(snapshot) if snapshot is not None else job.rubric_json,
            "custom_instructions": job.custom_instructions or activity.custom_instructions,
            "answer_key": job.answer_key or "",
        }
        response = self._gateway.grade("grade_rubric", payload, quality=activity.quality)
        answer = decode_grade_content(response.content)

        if snapshot is not None:
            mapping = map_scores(answer.criteria, snapshot, reported_score=answer.score)
            criteria = mapping.criteria
            warnings = list(mapping.warnings)
            total = mapping.calculated_score
            total_max = mapping.max_score
            method = GradingMethod(snapshot.method)
            rubric_version = snapshot.rubric_version
            analysis: Dict[str, Any] = {
                **mapping.model_dump(mode="json"),
                "rubric_hash": snapshot.hash,
            }
        else:
            criteria = [
                RubricCriterionScore(
                    criterion_id=0,
                    name=entry.name or f"Criterion {index}",
                    score=max(entry.score, 0.0),
                    max_score=entry.max_score or 0.0,
                    feedback=entry.feedback,
                )
                for index, entry in enumerate(answer.criteria, start=1)
            ]
            warnings = []
            total = sum(entry.score for entry in criteria)
            total_max = sum(entry.max_score for entry in criteria)
            method = GradingMethod.RUBRIC
            rubric_version = None
            analysis = {
                "criteria": [entry.model_dump(mode="json") for entry in criteria],
                "warnings": [],
                "calculated_score": total,
                "max_score": total_max,
                "reported_score": answer.score,
            }

        grade = total / total_max * max_grade if total_max > 0 else total
        confidence = round(total / total_max * 100, 2) if total_max > 0 else None
        return ScoredSubmission(
            grade=round(grade, 2),
            max_grade=max_grade,
            reasoning=answer.feedback or DEFAULT_RUBRIC_REASONING,
            confidence=confidence,
            method=method,
            provider="gateway:rubric",
            rubric_version=rubric_version,
            rubric_analysis=analysis,
            strengths=answer.strengths,
            improvements=answer.improvements,
            warnings=warnings,
            criteria=criteria,
        )

    def _grade_with_key(self, job: QueueJob, max_grade: float) -> ScoredSubmission:
        key = (job.answer_key or "").strip()
        if not key:
            raise MissingAnswerKeyError("No answer key is available for key-match grading.")

        similarity = self._similarity.analyze(key, job.submission_text)
        evidence = [
            format_term_list(similarity.matched_terms, "Matched"),
            format_term_list(similarity.partial_terms, "Partially matched"),
            format_term_list(similarity.missing_terms, "Missing"),
        ]
        reasoning = "\n".join([similarity.reasoning, *[line for line in evidence if line]])
        provider = "gateway:semantic" if similarity.method == "semantic" else "local:overlap"
        return ScoredSubmission(
            grade=round(similarity.final_percent / 100 * max_grade, 2),
            max_grade=max_grade,
            reasoning=reasoning,
            confidence=similarity.final_percent,
            method=GradingMethod.KEYMATCH,
            provider=provider,
            rubric_analysis=similarity.model_dump(mode="json"),
            strengths=list(similarity.matched_terms),
            improvements=[*similarity.missing_terms, *similarity.partial_terms],
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def _auto_release(self, item: QueueItem, result: GradingResult, now: datetime) -> GradingStage:
        try:
            self._gradebook.push_grade(result, include_feedback=self._settings.push_feedback)
            released = self._results.mark_reviewed(
                result.id, ResultStatus.RELEASED, SYSTEM_ACTOR, now=now
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("Auto-release failed for result %s", result.id)
            self._audit.log_action(
                "processed",
                queue_id=item.id,
                result_id=result.id,
                details=f"Auto-release failed, awaiting review: {exc}",
            )
            return GradingStage.AWAITING_REVIEW

        self._audit.log_action(
            "autoreleased",
            queue_id=item.id,
            result_id=released.id,
            details=f"Grade {released.grade:g}/{released.max_grade:g} released automatically",
        )
        emit_event(
            "grade_reviewed",
            result_id=released.id,
            queue_id=item.id,
            status=released.status,
            reviewer_id=SYSTEM_ACTOR,
        )
        emit_event(
            "grade_released",
            result_id=released.id,
            user_id=released.user_id,
            grade=released.grade,
            max_grade=released.max_grade,
        )
        return GradingStage.AUTO_RELEASED

    def _hold_for_review(self, item: QueueItem, result: GradingResult) -> GradingStage:
        self._audit.log_action(
            "processed",
            queue_id=item.id,
            result_id=result.id,
            details=f"Draft {result.method.value} grade {result.grade:g}/{result.max_grade:g} via {result.provider}",
        )
        if self._settings.push_grades_on_draft:
            try:
                self._gradebook.push_grade(result, include_feedback=self._settings.push_feedback)
            except Exception:  # noqa: BLE001
                logger.exception("Pushing draft grade for result %s failed", result.id)
        return GradingStage.AWAITING_REVIEW

    def _handle_failure(
        self,
        item: QueueItem,
        exc: Exception,
        stage: GradingStage,
        now: datetime,
    ) -> ProcessOutcome:
        message = str(exc) or exc.__class__.__name__
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        updated = self._queue.record_failure(item.id, message, trace=trace, now=now)
        terminal = updated.status == QueueStatus.FAILED
        self._audit.log_action(
            "failed" if terminal else "retry",
            queue_id=item.id,
            details=f"Error (attempt {updated.retries}/{self._queue.max_retries}): {message}",
        )
        emit_event(
            "grading_failed",
            queue_id=item.id,
            user_id=item.user_id,
            attempt=updated.retries,
            terminal=terminal,
            error=message,
            error_type=exc.__class__.__name__,
        )
        return ProcessOutcome(
            queue_id=item.id,
            queue_status=updated.status,
            stage=stage,
            error=message,
        )

    def _log_stage(self, item: QueueItem, stage: GradingStage) -> None:
        logger.info("Queue item %s -> %s", item.id, stage.value)


__all__ = [
    "DEFAULT_QUESTION",
    "GradingOrchestrator",
    "GradingStage",
    "PassSummary",
    "ProcessOutcome",
    "ScoredSubmission",
]

"""HTTP surface for batch queueing, queue inspection and result review."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from .activity_settings import ActivitySettings, ActivitySettingsStore
from .audit import DEFAULT_SEARCH_LIMIT, MAX_SEARCH_LIMIT, AuditEntry, audit_trail
from .collaborators import Gradebook, LoggingGradebook, StoredSubmissionSource, SubmissionSource
from .config import Quality, Settings, get_settings
from .errors import IllegalTransitionError, InputError, RateLimitExceededError
from .grading_queue import GradingQueue, QueueStats, QueueStatus
from .grading_results import GradeExplanation, ResultExport, ResultStatus, result_store, to_explanation
from .intake import BatchOutcome, SubmissionIntake
from .review import ReviewOutcome, ReviewWorkflow


router = APIRouter(prefix="/api/grading", tags=["grading"])

_gradebook: Gradebook = LoggingGradebook()


def get_gradebook() -> Gradebook:
    return _gradebook


def get_submission_source() -> SubmissionSource:
    return StoredSubmissionSource()


def get_queue(settings: Settings = Depends(get_settings)) -> GradingQueue:
    return GradingQueue(settings)


def get_activity_store(settings: Settings = Depends(get_settings)) -> ActivitySettingsStore:
    return ActivitySettingsStore(settings)


def get_intake(settings: Settings = Depends(get_settings)) -> SubmissionIntake:
    return SubmissionIntake(settings=settings)


def get_review_workflow(
    settings: Settings = Depends(get_settings),
    gradebook: Gradebook = Depends(get_gradebook),
) -> ReviewWorkflow:
    return ReviewWorkflow(settings=settings, gradebook=gradebook)


class BatchRequest(BaseModel):
    module_name: str = Field(..., min_length=1)
    module_instance_id: int = Field(..., gt=0)
    user_ids: Optional[List[int]] = None
    requested_by: int = Field(default=0, ge=0)


class ReleaseRequest(BaseModel):
    reviewer_id: int = Field(..., ge=0)


class RejectRequest(BaseModel):
    reviewer_id: int = Field(..., ge=0)
    reason: Optional[str] = Field(default=None, max_length=2000)


class ActivitySettingsUpdate(BaseModel):
    enabled: bool = False
    quality: Quality = "balanced"
    custom_instructions: str = ""
    auto_release: bool = False


class QueueItemStatusPayload(BaseModel):
    id: int
    status: QueueStatus
    retries: int
    last_error: Optional[str] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class ActivityGradingStatus(BaseModel):
    user_id: int
    status: str
    grade: Optional[float] = None
    max_grade: Optional[float] = None
    confidence: Optional[float] = None
    result_id: Optional[int] = None
    queue_id: Optional[int] = None


@router.post("/batch", response_model=BatchOutcome, status_code=status.HTTP_200_OK)
def trigger_batch(
    payload: BatchRequest,
    intake: SubmissionIntake = Depends(get_intake),
    source: SubmissionSource = Depends(get_submission_source),
) -> BatchOutcome:
    try:
        return intake.trigger_batch(
            payload.module_name.strip(),
            payload.module_instance_id,
            source,
            user_ids=payload.user_ids,
            requested_by=payload.requested_by,
        )
    except RateLimitExceededError as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc
    except InputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("/queue/stats", response_model=QueueStats, status_code=status.HTTP_200_OK)
def queue_stats(queue: GradingQueue = Depends(get_queue)) -> QueueStats:
    return queue.stats()


@router.get("/queue/{queue_id}", response_model=QueueItemStatusPayload, status_code=status.HTTP_200_OK)
def queue_item_status(queue_id: int, queue: GradingQueue = Depends(get_queue)) -> QueueItemStatusPayload:
    try:
        item = queue.get(queue_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return QueueItemStatusPayload(
        id=item.id,
        status=item.status,
        retries=item.retries,
        last_error=item.last_error,
        next_run_at=item.next_run_at,
        created_at=item.created_at,
        completed_at=item.completed_at,
    )


@router.get("/queue/{queue_id}/audit", response_model=List[AuditEntry], status_code=status.HTTP_200_OK)
def queue_audit(queue_id: int) -> List[AuditEntry]:
    return audit_trail.list_for_queue(queue_id)


@router.get("/audit", response_model=List[AuditEntry], status_code=status.HTTP_200_OK)
def search_audit(
    queue_id: Optional[int] = None,
    result_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    limit: int = Query(DEFAULT_SEARCH_LIMIT, ge=1, le=MAX_SEARCH_LIMIT),
) -> List[AuditEntry]:
    return audit_trail.search(queue_id=queue_id, result_id=result_id, actor_id=actor_id, limit=limit)


@router.get("/results/{result_id}", response_model=ResultExport, status_code=status.HTTP_200_OK)
def get_result(result_id: int) -> ResultExport:
    try:
        return result_store.export(result_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/results/{result_id}/audit", response_model=List[AuditEntry], status_code=status.HTTP_200_OK)
def result_audit(result_id: int) -> List[AuditEntry]:
    return audit_trail.list_for_result(result_id)


@router.post("/results/{result_id}/release", response_model=ReviewOutcome, status_code=status.HTTP_200_OK)
def release_result(
    result_id: int,
    payload: ReleaseRequest,
    workflow: ReviewWorkflow = Depends(get_review_workflow),
) -> ReviewOutcome:
    try:
        return workflow.release(result_id, payload.reviewer_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post("/results/{result_id}/reject", response_model=ReviewOutcome, status_code=status.HTTP_200_OK)
def reject_result(
    result_id: int,
    payload: RejectRequest,
    workflow: ReviewWorkflow = Depends(get_review_workflow),
) -> ReviewOutcome:
    try:
        return workflow.reject(result_id, payload.reviewer_id, payload.reason)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get(
    "/activities/{module_name}/{instance_id}/settings",
    response_model=ActivitySettings,
    status_code=status.HTTP_200_OK,
)
def get_activity_settings(
    module_name: str,
    instance_id: int,
    store: ActivitySettingsStore = Depends(get_activity_store),
) -> ActivitySettings:
    return store.get(module_name, instance_id)


@router.put(
    "/activities/{module_name}/{instance_id}/settings",
    response_model=ActivitySettings,
    status_code=status.HTTP_200_OK,
)
def update_activity_settings(
    module_name: str,
    instance_id: int,
    payload: ActivitySettingsUpdate,
    store: ActivitySettingsStore = Depends(get_activity_store),
) -> ActivitySettings:
    if instance_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Activity instance id must be positive.",
        )
    return store.save(
        ActivitySettings(
            module_name=module_name,
            module_instance_id=instance_id,
            **payload.model_dump(),
        )
    )


@router.get(
    "/activities/{module_name}/{instance_id}/statuses",
    response_model=List[ActivityGradingStatus],
    status_code=status.HTTP_200_OK,
)
def activity_statuses(
    module_name: str,
    instance_id: int,
    queue: GradingQueue = Depends(get_queue),
) -> List[ActivityGradingStatus]:
    """Latest grading state per user: stored results first, then open queue items."""
    statuses = {
        user_id: ActivityGradingStatus(
            user_id=user_id,
            status=result.status.value,
            grade=result.grade,
            max_grade=result.max_grade,
            confidence=result.confidence,
            result_id=result.id,
            queue_id=result.queue_id,
        )
        for user_id, result in result_store.latest_by_user(module_name, instance_id).items()
    }
    for item in queue.open_items(module_name, instance_id):
        current = statuses.get(item.user_id)
        if current is not None and current.status != ResultStatus.REJECTED.value:
            continue
        statuses[item.user_id] = ActivityGradingStatus(
            user_id=item.user_id,
            status=item.status.value,
            queue_id=item.id,
        )
    return [statuses[user_id] for user_id in sorted(statuses)]


@router.get(
    "/activities/{module_name}/{instance_id}/users/{user_id}/explanation",
    response_model=GradeExplanation,
    status_code=status.HTTP_200_OK,
)
def grade_explanation(module_name: str, instance_id: int, user_id: int) -> GradeExplanation:
    result = result_store.latest_released(module_name, instance_id, user_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No released grade for user {user_id}.",
        )
    return to_explanation(result)


__all__ = ["router", "get_gradebook", "get_submission_source"]

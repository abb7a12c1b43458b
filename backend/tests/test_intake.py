from __future__ import annotations

import pytest

from autograder.activity_settings import ActivitySettings, ActivitySettingsStore
from autograder.audit import audit_trail
from autograder.errors import RateLimitExceededError
from autograder.grading_queue import GradingQueue
from autograder.grading_results import GradingMethod, ResultDraft, result_store
from autograder.intake import SubmissionIntake
from autograder.review import ReviewWorkflow

from helpers import FakeSubmissionSource, event_names, make_job


def _enable(settings, **overrides) -> None:
    ActivitySettingsStore(settings).save(
        ActivitySettings(module_name="assign", module_instance_id=3, enabled=True, **overrides)
    )


def _store_result(user_id: int) -> int:
    return result_store.create_draft(
        ResultDraft(
            module_name="assign",
            module_instance_id=3,
            user_id=user_id,
            grade=50.0,
            method=GradingMethod.KEYMATCH,
            provider="local:overlap",
        )
    ).id


def test_submission_is_ignored_when_activity_disabled(grading_settings) -> None:
    intake = SubmissionIntake(settings=grading_settings)
    assert intake.queue_submission(make_job()) is None
    assert GradingQueue(grading_settings).stats().total == 0


def test_submission_is_queued_with_instruction_fallback(grading_settings, captured_events) -> None:
    _enable(grading_settings, custom_instructions="Explain how mitochondria produce energy")
    intake = SubmissionIntake(settings=grading_settings)

    queue_id = intake.queue_submission(make_job(answer_key=None), event_name="assessable_submitted")

    item = GradingQueue(grading_settings).get(queue_id)
    assert item.event_name == "assessable_submitted"
    assert item.request["answer_key"] == "Explain how mitochondria produce energy"
    assert item.request["custom_instructions"] == "Explain how mitochondria produce energy"
    [entry] = audit_trail.list_for_queue(queue_id)
    assert entry.action == "queued"
    assert entry.actor_id == 7
    assert event_names(captured_events) == ["submission_queued"]


def test_explicit_answer_key_is_kept(grading_settings) -> None:
    _enable(grading_settings, custom_instructions="Be generous")
    queue_id = SubmissionIntake(settings=grading_settings).queue_submission(make_job())
    item = GradingQueue(grading_settings).get(queue_id)
    assert item.request["answer_key"] == "mitochondria produce energy via atp synthesis"


def test_batch_skips_graded_users_and_collects_errors(grading_settings) -> None:
    _store_result(user_id=1)
    rejected = _store_result(user_id=2)
    ReviewWorkflow(settings=grading_settings).reject(rejected, reviewer_id=4)
    source = FakeSubmissionSource({1: make_job(user_id=1), 2: make_job(user_id=2), 3: None})
    intake = SubmissionIntake(settings=grading_settings)

    outcome = intake.trigger_batch("assign", 3, source, requested_by=4)

    assert outcome.queued == 1
    assert outcome.already_graded == 1
    assert [(error.user_id, error.message) for error in outcome.errors] == [
        (3, "No submission found for user 3.")
    ]
    [queued] = outcome.queue_ids
    assert GradingQueue(grading_settings).get(queued).user_id == 2


def test_batch_can_target_specific_users(grading_settings) -> None:
    source = FakeSubmissionSource({1: make_job(user_id=1), 2: make_job(user_id=2)})
    outcome = SubmissionIntake(settings=grading_settings).trigger_batch("assign", 3, source, user_ids=[2])
    assert outcome.queued == 1
    assert GradingQueue(grading_settings).get(outcome.queue_ids[0]).user_id == 2


def test_batch_trigger_is_rate_limited_per_requester(grading_settings) -> None:
    settings = grading_settings.model_copy(update={"batch_rate_limit": 2})
    intake = SubmissionIntake(settings=settings)
    source = FakeSubmissionSource({})

    intake.trigger_batch("assign", 3, source, requested_by=4)
    intake.trigger_batch("assign", 3, source, requested_by=4)
    with pytest.raises(RateLimitExceededError):
        intake.trigger_batch("assign", 3, source, requested_by=4)

    intake.trigger_batch("assign", 3, source, requested_by=5)


def test_batch_queues_repeated_user_ids_once(grading_settings) -> None:
    source = FakeSubmissionSource({5: make_job(user_id=5)})
    intake = SubmissionIntake(settings=grading_settings)

    outcome = intake.trigger_batch("assign", 3, source, user_ids=[5, 5])

    assert outcome.queued == 1
    assert GradingQueue(grading_settings).stats().total == 1


def test_batch_skips_users_already_waiting_in_the_queue(grading_settings) -> None:
    source = FakeSubmissionSource({1: make_job(user_id=1), 2: make_job(user_id=2)})
    intake = SubmissionIntake(settings=grading_settings)
    intake.trigger_batch("assign", 3, source, user_ids=[1])

    outcome = intake.trigger_batch("assign", 3, source)

    assert outcome.queued == 1
    assert outcome.already_graded == 1
    assert GradingQueue(grading_settings).get(outcome.queue_ids[0]).user_id == 2

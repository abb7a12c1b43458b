from __future__ import annotations

import os
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("AUTOGRADER_DATABASE_URL", "sqlite://")

from autograder.collaborators import LoggingGradebook  # noqa: E402
from autograder.config import get_settings  # noqa: E402
from autograder.grading_queue import GradingQueue  # noqa: E402
from autograder.grading_results import GradingMethod, ResultDraft, result_store  # noqa: E402
from autograder.grading_routes import get_gradebook, get_submission_source  # noqa: E402
from autograder.main import app  # noqa: E402
from autograder.rubric import RubricCriterionScore  # noqa: E402

from helpers import FakeSubmissionSource, make_job  # noqa: E402


@pytest.fixture
def client(grading_settings) -> Iterator[TestClient]:
    gradebook = LoggingGradebook()
    app.dependency_overrides[get_gradebook] = lambda: gradebook
    app.dependency_overrides[get_submission_source] = lambda: FakeSubmissionSource(
        {1: make_job(user_id=1), 2: make_job(user_id=2)}
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _draft() -> int:
    return result_store.create_draft(
        ResultDraft(
            queue_id=None,
            module_name="assign",
            module_instance_id=3,
            user_id=5,
            grade=14.0,
            max_grade=20.0,
            reasoning="Rubric applied.",
            confidence=70.0,
            method=GradingMethod.RUBRIC,
            provider="gateway:rubric",
            strengths=["structure"],
            criteria=[
                RubricCriterionScore(
                    criterion_id=1,
                    name="Clarity",
                    score=6,
                    max_score=10,
                    feedback="Readable",
                    level_id=11,
                    level_label="Mostly clear",
                )
            ],
        )
    ).id


def test_result_export_shape(client: TestClient) -> None:
    result_id = _draft()

    response = client.get(f"/api/grading/results/{result_id}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "draft"
    assert payload["method"] == "rubric"
    assert payload["grade"] == 14.0
    assert payload["strengths"] == ["structure"]
    assert payload["criteria"] == [
        {"name": "Clarity", "score": 6.0, "max_score": 10.0, "feedback": "Readable", "level": "Mostly clear"}
    ]


def test_missing_result_is_404(client: TestClient) -> None:
    assert client.get("/api/grading/results/404").status_code == 404
    assert client.post("/api/grading/results/404/release", json={"reviewer_id": 1}).status_code == 404


def test_release_then_conflict(client: TestClient) -> None:
    result_id = _draft()

    first = client.post(f"/api/grading/results/{result_id}/release", json={"reviewer_id": 3})
    second = client.post(f"/api/grading/results/{result_id}/reject", json={"reviewer_id": 3})

    assert first.status_code == 200
    assert first.json()["status"] == "released"
    assert second.status_code == 409


def test_reject_with_reason(client: TestClient) -> None:
    result_id = _draft()
    response = client.post(
        f"/api/grading/results/{result_id}/reject",
        json={"reviewer_id": 3, "reason": "Needs manual marking"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert result_store.get(result_id).review_note == "Needs manual marking"


def test_batch_queues_and_reports_stats(client: TestClient, grading_settings) -> None:
    response = client.post(
        "/api/grading/batch",
        json={"module_name": "assign", "module_instance_id": 3, "requested_by": 4},
    )

    assert response.status_code == 200
    assert response.json()["queued"] == 2
    assert response.json()["already_graded"] == 0

    stats = client.get("/api/grading/queue/stats").json()
    assert stats["pending"] == 2
    assert stats["total"] == 2
    assert stats["oldest_pending_at"] is not None
    assert stats["average_processing_seconds"] is None


def test_batch_rate_limit_returns_429(client: TestClient, monkeypatch) -> None:
    monkeypatch.setenv("AUTOGRADER_BATCH_RATE_LIMIT", "1")
    get_settings.cache_clear()
    body = {"module_name": "assign", "module_instance_id": 3, "user_ids": [], "requested_by": 4}

    assert client.post("/api/grading/batch", json=body).status_code == 200
    assert client.post("/api/grading/batch", json=body).status_code == 429


def test_batch_validates_request(client: TestClient) -> None:
    response = client.post("/api/grading/batch", json={"module_name": "", "module_instance_id": 0})
    assert response.status_code == 422


def test_queue_item_status_and_audit(client: TestClient, grading_settings) -> None:
    queue_id = GradingQueue(grading_settings).enqueue(make_job())

    status_response = client.get(f"/api/grading/queue/{queue_id}")
    audit_response = client.get(f"/api/grading/queue/{queue_id}/audit")

    assert status_response.status_code == 200
    assert status_response.json()["status"] == "pending"
    assert status_response.json()["retries"] == 0
    assert audit_response.status_code == 200
    assert audit_response.json() == []
    assert client.get("/api/grading/queue/999").status_code == 404


def test_activity_settings_round_trip(client: TestClient) -> None:
    url = "/api/grading/activities/assign/3/settings"

    defaults = client.get(url).json()
    assert defaults["enabled"] is False
    assert defaults["quality"] == "balanced"

    saved = client.put(
        url,
        json={"enabled": True, "quality": "best", "custom_instructions": "Key: ATP", "auto_release": True},
    )
    assert saved.status_code == 200
    assert client.get(url).json() == {
        "module_name": "assign",
        "module_instance_id": 3,
        "enabled": True,
        "quality": "best",
        "custom_instructions": "Key: ATP",
        "auto_release": True,
    }
    assert client.put(url, json={"quality": "extreme"}).status_code == 422


def test_audit_search_filters_and_limits(client: TestClient, grading_settings) -> None:
    released = _draft()
    client.post(f"/api/grading/results/{released}/release", json={"reviewer_id": 3})
    rejected = _draft()
    client.post(f"/api/grading/results/{rejected}/reject", json={"reviewer_id": 8})

    by_result = client.get("/api/grading/audit", params={"result_id": released}).json()
    by_actor = client.get("/api/grading/audit", params={"actor_id": 8}).json()
    newest = client.get("/api/grading/audit", params={"limit": 1}).json()

    assert [entry["action"] for entry in by_result] == ["released"]
    assert [entry["result_id"] for entry in by_actor] == [rejected]
    assert [entry["action"] for entry in newest] == ["rejected"]
    assert client.get("/api/grading/audit", params={"limit": 500}).status_code == 422
    assert client.get(f"/api/grading/results/{released}/audit").json()[0]["actor_id"] == 3


def test_activity_statuses_combine_results_and_queue(client: TestClient, grading_settings) -> None:
    _draft()
    queue_id = GradingQueue(grading_settings).enqueue(make_job(user_id=9))

    response = client.get("/api/grading/activities/assign/3/statuses")

    assert response.status_code == 200
    assert [(row["user_id"], row["status"]) for row in response.json()] == [(5, "draft"), (9, "pending")]
    draft_row, queued_row = response.json()
    assert draft_row["grade"] == 14.0
    assert draft_row["max_grade"] == 20.0
    assert queued_row["queue_id"] == queue_id
    assert queued_row["result_id"] is None


def test_explanation_only_shows_released_grades(client: TestClient) -> None:
    url = "/api/grading/activities/assign/3/users/5/explanation"
    result_id = _draft()

    assert client.get(url).status_code == 404

    client.post(f"/api/grading/results/{result_id}/release", json={"reviewer_id": 3})
    explanation = client.get(url).json()

    assert explanation["result_id"] == result_id
    assert explanation["grade"] == 14.0
    assert explanation["strengths"] == ["structure"]
    assert explanation["criteria"] == [
        {
            "id": 1,
            "name": "Clarity",
            "level_id": 11,
            "level_name": "Mostly clear",
            "points": 6.0,
            "max_points": 10.0,
            "reasoning": "Readable",
        }
    ]

"""Shared builders for grading tests."""

from __future__ import annotations

import json
from typing import Callable, Dict, List, Optional

import httpx

from autograder.config import Settings
from autograder.gateway import GatewayClient
from autograder.grading_queue import QueueJob
from autograder.rubric import RubricSnapshot
from autograder.telemetry import TelemetryEvent

MITOCHONDRIA_KEY = "mitochondria produce energy via atp synthesis"
MITOCHONDRIA_ANSWER = "the mitochondria make atp energy"


def event_names(events: List[TelemetryEvent]) -> List[str]:
    return [event.name for event in events]


def make_gateway(
    settings: Settings,
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    key: str = "test-key",
) -> GatewayClient:
    configured = settings.model_copy(update={"gateway_key": key})
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GatewayClient(configured, client=client)


def operation_router(responses: Dict[str, httpx.Response]) -> Callable[[httpx.Request], httpx.Response]:
    """Answer gateway calls per ``operation``; unknown operations get a 500."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        response = responses.get(body.get("operation"))
        if response is None:
            return httpx.Response(500, json={"error": "unexpected operation"})
        return response

    return handler


def failing_gateway(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"error": "gateway down"})


def clarity_accuracy_rubric(**overrides) -> RubricSnapshot:
    data = {
        "name": "Essay rubric",
        "version": 4,
        "definition_id": 11,
        "criteria": [
            {
                "id": 1,
                "name": "Clarity",
                "levels": [
                    {"id": 10, "label": "Unclear", "score": 0},
                    {"id": 11, "label": "Mostly clear", "score": 5},
                    {"id": 12, "label": "Clear", "score": 10},
                ],
            },
            {
                "id": 2,
                "name": "Accuracy",
                "levels": [
                    {"id": 20, "label": "Wrong", "score": 0},
                    {"id": 21, "label": "Partly right", "score": 4},
                    {"id": 22, "label": "Good", "score": 8},
                    {"id": 23, "label": "Excellent", "score": 10},
                ],
            },
        ],
    }
    data.update(overrides)
    return RubricSnapshot.model_validate(data)


def make_job(
    user_id: int = 7,
    *,
    module_instance_id: int = 3,
    submission_text: str = MITOCHONDRIA_ANSWER,
    answer_key: Optional[str] = MITOCHONDRIA_KEY,
    **extra,
) -> QueueJob:
    return QueueJob(
        userid=user_id,
        courseid=2,
        module_name="assign",
        module_instance_id=module_instance_id,
        submission_text=submission_text,
        answer_key=answer_key,
        **extra,
    )


class FakeSubmissionSource:
    def __init__(self, jobs: Dict[int, Optional[QueueJob]]) -> None:
        self.jobs = jobs

    def list_submitted_users(self, module_name: str, module_instance_id: int) -> List[int]:
        return sorted(self.jobs)

    def load_job(self, module_name: str, module_instance_id: int, user_id: int) -> Optional[QueueJob]:
        return self.jobs.get(user_id)

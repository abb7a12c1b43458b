from __future__ import annotations

import json

import httpx
import pytest

from autograder.config import Settings
from autograder.errors import GatewayDecodeError, GatewayError, GatewayNotConfiguredError
from autograder.gateway import GatewayClient, decode_grade_content, decode_json_content

from helpers import make_gateway


def test_grade_posts_operation_envelope_with_bearer_key() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content.decode("utf-8"))
        return httpx.Response(200, json={"provider": "vendor-x", "content": {"score": 4}})

    settings = Settings(gateway_url="https://gateway.example/")
    gateway = make_gateway(settings, handler, key="secret")

    response = gateway.grade("grade_rubric", {"submission": "text"}, quality="best")

    assert seen["url"] == "https://gateway.example/grade"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"] == {
        "operation": "grade_rubric",
        "quality": "best",
        "payload": {"submission": "text"},
        "plugin": "autograder",
    }
    assert response.provider == "vendor-x"
    assert response.content == {"score": 4}


def test_content_falls_back_to_result_then_whole_body() -> None:
    gateway = make_gateway(Settings(), lambda request: httpx.Response(200, json={"result": "ok"}))
    assert gateway.grade("op", {}).content == "ok"

    gateway = make_gateway(Settings(), lambda request: httpx.Response(200, json={"score": 3}))
    response = gateway.grade("op", {})
    assert response.content == {"score": 3}
    assert response.provider == "gateway"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"detail": "boom"}),
        httpx.Response(200, json={"error": "quota exhausted"}),
        httpx.Response(200, content=b"<html>not json</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
    ],
)
def test_failed_or_malformed_responses_raise_gateway_error(response: httpx.Response) -> None:
    gateway = make_gateway(Settings(), lambda request: response)
    with pytest.raises(GatewayError):
        gateway.grade("grade_rubric", {})


def test_transport_timeout_is_a_gateway_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    gateway = make_gateway(Settings(), handler)
    with pytest.raises(GatewayError):
        gateway.grade("semantic_similarity", {})


def test_missing_key_is_not_ready() -> None:
    gateway = GatewayClient(Settings(gateway_key=""))
    assert gateway.is_ready() is False
    with pytest.raises(GatewayNotConfiguredError):
        gateway.grade("grade_rubric", {})


def test_decode_json_content_handles_fences_and_prose() -> None:
    assert decode_json_content('```json\n{"a": 1}\n```') == {"a": 1}
    assert decode_json_content('Here you go: {"a": 2} hope it helps') == {"a": 2}
    with pytest.raises(GatewayDecodeError):
        decode_json_content("no structured answer")
    with pytest.raises(GatewayDecodeError):
        decode_json_content(42)


def test_decode_grade_content_normalizes_aliases() -> None:
    grade = decode_grade_content(
        json.dumps(
            {
                "grade": "7.5",
                "maxscore": 10,
                "comment": "Solid work.",
                "criteria": [
                    {"name": " Accuracy ", "score": "4", "feedback": "Right facts"},
                    "ignored",
                ],
                "strengths": ["clear", ""],
            }
        )
    )

    assert grade.score == 7.5
    assert grade.max_score == 10.0
    assert grade.feedback == "Solid work."
    assert [(c.name, c.score, c.feedback) for c in grade.criteria] == [("Accuracy", 4.0, "Right facts")]
    assert grade.strengths == ["clear"]


def test_decode_grade_content_defaults_max_score() -> None:
    grade = decode_grade_content({"score": 55})
    assert grade.max_score == 100.0
    assert grade.criteria == []


def test_decode_grade_content_rejects_empty_objects() -> None:
    with pytest.raises(GatewayDecodeError):
        decode_grade_content("{}")

"""HTTP client for the external grading gateway (the scoring oracle).

The gateway is a black box behind a request/response contract. Every shape it
may answer with (JSON object, JSON string, markdown-fenced JSON, prose with an
embedded object) is decoded by the functions at the bottom of this module into
one canonical model or a :class:`GatewayDecodeError`.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from .config import Quality, Settings
from .errors import GatewayDecodeError, GatewayError, GatewayNotConfiguredError

logger = logging.getLogger(__name__)

CLIENT_LABEL = "autograder"

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


class GatewayResponse(BaseModel):
    provider: str = "gateway"
    content: Any = None


class GatewayCriterion(BaseModel):
    name: str = ""
    score: float = 0.0
    max_score: Optional[float] = None
    feedback: str = ""


class GatewayGrade(BaseModel):
    """Canonical rubric-grading answer: ``{score, max_score, feedback, criteria}``."""

    score: float = 0.0
    max_score: float = 100.0
    feedback: str = ""
    criteria: List[GatewayCriterion] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)


class GatewayClient:
    """Thin synchronous client; one POST per grading operation."""

    def __init__(self, settings: Settings, *, client: Optional[httpx.Client] = None) -> None:
        self._base_url = settings.gateway_url.rstrip("/")
        self._key = (settings.gateway_key or "").strip()
        self._timeout = max(settings.gateway_timeout_seconds, 1.0)
        self._client = client

    def is_ready(self) -> bool:
        return bool(self._key)

    def grade(
        self,
        operation: str,
        payload: Dict[str, Any],
        quality: Quality | str = "balanced",
    ) -> GatewayResponse:
        if not self.is_ready():
            raise GatewayNotConfiguredError("Grading gateway key is not configured.")

        request = {
            "operation": operation,
            "quality": quality,
            "payload": payload,
            "plugin": CLIENT_LABEL,
        }
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._key}",
            "X-Grading-Client": CLIENT_LABEL,
        }
        endpoint = f"{self._base_url}/grade"
        local_client = self._client or httpx.Client(timeout=self._timeout)
        close_client = self._client is None
        try:
            response = local_client.post(endpoint, json=request, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway request for '{operation}' failed: {exc}") from exc
        finally:
            if close_client:
                local_client.close()

        try:
            decoded = response.json()
        except ValueError as exc:
            raise GatewayError("Gateway response was not valid JSON.") from exc
        if not isinstance(decoded, dict):
            raise GatewayError("Gateway response was not a JSON object.")
        if decoded.get("error"):
            raise GatewayError(f"Gateway rejected request: {decoded['error']}")

        if "content" in decoded:
            content = decoded["content"]
        elif "result" in decoded:
            content = decoded["result"]
        else:
            content = decoded
        provider = str(decoded.get("provider") or "").strip() or "gateway"
        logger.debug("Gateway %s answered via %s", operation, provider)
        return GatewayResponse(provider=provider, content=content)


def _strip_fences(text: str) -> str:
    text = _FENCE_OPEN.sub("", text.strip())
    return _FENCE_CLOSE.sub("", text).strip()


def decode_json_content(content: Any) -> Dict[str, Any]:
    """Decode gateway content into a JSON object or raise GatewayDecodeError."""
    if isinstance(content, dict):
        return content
    if isinstance(content, BaseModel):
        return content.model_dump()
    if not isinstance(content, str):
        raise GatewayDecodeError(f"Unexpected gateway content type: {type(content).__name__}")

    text = _strip_fences(content)
    if not text:
        raise GatewayDecodeError("Gateway returned empty content.")
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        decoded = None
    if not isinstance(decoded, dict):
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            try:
                decoded = json.loads(text[start : end + 1])
            except json.JSONDecodeError:
                decoded = None
    if not isinstance(decoded, dict):
        raise GatewayDecodeError("Gateway content did not contain a JSON object.")
    return decoded


def coerce_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return default
    return default


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _first_present(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def decode_grade_content(content: Any) -> GatewayGrade:
    """Normalize a rubric-grading answer into :class:`GatewayGrade`."""
    data = decode_json_content(content)
    if not data:
        raise GatewayDecodeError("Gateway returned an empty grading object.")

    criteria: List[GatewayCriterion] = []
    raw_criteria = data.get("criteria")
    if isinstance(raw_criteria, list):
        for entry in raw_criteria:
            if not isinstance(entry, dict):
                continue
            max_score = entry.get("max_score", entry.get("maxscore"))
            criteria.append(
                GatewayCriterion(
                    name=str(entry.get("name") or "").strip(),
                    score=coerce_float(entry.get("score")),
                    max_score=coerce_float(max_score) if max_score is not None else None,
                    feedback=str(entry.get("feedback") or "").strip(),
                )
            )

    score = _first_present(data, "score", "grade")
    max_score = _first_present(data, "max_score", "maxscore")
    feedback = _first_present(data, "feedback", "comment")
    return GatewayGrade(
        score=coerce_float(score),
        max_score=coerce_float(max_score, 100.0) if max_score is not None else 100.0,
        feedback=str(feedback or "").strip(),
        criteria=criteria,
        strengths=_string_list(data.get("strengths")),
        improvements=_string_list(data.get("improvements")),
        raw=data,
    )


__all__ = [
    "GatewayClient",
    "GatewayCriterion",
    "GatewayGrade",
    "GatewayResponse",
    "coerce_float",
    "decode_grade_content",
    "decode_json_content",
]

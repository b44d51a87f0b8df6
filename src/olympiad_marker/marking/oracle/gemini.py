"""Gemini REST client used as the scoring oracle."""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

import httpx

from olympiad_marker.marking.models import MarkingScheme, PartSpec
from olympiad_marker.marking.oracle.base import OracleError, OracleRequest, OracleResponse

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_MODEL = "gemini-3-pro-preview"
DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_POINTS = 7.0

EXAMINER_SYSTEM_INSTRUCTION = """\
You are a World-Class Mathematical Olympiad Examiner.
Strictness Level: SKEPTICAL.
Philosophy:
1. THE OLYMPIAD GAP: Scores are usually 0, 1, 2 or 6, 7. 3-5 is rare and only for major \
structural breakthroughs.
2. LOGICAL AUDIT: Transcribe the student's logic first. If the logic is non-existent or \
"word salad" with keywords (like 'pigeonhole'), award 0 points.
3. VERIFICATION: Do not assume a claim is true because it is written. Verify if step N \
implies N+1.
4. PROBLEM 1: Be slightly more welcoming of small lemmas, but maintain rigor.
5. NO GENEROSITY: If you are unsure, deduct.
Output a score, detailed feedback explaining the logical gaps, and a confidence score."""

_SCORE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "score": {"type": "NUMBER", "description": "Calculated points (0 to maxPoints)"},
        "feedback": {
            "type": "STRING",
            "description": "Justification of the score and logical audit",
        },
        "confidence": {"type": "NUMBER", "description": "0 to 1 scale of accuracy"},
        "extractedStudentName": {"type": "STRING"},
        "schoolName": {"type": "STRING"},
    },
    "required": ["score", "feedback", "confidence"],
}

_SCHEME_SCHEMA: dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "name": {"type": "STRING"},
            "maxPoints": {"type": "NUMBER"},
            "rubric": {"type": "STRING"},
        },
        "required": ["name", "maxPoints", "rubric"],
    },
}


class GeminiOracle:
    """Score parts through ``models/{model}:generateContent`` with a JSON schema."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 2,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def score(self, request: OracleRequest) -> OracleResponse:
        parts: list[dict[str, Any]] = [
            {"text": _context_text(request.scheme)},
            {"text": _task_text(request.part)},
            {"text": _continuation_text(request)},
            *_image_parts(request.page_images),
        ]
        data = self._generate(
            parts=parts,
            schema=_SCORE_SCHEMA,
            system=EXAMINER_SYSTEM_INSTRUCTION,
        )
        payload = _parse_json_payload(data)
        if not isinstance(payload, dict):
            raise OracleError("Oracle response is not a JSON object.")
        try:
            score = float(payload["score"])
            confidence = float(payload["confidence"])
            explanation = str(payload["feedback"])
        except (KeyError, TypeError, ValueError) as error:
            raise OracleError(f"Oracle response misses required fields: {error}") from error

        return OracleResponse(
            score=min(max(score, 0.0), request.part.max_points),
            explanation=explanation,
            confidence=min(max(confidence, 0.0), 1.0),
            author_name=_optional_text(payload.get("extractedStudentName")),
            group_name=_optional_text(payload.get("schoolName")),
            total_tokens=_total_tokens(data),
        )

    def extract_marking_scheme(self, page_images: list[bytes]) -> list[dict[str, Any]]:
        """Read problems and rubrics off a marking-scheme document."""

        parts: list[dict[str, Any]] = [
            {
                "text": (
                    "Extract problems and rubrics from this marking scheme. Format as JSON "
                    'array of objects with keys: "name", "maxPoints", "rubric".'
                ),
            },
            *_image_parts(page_images),
        ]
        data = self._generate(parts=parts, schema=_SCHEME_SCHEMA, system=None)
        payload = _parse_json_payload(data)
        if not isinstance(payload, list):
            raise OracleError("Marking scheme response is not a JSON array.")
        problems: list[dict[str, Any]] = []
        for item in payload:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            problems.append(
                {
                    "name": str(item["name"]),
                    "max_points": float(item.get("maxPoints") or DEFAULT_MAX_POINTS),
                    "rubric": str(item.get("rubric", "")),
                },
            )
        return problems

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiOracle:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _generate(
        self,
        *,
        parts: list[dict[str, Any]],
        schema: dict[str, Any],
        system: str | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }
        if system is not None:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        try:
            response = self._client.post(f"/v1beta/models/{self.model}:generateContent", json=body)
        except httpx.TimeoutException as error:
            logger.warning("Oracle call timed out for model %s", self.model)
            raise OracleError(f"Oracle request timed out: {error}") from error
        except httpx.HTTPError as error:
            logger.warning("Oracle transport error for model %s: %s", self.model, error)
            raise OracleError(f"Oracle transport error: {error}") from error

        if response.status_code == 429:  # noqa: PLR2004
            raise OracleError(
                f"HTTP 429: {_error_message(response)}",
                rate_limited=True,
                status_code=response.status_code,
            )
        if not response.is_success:
            raise OracleError(
                f"HTTP {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except json.JSONDecodeError as error:
            raise OracleError("Oracle returned a non-JSON response body.") from error
        if not isinstance(data, dict):
            raise OracleError("Oracle returned an unexpected response body.")
        return data


def _context_text(scheme: MarkingScheme) -> str:
    return f"Paper: {scheme.paper_name}. Additional Context: {scheme.additional_instructions}"


def _task_text(part: PartSpec) -> str:
    return (
        f'Current Task: Mark Problem "{part.name}" (Max Points: {part.max_points:g}). '
        f"Rubric: {part.rubric}."
    )


def _continuation_text(request: OracleRequest) -> str:
    if request.extract_identity:
        return "Also extract student name and school if visible."
    lines = ["Continue with the existing student context."]
    if request.identity.author_name or request.identity.group_name:
        lines.append(
            f"Student: {request.identity.author_name or 'unknown'}; "
            f"School: {request.identity.group_name or 'unknown'}.",
        )
    for index, result in enumerate(request.prior_results):
        part_name = (
            request.scheme.parts[index].name
            if index < len(request.scheme.parts)
            else result.part_id
        )
        lines.append(f"Already marked {part_name}: {result.score:g} points.")
    return "\n".join(lines)


def _image_parts(images: list[bytes]) -> list[dict[str, Any]]:
    return [
        {
            "inlineData": {
                "mimeType": "image/jpeg",
                "data": base64.b64encode(image).decode("ascii"),
            },
        }
        for image in images
    ]


def _parse_json_payload(data: dict[str, Any]) -> Any:
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        raise OracleError(f"Oracle returned no candidates (block reason: {reason or '-'}).")
    content = candidates[0].get("content") or {}
    text = "".join(
        str(part.get("text", "")) for part in content.get("parts", []) if isinstance(part, dict)
    )
    try:
        return json.loads(text or "{}")
    except json.JSONDecodeError as error:
        raise OracleError(f"Oracle response is not valid JSON: {error}") from error


def _total_tokens(data: dict[str, Any]) -> int | None:
    usage = data.get("usageMetadata")
    if not isinstance(usage, dict):
        return None
    value = usage.get("totalTokenCount")
    return int(value) if isinstance(value, int | float) else None


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except json.JSONDecodeError:
        return response.text[:300] or response.reason_phrase
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return str(payload["error"].get("message") or response.reason_phrase)
    return response.reason_phrase


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None

from __future__ import annotations

import base64
import json

import allure
import httpx
import pytest

from olympiad_marker.marking.failure_classifier import classify_oracle_failure
from olympiad_marker.marking.models import (
    DEFAULT_MARKING_SCHEME,
    CandidateIdentity,
    FailureClass,
    PartResult,
)
from olympiad_marker.marking.oracle import GeminiOracle, OracleError, OracleRequest

pytestmark = [
    allure.epic("Marking Queue"),
    allure.feature("Gemini Oracle"),
]


def _candidate(payload: object, *, tokens: int | None = 1234) -> dict[str, object]:
    body: dict[str, object] = {
        "candidates": [{"content": {"parts": [{"text": json.dumps(payload)}]}}],
    }
    if tokens is not None:
        body["usageMetadata"] = {"totalTokenCount": tokens}
    return body


def _oracle(handler) -> GeminiOracle:
    return GeminiOracle(
        api_key="test-key",
        model="gemini-test",
        base_url="https://gemini.test/",
        transport=httpx.MockTransport(handler),
    )


def _request(part_index: int = 0, **overrides) -> OracleRequest:
    fields = {
        "scheme": DEFAULT_MARKING_SCHEME,
        "part": DEFAULT_MARKING_SCHEME.parts[part_index],
        "part_index": part_index,
        "page_images": [b"page-one", b"page-two"],
        "extract_identity": part_index == 0,
    }
    fields.update(overrides)
    return OracleRequest(**fields)


def test_score_posts_generate_content_and_parses_verdict() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["api_key"] = request.headers["x-goog-api-key"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=_candidate(
                {
                    "score": 6,
                    "feedback": "Solid bijection.",
                    "confidence": 0.85,
                    "extractedStudentName": " Ada Lovelace ",
                    "schoolName": "",
                },
            ),
        )

    with _oracle(handler) as oracle:
        response = oracle.score(_request())

    assert captured["path"] == "/v1beta/models/gemini-test:generateContent"
    assert captured["api_key"] == "test-key"
    body = captured["body"]
    assert isinstance(body, dict)
    assert "SKEPTICAL" in body["systemInstruction"]["parts"][0]["text"]
    parts = body["contents"][0]["parts"]
    inline = [part["inlineData"] for part in parts if "inlineData" in part]
    assert [base64.b64decode(item["data"]) for item in inline] == [b"page-one", b"page-two"]
    assert any("Also extract student name" in part.get("text", "") for part in parts)
    assert body["generationConfig"]["responseMimeType"] == "application/json"

    assert response.score == 6
    assert response.explanation == "Solid bijection."
    assert response.confidence == 0.85
    assert response.author_name == "Ada Lovelace"
    assert response.group_name is None
    assert response.total_tokens == 1234


def test_continuation_request_resends_context() -> None:
    captured: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        captured.extend(part.get("text", "") for part in body["contents"][0]["parts"])
        return httpx.Response(
            200,
            json=_candidate({"score": 1, "feedback": "gap", "confidence": 0.5}),
        )

    request = _request(
        part_index=1,
        prior_results=(PartResult(part_id="1", score=7, explanation="ok", confidence=1.0),),
        identity=CandidateIdentity(author_name="Ada", group_name="Lyceum"),
    )
    with _oracle(handler) as oracle:
        oracle.score(request)

    text = "\n".join(captured)
    assert "Already marked Problem 1: 7 points." in text
    assert "Student: Ada; School: Lyceum." in text
    assert "Also extract student name" not in text


def test_score_and_confidence_are_clamped() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=_candidate({"score": 11, "feedback": "generous", "confidence": 1.7}, tokens=None),
        )

    with _oracle(handler) as oracle:
        response = oracle.score(_request())

    assert response.score == 7
    assert response.confidence == 1.0
    assert response.total_tokens is None


def test_http_429_is_rate_limited() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={"error": {"code": 429, "message": "Resource has been exhausted"}},
        )

    with _oracle(handler) as oracle, pytest.raises(OracleError) as error_info:
        oracle.score(_request())

    error = error_info.value
    assert error.rate_limited is True
    assert error.status_code == 429
    assert "Resource has been exhausted" in str(error)
    assert classify_oracle_failure(error).failure_class == FailureClass.RATE_LIMITED


def test_server_error_is_not_rate_limited() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "Internal error"}})

    with _oracle(handler) as oracle, pytest.raises(OracleError) as error_info:
        oracle.score(_request())

    assert error_info.value.rate_limited is False
    assert str(error_info.value) == "HTTP 500: Internal error"
    assert (
        classify_oracle_failure(error_info.value).failure_class
        == FailureClass.TRANSIENT_ORACLE_ERROR
    )


def test_timeout_becomes_oracle_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    with _oracle(handler) as oracle, pytest.raises(OracleError, match="timed out"):
        oracle.score(_request())


@pytest.mark.parametrize(
    "body",
    [
        {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}},
        {"candidates": [{"content": {"parts": [{"text": "not json"}]}}]},
        _candidate({"feedback": "no score", "confidence": 0.1}),
    ],
)
def test_malformed_responses_raise_oracle_error(body: dict[str, object]) -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with _oracle(handler) as oracle, pytest.raises(OracleError):
        oracle.score(_request())


def test_extract_marking_scheme_defaults_max_points() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert "systemInstruction" not in body
        return httpx.Response(
            200,
            json=_candidate(
                [
                    {"name": "Problem A", "maxPoints": 10, "rubric": "Full marks for proof."},
                    {"name": "Problem B", "maxPoints": 0, "rubric": "Construction."},
                    {"rubric": "nameless entries are dropped"},
                ],
            ),
        )

    with _oracle(handler) as oracle:
        problems = oracle.extract_marking_scheme([b"scheme-page"])

    assert problems == [
        {"name": "Problem A", "max_points": 10.0, "rubric": "Full marks for proof."},
        {"name": "Problem B", "max_points": 7.0, "rubric": "Construction."},
    ]

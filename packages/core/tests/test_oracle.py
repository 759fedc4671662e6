"""Tests for the optional text classification collaborator."""

from __future__ import annotations

import json
import time

import httpx
import pytest
from smartimport_core import BestEffortOracle, HttpTextClassifier, OracleUnavailable
from smartimport_schemas import OracleRequest, Suggestion

REQUEST = OracleRequest(
    description="Cinema NOS",
    magnitude=7.5,
    direction="expense",
    candidate_categories=["Entretenimento", "Outros"],
)


def _classifier(handler) -> HttpTextClassifier:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpTextClassifier("http://oracle.test/classify", timeout_seconds=1.0, client=client)


def test_http_classifier_reads_the_suggestion() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"category": "Entretenimento", "confidence": 0.82})

    suggestion = _classifier(handler).classify(REQUEST)

    assert suggestion.category == "Entretenimento"
    assert suggestion.confidence == pytest.approx(0.82)
    assert suggestion.source == "oracle"
    assert suggestion.direction == "expense"
    assert seen[0]["candidate_categories"] == ["Entretenimento", "Outros"]


def test_http_classifier_clamps_confidence() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"category": "Outros", "confidence": 7})

    assert _classifier(handler).classify(REQUEST).confidence == 1.0


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="busy"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"confidence": 0.9}),
    ],
)
def test_http_classifier_failures_are_unavailable(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(OracleUnavailable):
        _classifier(handler).classify(REQUEST)


def test_http_classifier_connection_errors_are_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(OracleUnavailable):
        _classifier(handler).classify(REQUEST)


class _Sleepy:
    def classify(self, request: OracleRequest) -> Suggestion:
        time.sleep(0.5)
        return Suggestion(category="Outros", confidence=1.0, source="oracle")


class _Exploding:
    def classify(self, request: OracleRequest) -> Suggestion:
        raise RuntimeError("bug")


def test_best_effort_oracle_gives_up_after_timeout() -> None:
    oracle = BestEffortOracle(_Sleepy(), timeout_seconds=0.05)
    try:
        assert oracle.suggest(REQUEST) is None
    finally:
        oracle.close()


def test_best_effort_oracle_swallows_classifier_errors() -> None:
    oracle = BestEffortOracle(_Exploding(), timeout_seconds=1.0)
    try:
        assert oracle.suggest(REQUEST) is None
    finally:
        oracle.close()

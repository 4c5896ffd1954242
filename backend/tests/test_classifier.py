from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from classifier import TranscriptClassifier, parse_analysis
from config import ClassifierConfig
from errors import (
    AllModelsExhaustedError,
    ClassificationError,
    MalformedResponseError,
    MissingInputError,
)
from models import Tag


class FakeResponse:
    def __init__(self, status_code: int, json_body=None, text: str = ""):
        self.status_code = status_code
        self._json_body = json_body
        self.text = text or (json.dumps(json_body) if json_body is not None else "")

    def json(self):
        if self._json_body is None:
            raise ValueError("No JSON body")
        return self._json_body


class FakeAsyncClient:
    def __init__(self, queue, requests):
        self.queue = queue
        self.requests = requests

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, headers=None, json=None):
        self.requests.append({"url": url, "headers": headers, "json": json})
        assert self.queue, f"No fake response queued for URL: {url}"
        item = self.queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture()
def llm(monkeypatch):
    queued: list = []
    requests: list = []
    monkeypatch.setattr(httpx, "AsyncClient", lambda *a, **kw: FakeAsyncClient(queued, requests))
    return queued, requests


def _completion(content) -> FakeResponse:
    if not isinstance(content, str):
        content = json.dumps(content)
    return FakeResponse(200, {"choices": [{"message": {"content": content}}]})


def _classifier(models=("m-1", "m-2", "m-3")) -> TranscriptClassifier:
    return TranscriptClassifier(ClassifierConfig(api_key="test-key", models=list(models)))


def test_classify_returns_structured_analysis(llm):
    queued, requests = llm
    queued.append(
        _completion({"tags": ["Safe"], "sentiment_score": 2, "key_topics": "Resident is safe at home."})
    )

    analysis = asyncio.run(_classifier().classify("I'm fine, just checking in"))

    assert analysis.sentiment_score == 2
    assert analysis.tags == [Tag.SAFE]
    assert not analysis.is_distress
    body = requests[0]["json"]
    assert body["model"] == "m-1"
    assert body["response_format"]["type"] == "json_schema"
    assert body["response_format"]["json_schema"]["strict"] is True
    assert "I'm fine, just checking in" in body["messages"][0]["content"]
    assert requests[0]["headers"]["Authorization"] == "Bearer test-key"


def test_rate_limited_models_fall_through_to_next(llm):
    queued, requests = llm
    queued.extend(
        [
            FakeResponse(429, {"error": {"message": "Rate limit exceeded"}}),
            FakeResponse(403, text="Quota exceeded for this model"),
            _completion(
                {"tags": ["Evacuation", "Medical"], "sentiment_score": 9, "key_topics": "Water rising, cannot move."}
            ),
        ]
    )

    analysis = asyncio.run(_classifier().classify("Help, water is rising, I can't move"))

    assert [r["json"]["model"] for r in requests] == ["m-1", "m-2", "m-3"]
    assert analysis.sentiment_score == 9
    assert analysis.tags == [Tag.EVACUATION, Tag.MEDICAL]
    assert analysis.is_distress


def test_rate_limit_reported_inside_ok_body_falls_through(llm):
    queued, requests = llm
    queued.extend(
        [
            FakeResponse(200, {"error": {"code": 429, "message": "Provider returned error"}}),
            _completion({"tags": [], "sentiment_score": 3, "key_topics": "Calm."}),
        ]
    )

    analysis = asyncio.run(_classifier().classify("hello"))

    assert len(requests) == 2
    assert analysis.sentiment_score == 3


def test_non_rate_limit_error_fails_without_trying_other_models(llm):
    queued, requests = llm
    queued.extend([FakeResponse(500, text="upstream exploded"), _completion({})])

    with pytest.raises(ClassificationError) as exc_info:
        asyncio.run(_classifier().classify("hello"))

    assert not isinstance(exc_info.value, AllModelsExhaustedError)
    assert len(requests) == 1


def test_transport_error_is_a_classification_error(llm):
    queued, requests = llm
    queued.append(httpx.ConnectError("connection refused"))

    with pytest.raises(ClassificationError):
        asyncio.run(_classifier().classify("hello"))
    assert len(requests) == 1


def test_all_models_rate_limited_raises_exhausted_with_last_error(llm):
    queued, _ = llm
    queued.extend([FakeResponse(429, text="slow down 1"), FakeResponse(429, text="slow down 2")])

    with pytest.raises(AllModelsExhaustedError) as exc_info:
        asyncio.run(_classifier(models=("a", "b")).classify("hello"))

    assert "slow down 2" in str(exc_info.value.last_error)


def test_malformed_json_is_not_retried(llm):
    queued, requests = llm
    queued.extend([_completion("this is not json"), _completion({})])

    with pytest.raises(MalformedResponseError):
        asyncio.run(_classifier().classify("hello"))
    assert len(requests) == 1


def test_missing_message_content_is_malformed(llm):
    queued, _ = llm
    queued.append(FakeResponse(200, {"choices": []}))

    with pytest.raises(MalformedResponseError):
        asyncio.run(_classifier().classify("hello"))


def test_empty_text_fails_fast_without_a_request(llm):
    _, requests = llm

    with pytest.raises(MissingInputError):
        asyncio.run(_classifier().classify("   "))
    assert requests == []


def test_missing_api_key_is_not_recoverable(llm):
    _, requests = llm
    classifier = TranscriptClassifier(ClassifierConfig(api_key=""))

    with pytest.raises(ClassificationError) as exc_info:
        asyncio.run(classifier.classify("hello"))

    assert exc_info.value.recoverable is False
    assert requests == []


def test_parse_analysis_drops_tags_outside_vocabulary():
    analysis = parse_analysis(
        json.dumps(
            {"tags": ["Power", "Aliens", "Power", "Food/Water"], "sentiment_score": 5, "key_topics": "Needs power."}
        )
    )

    assert analysis.tags == [Tag.POWER, Tag.FOOD_WATER]


def test_parse_analysis_accepts_fenced_json():
    analysis = parse_analysis('```json\n{"tags": ["Safe"], "sentiment_score": 1, "key_topics": "Fine."}\n```')

    assert analysis.sentiment_score == 1


@pytest.mark.parametrize(
    "payload",
    [
        {"tags": ["Safe"], "sentiment_score": 11, "key_topics": "x"},
        {"tags": ["Safe"], "sentiment_score": -1, "key_topics": "x"},
        {"tags": "Safe", "sentiment_score": 3, "key_topics": "x"},
        {"tags": ["Safe"], "key_topics": "x"},
        {"tags": ["Safe"], "sentiment_score": 3},
        ["not", "an", "object"],
    ],
)
def test_parse_analysis_rejects_nonconforming_documents(payload):
    with pytest.raises(MalformedResponseError):
        parse_analysis(json.dumps(payload))

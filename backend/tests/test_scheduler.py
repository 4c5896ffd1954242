from __future__ import annotations

import asyncio

import httpx
import pytest

from errors import NotFoundError


class FakeResponse:
    def __init__(self, status_code: int, json_body=None, text: str = ""):
        self.status_code = status_code
        self._json_body = json_body
        self.text = text

    def json(self):
        if self._json_body is None:
            raise ValueError("No JSON body")
        return self._json_body


class FakeVapi:
    """Answers POST /call per resident, recording payloads and peak concurrency."""

    def __init__(self):
        self.replies: dict = {}
        self.requests: list = []
        self.in_flight = 0
        self.peak = 0

    def client(self, *args, **kwargs):
        return _FakeVapiClient(self)


class _FakeVapiClient:
    def __init__(self, vapi: FakeVapi):
        self.vapi = vapi

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, json=None, headers=None):
        vapi = self.vapi
        vapi.requests.append({"url": url, "json": json, "headers": headers})
        vapi.in_flight += 1
        vapi.peak = max(vapi.peak, vapi.in_flight)
        try:
            await asyncio.sleep(0.01)
        finally:
            vapi.in_flight -= 1
        reply = vapi.replies.get(json["metadata"]["residentId"])
        if isinstance(reply, BaseException):
            raise reply
        return reply or FakeResponse(201, {"id": f"call_{json['metadata']['residentId']}"})


@pytest.fixture()
def vapi(monkeypatch):
    fake = FakeVapi()
    monkeypatch.setattr(httpx, "AsyncClient", fake.client)
    return fake


def _orchestrator(tables, **overrides):
    import scheduler
    from config import VoiceConfig

    settings = {
        "api_key": "vapi-key",
        "phone_number_id": "pn_123",
        "webhook_base_url": "https://api.floodvoice.test",
        **overrides,
    }
    config = VoiceConfig(**settings)
    return scheduler.CallTriggerOrchestrator(config, session_factory=tables.SessionLocal)


def _status(tables, resident_id):
    session = tables.SessionLocal()
    try:
        return session.query(tables.Resident).filter_by(id=resident_id).one().status.value
    finally:
        session.close()


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("555-010-2030", "+15550102030"),
        ("(555) 010 2030", "+15550102030"),
        ("+1 555 010 2030", "+15550102030"),
        ("44 20 7946 0958", "+442079460958"),
    ],
)
def test_normalize_phone(app_ctx, raw, expected):
    import scheduler

    assert scheduler.normalize_phone(raw) == expected


def test_trigger_reports_per_resident_outcomes(seed, tables, vapi):
    a = seed.resident(name="Ana Lopez", phone="555-000-0001", status="safe")
    b = seed.resident(name="Ben Ortiz", phone="12", status="distress")
    c = seed.resident(name="Cy Young", phone="555-000-0003", status="safe")
    vapi.replies[b] = FakeResponse(400, {"message": "Invalid number"}, text='{"message": "Invalid number"}')

    response = asyncio.run(_orchestrator(tables).trigger_check_ins())

    assert response.message == "Triggered 3 calls (2 succeeded, 1 failed)"
    by_id = {r.resident_id: r for r in response.results}
    assert by_id[a].ok and by_id[a].session_id == f"call_{a}"
    assert by_id[c].ok and by_id[c].session_id == f"call_{c}"
    assert not by_id[b].ok
    assert "Invalid number" in by_id[b].error
    assert {_status(tables, rid) for rid in (a, b, c)} == {"pending"}


def test_call_payload_carries_resident_metadata(seed, tables, vapi):
    resident = seed.resident(name="Rosa Diaz", phone="555-010-2030")

    asyncio.run(_orchestrator(tables).trigger_check_ins(resident))

    sent = vapi.requests[0]
    assert sent["url"] == "https://api.vapi.ai/call"
    assert sent["headers"]["Authorization"] == "Bearer vapi-key"
    body = sent["json"]
    assert body["phoneNumberId"] == "pn_123"
    assert body["customer"] == {"number": "+15550102030", "name": "Rosa Diaz"}
    assert body["metadata"] == {"residentId": resident}
    assert body["assistant"]["server"]["url"] == "https://api.floodvoice.test/webhooks/vapi"
    tool = body["assistant"]["model"]["tools"][0]
    assert tool["function"]["name"] == "reportStatus"


def test_unresponsive_and_phoneless_residents_are_skipped(seed, tables, vapi):
    reachable = seed.resident(phone="555-000-0001")
    unresponsive = seed.resident(phone="555-000-0002", status="unresponsive")
    phoneless = seed.resident(phone=None, status="safe")

    response = asyncio.run(_orchestrator(tables).trigger_check_ins())

    assert [r.resident_id for r in response.results] == [reachable]
    assert _status(tables, reachable) == "pending"
    assert _status(tables, unresponsive) == "unresponsive"
    assert _status(tables, phoneless) == "safe"
    assert len(vapi.requests) == 1


def test_unknown_target_resident_raises(app_ctx, tables, vapi):
    with pytest.raises(NotFoundError):
        asyncio.run(_orchestrator(tables).trigger_check_ins("res_missing"))
    assert vapi.requests == []


def test_transport_failure_is_captured_per_resident(seed, tables, vapi):
    ok = seed.resident(phone="555-000-0001")
    down = seed.resident(phone="555-000-0002")
    vapi.replies[down] = httpx.ConnectError("connection refused")

    response = asyncio.run(_orchestrator(tables).trigger_check_ins())

    by_id = {r.resident_id: r for r in response.results}
    assert by_id[ok].ok
    assert not by_id[down].ok
    assert "connection refused" in by_id[down].error


def test_concurrent_calls_are_bounded(seed, tables, vapi):
    for i in range(6):
        seed.resident(phone=f"555-000-000{i}")

    response = asyncio.run(_orchestrator(tables, max_concurrent_calls=2).trigger_check_ins())

    assert response.succeeded == 6
    assert vapi.peak <= 2


def test_mock_mode_without_api_key(seed, tables, vapi):
    resident = seed.resident()

    response = asyncio.run(_orchestrator(tables, api_key="").trigger_check_ins())

    assert response.results[0].ok
    assert response.results[0].session_id.startswith("mock_call_")
    assert vapi.requests == []
    assert _status(tables, resident) == "pending"


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------
def test_trigger_endpoint_requires_auth(api_request):
    assert api_request("POST", "/calls/trigger", json={}, auth=False).status_code == 401


def test_trigger_endpoint_places_calls(api_request, seed):
    resident = seed.resident()

    response = api_request("POST", "/calls/trigger", json={"resident_id": resident})

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Triggered 1 calls (1 succeeded, 0 failed)"
    assert body["results"][0]["resident_id"] == resident


def test_trigger_endpoint_unknown_resident_is_404(api_request):
    assert api_request("POST", "/calls/trigger", json={"resident_id": "res_missing"}).status_code == 404


def test_cron_endpoint_checks_shared_secret(api_request, seed):
    seed.resident()

    denied = api_request("POST", "/cron/check-ins", headers={"Authorization": "Bearer wrong"}, auth=False)
    allowed = api_request(
        "POST", "/cron/check-ins", headers={"Authorization": "Bearer cron-test-secret"}, auth=False
    )

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["message"].startswith("Triggered 1 calls")


def test_scheduler_is_disabled_with_zero_interval(app_ctx):
    import scheduler

    scheduler.start_scheduler(app_ctx.orchestrator, 0)

    assert not scheduler.scheduler.running

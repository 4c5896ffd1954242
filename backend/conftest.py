from __future__ import annotations

import asyncio
import importlib
import sys
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import httpx
import pytest

# Modules that read env vars or bind the engine at import time.
_ENV_BOUND_MODULES = ("main", "database", "auth", "scheduler", "notifier", "triage", "classifier", "config")

_EXTERNAL_ENV = (
    "OPENROUTER_API_KEY",
    "ANALYSIS_LLM_MODELS",
    "TELEGRAM_BOT_TOKEN",
    "FALLBACK_TELEGRAM_CHAT_ID",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "ESCALATION_TO_NUMBER",
    "VAPI_PRIVATE_KEY",
    "VAPI_PHONE_NUMBER_ID",
    "CHECK_INTERVAL_HOURS",
)


@pytest.fixture()
def app_ctx(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Import backend.main against an isolated SQLite DB with no external credentials."""
    db_path = tmp_path / "test_floodvoice.db"
    monkeypatch.setenv("FLOODVOICE_DB_PATH", str(db_path))
    # Must be set before load_dotenv runs inside config.py
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("CRON_SECRET", "cron-test-secret")
    monkeypatch.setenv("FALLBACK_TELEGRAM_CHAT_ID", "fallback-chat")
    for name in _EXTERNAL_ENV:
        if name != "FALLBACK_TELEGRAM_CHAT_ID":
            monkeypatch.delenv(name, raising=False)

    for module_name in _ENV_BOUND_MODULES:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    main.init_db()
    return main


@pytest.fixture()
def tables(app_ctx):
    """The freshly imported database module (models + SessionLocal)."""
    return importlib.import_module("database")


@pytest.fixture()
def db(tables):
    session = tables.SessionLocal()
    try:
        yield session
    finally:
        session.close()


class Seeder:
    def __init__(self, tables):
        self.tables = tables

    def liaison(self, chat_id: Optional[str] = None, email: Optional[str] = None) -> str:
        session = self.tables.SessionLocal()
        try:
            liaison_id = f"lia_{uuid4().hex[:8]}"
            session.add(
                self.tables.LiaisonProfile(
                    id=liaison_id,
                    email=email or f"{liaison_id}@floodvoice.test",
                    password_hash="x",
                    name="Liaison " + liaison_id,
                    telegram_chat_id=chat_id,
                )
            )
            session.commit()
            return liaison_id
        finally:
            session.close()

    def resident(
        self,
        name: str = "Rosa Diaz",
        phone: Optional[str] = "555-010-2030",
        liaison_id: Optional[str] = None,
        status: str = "safe",
        resident_id: Optional[str] = None,
    ) -> str:
        from models import ResidentStatus

        session = self.tables.SessionLocal()
        try:
            rid = resident_id or f"res_{uuid4().hex[:8]}"
            session.add(
                self.tables.Resident(
                    id=rid,
                    name=name,
                    phone=phone,
                    liaison_id=liaison_id,
                    status=ResidentStatus(status),
                )
            )
            session.commit()
            return rid
        finally:
            session.close()


@pytest.fixture()
def seed(tables):
    return Seeder(tables)


@pytest.fixture()
def auth_headers(app_ctx, seed):
    """Create a test liaison and return Bearer auth headers."""
    import auth as auth_module

    liaison_id = seed.liaison(chat_id=None, email="operator@floodvoice.test")
    token = auth_module.create_access_token(liaison_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def api_request(app_ctx, auth_headers):
    """Synchronous request helper for FastAPI app (auth headers included by default)."""

    def _request(method: str, path: str, headers: dict | None = None, auth: bool = True, **kwargs) -> httpx.Response:
        merged_headers = {**(auth_headers if auth else {}), **(headers or {})}

        async def _run() -> httpx.Response:
            transport = httpx.ASGITransport(app=app_ctx.app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                return await client.request(method, path, headers=merged_headers, **kwargs)

        return asyncio.run(_run())

    return _request


@pytest.fixture()
def sent_alerts(app_ctx, monkeypatch):
    """Record Telegram sends instead of performing them."""
    sent: list[dict[str, Any]] = []

    async def fake_send(chat_id: str, text: str, parse_mode: str = "HTML") -> bool:
        sent.append({"chat_id": chat_id, "text": text, "parse_mode": parse_mode})
        return True

    monkeypatch.setattr(app_ctx.dispatcher, "send_telegram_message", fake_send)
    return sent


class FakeClassifier:
    """Returns queued CallAnalysis results (or raises queued exceptions)."""

    def __init__(self):
        self.queue: list[Any] = []
        self.calls: list[str] = []

    async def classify(self, text: str):
        self.calls.append(text)
        assert self.queue, "No fake classification queued"
        item = self.queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture()
def fake_classifier(app_ctx, monkeypatch):
    fake = FakeClassifier()
    monkeypatch.setattr(app_ctx.processor, "classifier", fake)
    return fake

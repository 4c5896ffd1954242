"""Outbound check-in calls via the Vapi API, plus the periodic APScheduler job."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import VoiceConfig
from database import Resident, SessionLocal
from errors import NotFoundError, OutboundCallError, PersistenceError
from models import CheckInTarget, ResidentStatus, TriggerOutcome, TriggerResponse

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

DEFAULT_SYSTEM_PROMPT = (
    "You are FloodVoice, a calm and caring safety check-in agent calling residents "
    "during a flood emergency. Ask one short question at a time. Find out whether the "
    "person is safe, whether water is entering their home, and whether they need "
    "medical help, food, water, power or evacuation. As soon as you know how they are, "
    "call the reportStatus tool with status 'safe' or 'distress' and a one-sentence "
    "summary. If nobody answers or the person cannot respond, report 'unresponsive'. "
    "If they are in danger, tell them to call 911 immediately."
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def normalize_phone(raw: str) -> str:
    """Best-effort E.164: 10-digit US numbers get +1, everything else gets a +."""
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def build_assistant_config(target: CheckInTarget, server_url: str) -> dict:
    language_note = f" Speak in {target.language}." if target.language else ""
    return {
        "name": "FloodVoice Check-in",
        "firstMessage": (
            f"Hello {target.name.split()[0]}, this is FloodVoice calling to check that "
            "you are safe during the flooding. How are you doing right now?"
        ),
        "model": {
            "provider": "openai",
            "model": "gpt-4o-mini",
            "messages": [{"role": "system", "content": DEFAULT_SYSTEM_PROMPT + language_note}],
            "tools": [
                {
                    "type": "function",
                    "function": {
                        "name": "reportStatus",
                        "description": "Report the resident's safety status to the liaison dashboard.",
                        "parameters": {
                            "type": "object",
                            "properties": {
                                "status": {
                                    "type": "string",
                                    "enum": ["safe", "distress", "unresponsive"],
                                },
                                "summary": {
                                    "type": "string",
                                    "description": "One sentence describing the resident's situation.",
                                },
                            },
                            "required": ["status", "summary"],
                        },
                    },
                    "server": {"url": server_url},
                }
            ],
        },
        "voice": {"provider": "11labs", "voiceId": "rachel"},
        "server": {"url": server_url},
        "serverMessages": ["end-of-call-report", "tool-calls", "function-call"],
        "endCallFunctionEnabled": True,
    }


def _error_text(response: httpx.Response) -> str:
    """Raw error body from Vapi, re-serialized when it is JSON."""
    try:
        return json.dumps(response.json())
    except ValueError:
        return response.text or f"HTTP {response.status_code}"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class CallTriggerOrchestrator:
    """Fans out check-in calls with bounded concurrency and per-resident results."""

    def __init__(self, config: VoiceConfig, session_factory: Callable[[], Session] = SessionLocal):
        self.config = config
        self.session_factory = session_factory

    @property
    def server_url(self) -> str:
        return f"{self.config.webhook_base_url}/webhooks/vapi"

    def select_targets(self, db: Session, target_resident_id: Optional[str] = None) -> list[CheckInTarget]:
        if target_resident_id:
            resident = db.query(Resident).filter(Resident.id == target_resident_id).first()
            if resident is None:
                raise NotFoundError(f"Resident {target_resident_id} not found")
            residents = [resident]
        else:
            # Known-unreachable residents are not re-called automatically.
            residents = (
                db.query(Resident)
                .filter(Resident.status != ResidentStatus.UNRESPONSIVE)
                .order_by(Resident.created_at)
                .all()
            )

        targets = []
        for r in residents:
            if not r.phone or not r.phone.strip():
                logger.info("Skipping resident %s: no phone number", r.id)
                continue
            targets.append(CheckInTarget(resident_id=r.id, name=r.name, phone=r.phone, language=r.language))
        return targets

    async def trigger_check_ins(self, target_resident_id: Optional[str] = None) -> TriggerResponse:
        db = self.session_factory()
        try:
            targets = self.select_targets(db, target_resident_id)
        finally:
            db.close()

        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_calls))

        async def bounded(target: CheckInTarget) -> TriggerOutcome:
            async with semaphore:
                return await self._check_in(target)

        results = list(await asyncio.gather(*(bounded(t) for t in targets)))
        response = TriggerResponse(message="", results=results)
        response.message = (
            f"Triggered {len(results)} calls ({response.succeeded} succeeded, {response.failed} failed)"
        )
        logger.info(response.message)
        return response

    async def _check_in(self, target: CheckInTarget) -> TriggerOutcome:
        try:
            self.mark_pending(target.resident_id)
            session_id = await self.place_outbound_call(target)
        except (OutboundCallError, PersistenceError) as e:
            logger.warning("Check-in call for %s failed: %s", target.resident_id, e)
            return TriggerOutcome(resident_id=target.resident_id, ok=False, error=str(e))
        except Exception as e:
            logger.exception("Unexpected error calling resident %s", target.resident_id)
            return TriggerOutcome(resident_id=target.resident_id, ok=False, error=str(e))
        return TriggerOutcome(resident_id=target.resident_id, ok=True, session_id=session_id)

    def mark_pending(self, resident_id: str) -> None:
        """No resident keeps a stale status while a call is outstanding."""
        db = self.session_factory()
        try:
            db.query(Resident).filter(Resident.id == resident_id).update(
                {Resident.status: ResidentStatus.PENDING, Resident.updated_at: datetime.now(timezone.utc)},
                synchronize_session=False,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to mark resident {resident_id} pending: {e}") from e
        finally:
            db.close()

    async def place_outbound_call(self, target: CheckInTarget) -> str:
        """Start a Vapi call and return its session id.

        Raises OutboundCallError carrying Vapi's raw error text.
        """
        if not self.config.api_key:
            logger.warning("[MOCK CALL] Would call %s for resident %s", target.phone, target.resident_id)
            return f"mock_call_{uuid4().hex[:8]}"

        payload = {
            "assistant": build_assistant_config(target, self.server_url),
            "phoneNumberId": self.config.phone_number_id,
            "customer": {"number": normalize_phone(target.phone), "name": target.name},
            "metadata": {"residentId": target.resident_id},
        }

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                resp = await client.post(
                    f"{self.config.base_url}/call",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self.config.api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise OutboundCallError(f"Vapi request failed: {e}", recoverable=True) from e

        if resp.status_code >= 400:
            logger.error("Vapi API error %s for %s: %s", resp.status_code, target.resident_id, resp.text)
            raise OutboundCallError(_error_text(resp))

        data = resp.json()
        session_id = data.get("id") or data.get("call_id")
        logger.info("Outbound call placed: vapi_call_id=%s resident=%s", session_id, target.resident_id)
        return session_id


# ---------------------------------------------------------------------------
# Scheduled job: periodic check-ins
# ---------------------------------------------------------------------------
async def run_scheduled_check_ins(orchestrator: CallTriggerOrchestrator) -> None:
    try:
        response = await orchestrator.trigger_check_ins()
        logger.info("Scheduled check-ins: %s", response.message)
    except Exception:
        logger.exception("Error in scheduled check-ins")


def start_scheduler(orchestrator: CallTriggerOrchestrator, interval_hours: float) -> None:
    """Start the periodic check-in job. An interval of 0 disables it."""
    if interval_hours <= 0:
        logger.info("Periodic check-ins disabled (CHECK_INTERVAL_HOURS=0)")
        return
    scheduler.add_job(
        run_scheduled_check_ins,
        "interval",
        hours=interval_hours,
        args=[orchestrator],
        id="floodvoice_checkin",
        replace_existing=True,
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=10),
    )
    scheduler.start()
    logger.info("Scheduler started, check-in interval: %.1f hours", interval_hours)


def stop_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import get_current_liaison, router as auth_router
from classifier import TranscriptClassifier
from config import AppConfig, ClassifierConfig, DispatcherConfig, VoiceConfig
from database import LiaisonProfile, Resident, get_db, init_db
from errors import (
    ClassificationError,
    DispatchError,
    InvalidPayloadError,
    MalformedResponseError,
    MissingInputError,
    NotFoundError,
    PersistenceError,
)
from events import normalize_event
from models import ToolCallEvent, TriggerResponse
from notifier import AlertDispatcher
from scheduler import CallTriggerOrchestrator, start_scheduler, stop_scheduler
from triage import CallEventProcessor

app_config = AppConfig.from_env()

logger = logging.getLogger(__name__)
logging.basicConfig(level=getattr(logging, app_config.log_level, logging.INFO))

classifier = TranscriptClassifier(ClassifierConfig.from_env())
dispatcher = AlertDispatcher(DispatcherConfig.from_env())
processor = CallEventProcessor(
    classifier,
    dispatcher,
    classify_timeout_seconds=app_config.classify_timeout_seconds,
)
orchestrator = CallTriggerOrchestrator(VoiceConfig.from_env())


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    start_scheduler(orchestrator, app_config.check_interval_hours)
    yield
    stop_scheduler()


app = FastAPI(title="FloodVoice Triage API", version="0.1.0", lifespan=lifespan)

origins = [
    "http://localhost:3000",
    "https://floodvoice.vercel.app",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)


class TriggerRequest(BaseModel):
    resident_id: Optional[str] = None


class DistressAlertRequest(BaseModel):
    resident_id: str
    resident_name: Optional[str] = None
    source: Optional[str] = None


class FloodAlertRequest(BaseModel):
    sensor: str
    depth_inches: float


def _require_cron_secret(authorization: Optional[str]) -> None:
    if not app_config.cron_secret or authorization != f"Bearer {app_config.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


# -----------------------------
# Routes
# -----------------------------
@app.get("/")
def read_root() -> dict[str, str]:
    return {"service": "FloodVoice Triage API", "status": "ok"}


# =====================================================================
# Vapi webhook
# =====================================================================
@app.post("/webhooks/vapi")
async def webhook_vapi(request: Request, db: Session = Depends(get_db)) -> dict[str, Any]:
    """Handle Vapi server messages (tool calls and end-of-call reports).

    Vapi retries anything but a 200, so every recognized message gets a 200
    with errors reported in the body. Only an unparseable body is rejected.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body is not valid JSON")

    try:
        event = normalize_event(payload)
    except InvalidPayloadError as e:
        logger.warning("Rejected Vapi webhook: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return await processor.process(db, event)
    except Exception:
        logger.exception("Error processing Vapi webhook (%s)", type(event).__name__)
        db.rollback()
        if isinstance(event, ToolCallEvent):
            return {
                "results": [
                    {"name": inv.function_name, "toolCallId": inv.call_id, "error": "Internal error"}
                    for inv in event.invocations
                ]
            }
        return {"success": False, "error": "Internal error"}


# =====================================================================
# Check-in calls
# =====================================================================
@app.post("/calls/trigger", response_model=TriggerResponse)
async def trigger_calls(
    payload: TriggerRequest,
    current_liaison: LiaisonProfile = Depends(get_current_liaison),
) -> TriggerResponse:
    """Place check-in calls to one resident, or to everyone not marked unresponsive."""
    logger.info("Check-ins triggered by %s (resident=%s)", current_liaison.id, payload.resident_id or "all")
    try:
        return await orchestrator.trigger_check_ins(payload.resident_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/cron/check-ins", response_model=TriggerResponse)
async def cron_check_ins(authorization: Optional[str] = Header(default=None)) -> TriggerResponse:
    """Scheduled-job entry point, authorized by the shared CRON_SECRET."""
    _require_cron_secret(authorization)
    return await orchestrator.trigger_check_ins()


@app.post("/calls/{call_log_id}/analyze")
async def analyze_call(
    call_log_id: str,
    db: Session = Depends(get_db),
    current_liaison: LiaisonProfile = Depends(get_current_liaison),
):
    """Manual re-analyze of a stored call log."""
    try:
        outcome = await processor.reanalyze(db, call_log_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MissingInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (ClassificationError, MalformedResponseError) as e:
        raise HTTPException(status_code=502, detail=f"AI analysis failed: {e}")
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, **outcome.model_dump(mode="json")}


@app.post("/residents/{resident_id}/clear-distress")
def clear_distress(
    resident_id: str,
    db: Session = Depends(get_db),
    current_liaison: LiaisonProfile = Depends(get_current_liaison),
):
    try:
        resident = processor.clear_distress(db, resident_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))
    logger.info("Liaison %s cleared distress for %s", current_liaison.id, resident_id)
    return {"id": resident.id, "status": resident.status.value}


# =====================================================================
# Manual and sensor-driven alerts
# =====================================================================
@app.post("/alerts/distress")
async def send_distress_alert(
    payload: DistressAlertRequest,
    db: Session = Depends(get_db),
    current_liaison: LiaisonProfile = Depends(get_current_liaison),
) -> dict[str, Any]:
    """Dashboard-triggered distress alert for one resident."""
    resident = db.query(Resident).filter(Resident.id == payload.resident_id).first()
    if resident is None:
        raise HTTPException(status_code=404, detail="Resident not found")

    source = payload.source or "manual"
    try:
        result = await dispatcher.dispatch_distress_alert(db, resident.id, payload.resident_name or resident.name)
    except DispatchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    logger.info("Liaison %s sent a %s distress alert for %s", current_liaison.id, source, resident.id)
    return {
        "success": True,
        "message": f"Alert sent to Telegram ({source} trigger)",
        **result.model_dump(mode="json"),
    }


@app.post("/alerts/flood")
async def flood_alert(
    payload: FloodAlertRequest,
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Sensor monitor entry point: warn every liaison when depth crosses the threshold."""
    _require_cron_secret(authorization)
    if payload.depth_inches < app_config.flood_depth_threshold_inches:
        return {"alert_sent": False, "depth_inches": payload.depth_inches, "message": "Below flood threshold"}

    result = await dispatcher.broadcast_flood_alert(db, payload.sensor, payload.depth_inches)
    return {
        "alert_sent": result.recipients > 0,
        "depth_inches": payload.depth_inches,
        "message": f"Sent flood alerts to {result.delivered} of {result.recipients} liaison(s)",
        **result.model_dump(),
    }


# =====================================================================
# Telegram bot webhook
# =====================================================================
@app.post("/telegram/webhook")
async def telegram_webhook(request: Request) -> dict[str, Any]:
    try:
        update = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    try:
        replied = await dispatcher.handle_bot_update(update)
    except DispatchError:
        logger.exception("Failed to answer Telegram update")
        replied = False
    return {"success": True, "replied": replied}

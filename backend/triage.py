"""Call event processing: the webhook state machine behind distress triage.

A check-in call moves through these states, tracked on its CallLog row:

    NO_LOG -> LOGGED (inline report or end-of-call report, either order)
           -> LOGGED_WITH_ARTIFACTS (end-of-call report attached transcript/recording)
           -> CLASSIFIED (processed_at set)
           -> DISTRESS_CONFIRMED (risk_label=distress, alert_dispatched_at set)

Both event paths upsert the same row keyed by the Vapi call id. risk_label
never moves off ``distress`` once set, and the alert is claimed with a
conditional update so at most one dispatch happens per call log.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from classifier import TranscriptClassifier
from database import CallLog, Resident
from errors import (
    ClassificationError,
    DispatchError,
    MalformedResponseError,
    MissingInputError,
    NotFoundError,
    PersistenceError,
    TriageError,
)
from models import (
    AnalysisOutcome,
    CallAnalysis,
    DispatchResult,
    EndOfCallReport,
    IgnoredEvent,
    ReportStatusArgs,
    ResidentStatus,
    RiskLabel,
    ToolCallEvent,
    ToolInvocation,
    WebhookEvent,
)
from notifier import AlertDispatcher

logger = logging.getLogger(__name__)

REPORT_STATUS_FUNCTION = "reportstatus"

# Inline reports may carry any resident status; call logs only know three labels.
STATUS_TO_RISK_LABEL = {
    ResidentStatus.SAFE: RiskLabel.SAFE,
    ResidentStatus.DISTRESS: RiskLabel.DISTRESS,
    ResidentStatus.PENDING: RiskLabel.PENDING,
    ResidentStatus.UNRESPONSIVE: RiskLabel.PENDING,
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Persistence helpers (single-row writes, each committed on its own)
# ---------------------------------------------------------------------------
@contextmanager
def _writing(db: Session, action: str) -> Iterator[None]:
    """Run one write and commit it; any database error becomes PersistenceError."""
    try:
        yield
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Database write failed while trying to %s", action)
        raise PersistenceError(f"Failed to {action}: {e}") from e


def _get_resident(db: Session, resident_id: str) -> Resident:
    try:
        resident = db.query(Resident).filter(Resident.id == resident_id).first()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to load resident {resident_id}: {e}") from e
    if resident is None:
        raise NotFoundError(f"Resident {resident_id} not found")
    return resident


def upsert_call_log(
    db: Session,
    resident_id: str,
    vapi_call_id: Optional[str],
    default_label: RiskLabel = RiskLabel.SAFE,
) -> CallLog:
    """Return the call log for a Vapi call, creating it if this is the first event.

    Without a Vapi call id there is nothing to reconcile on, so a new row is
    always created.
    """
    if vapi_call_id:
        try:
            existing = db.query(CallLog).filter(CallLog.vapi_call_id == vapi_call_id).first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to look up call log for {vapi_call_id}: {e}") from e
        if existing is not None:
            return existing

    log = CallLog(
        id=f"log_{uuid4().hex[:10]}",
        resident_id=resident_id,
        vapi_call_id=vapi_call_id,
        risk_label=default_label,
        created_at=now_utc(),
    )
    db.add(log)
    try:
        db.commit()
    except IntegrityError as e:
        # Lost the insert race to a concurrent event for the same call.
        db.rollback()
        if vapi_call_id:
            existing = db.query(CallLog).filter(CallLog.vapi_call_id == vapi_call_id).first()
            if existing is not None:
                logger.info("Call log for %s created concurrently; reusing %s", vapi_call_id, existing.id)
                return existing
        raise PersistenceError(f"Failed to create call log: {e}") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to create call log: {e}") from e
    return log


def set_risk_label(db: Session, call_log_id: str, label: RiskLabel) -> None:
    """Set risk_label, never downgrading a call already marked distress."""
    with _writing(db, f"set risk label on {call_log_id}"):
        query = db.query(CallLog).filter(CallLog.id == call_log_id)
        if label != RiskLabel.DISTRESS:
            query = query.filter(CallLog.risk_label != RiskLabel.DISTRESS)
        query.update({CallLog.risk_label: label, CallLog.updated_at: now_utc()}, synchronize_session=False)


def set_resident_status(db: Session, resident_id: str, status: ResidentStatus) -> None:
    with _writing(db, f"set status of resident {resident_id}"):
        db.query(Resident).filter(Resident.id == resident_id).update(
            {Resident.status: status, Resident.updated_at: now_utc()}, synchronize_session=False
        )


def persist_analysis(db: Session, call_log_id: str, analysis: CallAnalysis) -> None:
    """Write the AI fields onto a call log. Re-persisting overwrites in place."""
    with _writing(db, f"store analysis on {call_log_id}"):
        db.query(CallLog).filter(CallLog.id == call_log_id).update(
            {
                CallLog.tags: json.dumps([t.value for t in analysis.tags]),
                CallLog.sentiment_score: analysis.sentiment_score,
                CallLog.key_topics: analysis.key_topics,
                CallLog.processed_at: now_utc(),
                CallLog.updated_at: now_utc(),
            },
            synchronize_session=False,
        )


def claim_alert(db: Session, call_log_id: str) -> bool:
    """Atomically mark a call log as alerted. Only one caller ever gets True."""
    with _writing(db, f"claim alert for {call_log_id}"):
        claimed = (
            db.query(CallLog)
            .filter(CallLog.id == call_log_id, CallLog.alert_dispatched_at.is_(None))
            .update({CallLog.alert_dispatched_at: now_utc()}, synchronize_session=False)
        )
    return claimed == 1


def release_alert(db: Session, call_log_id: str) -> None:
    with _writing(db, f"release alert claim for {call_log_id}"):
        db.query(CallLog).filter(CallLog.id == call_log_id).update(
            {CallLog.alert_dispatched_at: None}, synchronize_session=False
        )


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------
class CallEventProcessor:
    def __init__(
        self,
        classifier: TranscriptClassifier,
        dispatcher: AlertDispatcher,
        classify_timeout_seconds: float = 25.0,
    ):
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.classify_timeout_seconds = classify_timeout_seconds

    async def process(self, db: Session, event: WebhookEvent) -> dict[str, Any]:
        if isinstance(event, ToolCallEvent):
            return await self.handle_tool_calls(db, event)
        if isinstance(event, EndOfCallReport):
            return await self.handle_end_of_call(db, event)
        if isinstance(event, IgnoredEvent):
            logger.debug("Ignoring Vapi message type %s", event.message_type)
        return {"success": True}

    # -----------------------------------------------------------------------
    # Event type A: inline status report
    # -----------------------------------------------------------------------
    async def handle_tool_calls(self, db: Session, event: ToolCallEvent) -> dict[str, Any]:
        results = []
        for invocation in event.invocations:
            entry: dict[str, Any] = {"name": invocation.function_name, "toolCallId": invocation.call_id}
            try:
                entry["result"] = await self._run_tool(db, event, invocation)
            except TriageError as e:
                logger.warning(
                    "Tool call %s for resident %s failed: %s",
                    invocation.function_name, event.resident_id, e,
                )
                entry["error"] = str(e)
            results.append(entry)
        return {"results": results}

    async def _run_tool(self, db: Session, event: ToolCallEvent, invocation: ToolInvocation) -> str:
        if not event.resident_id:
            raise MissingInputError("Missing residentId in call metadata")
        if invocation.function_name.lower() != REPORT_STATUS_FUNCTION:
            raise MissingInputError(f"Unknown function: {invocation.function_name}")

        try:
            args = ReportStatusArgs.model_validate(invocation.arguments)
        except ValidationError as e:
            raise MissingInputError(f"Invalid reportStatus arguments: {e.errors()[0]['msg']}") from e

        await self.apply_status_report(db, event.resident_id, event.vapi_call_id, args)
        return f"Status '{args.status.value}' recorded"

    async def apply_status_report(
        self,
        db: Session,
        resident_id: str,
        vapi_call_id: Optional[str],
        args: ReportStatusArgs,
    ) -> CallLog:
        resident = _get_resident(db, resident_id)
        label = STATUS_TO_RISK_LABEL[args.status]
        logger.info("Inline status report for %s: %s (call=%s)", resident_id, args.status.value, vapi_call_id)

        log = upsert_call_log(db, resident_id, vapi_call_id, default_label=label)
        # The end-of-call summary is final; an interim one must not replace it.
        if args.summary and log.ended_at is None:
            with _writing(db, f"store summary on {log.id}"):
                log.summary = args.summary
        set_risk_label(db, log.id, label)
        db.refresh(log)

        if args.status != ResidentStatus.DISTRESS and log.risk_label == RiskLabel.DISTRESS:
            logger.warning(
                "Ignoring '%s' report for %s: call %s is already marked distress",
                args.status.value, resident_id, log.id,
            )
        else:
            set_resident_status(db, resident_id, args.status)

        if args.status == ResidentStatus.DISTRESS:
            await self.dispatch_once(db, log.id, resident_id, resident.name)
        return log

    # -----------------------------------------------------------------------
    # Event type B: end-of-call report
    # -----------------------------------------------------------------------
    async def handle_end_of_call(self, db: Session, event: EndOfCallReport) -> dict[str, Any]:
        if not event.resident_id:
            logger.warning("End-of-call report without residentId (call=%s)", event.vapi_call_id)
            return {"success": False, "error": "Missing residentId in call metadata"}

        try:
            _get_resident(db, event.resident_id)
            log = upsert_call_log(db, event.resident_id, event.vapi_call_id)
            with _writing(db, f"attach artifacts to {log.id}"):
                if event.summary:
                    log.summary = event.summary
                if event.transcript:
                    log.transcript = event.transcript
                if event.recording_url:
                    log.recording_url = event.recording_url
                log.ended_at = now_utc()
        except (NotFoundError, PersistenceError) as e:
            logger.error("End-of-call report for %s not stored: %s", event.resident_id, e)
            return {"success": False, "error": str(e)}

        logger.info("End-of-call report stored for %s as %s", event.resident_id, log.id)

        text = event.analysis_text or log.transcript or log.summary
        if not text:
            logger.info("Call log %s has no transcript or summary; skipping classification", log.id)
            return {"success": True, "callLogId": log.id, "analysis": None, "distress": False}

        try:
            outcome = await self._classify_quietly(db, log.id, event.resident_id, text)
        except PersistenceError as e:
            logger.error("Analysis of %s not stored: %s", log.id, e)
            return {"success": False, "callLogId": log.id, "error": str(e)}
        return {
            "success": True,
            "callLogId": log.id,
            "analysis": outcome.analysis.model_dump(mode="json") if outcome.analysis else None,
            "distress": outcome.distress,
        }

    async def _classify_quietly(self, db: Session, call_log_id: str, resident_id: str, text: str) -> AnalysisOutcome:
        """Classify and escalate. LLM failures are logged, database failures propagate."""
        try:
            return await self.classify_call_log(db, call_log_id, resident_id, text)
        except (ClassificationError, MalformedResponseError, MissingInputError) as e:
            logger.warning("Classification of %s skipped: %s", call_log_id, e)
            return AnalysisOutcome(call_log_id=call_log_id)

    async def classify_call_log(
        self, db: Session, call_log_id: str, resident_id: str, text: str
    ) -> AnalysisOutcome:
        try:
            analysis = await asyncio.wait_for(
                self.classifier.classify(text), timeout=self.classify_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ClassificationError(
                f"Classification timed out after {self.classify_timeout_seconds}s", recoverable=True
            ) from e

        persist_analysis(db, call_log_id, analysis)
        outcome = AnalysisOutcome(call_log_id=call_log_id, analysis=analysis)
        if not analysis.is_distress:
            return outcome

        logger.warning(
            "Distress confirmed for %s (call log %s, score=%d)",
            resident_id, call_log_id, analysis.sentiment_score,
        )
        set_resident_status(db, resident_id, ResidentStatus.DISTRESS)
        set_risk_label(db, call_log_id, RiskLabel.DISTRESS)
        resident = _get_resident(db, resident_id)
        outcome.distress = True
        outcome.alert = await self.dispatch_once(db, call_log_id, resident_id, resident.name)
        return outcome

    # -----------------------------------------------------------------------
    # Alert dispatch, at most once per call log
    # -----------------------------------------------------------------------
    async def dispatch_once(
        self, db: Session, call_log_id: str, resident_id: str, resident_name: str
    ) -> Optional[DispatchResult]:
        if not claim_alert(db, call_log_id):
            logger.info("Alert for call log %s already dispatched", call_log_id)
            return None
        try:
            return await self.dispatcher.dispatch_distress_alert(db, resident_id, resident_name)
        except Exception as e:
            logger.exception("Distress alert for %s not delivered", resident_id)
            db.rollback()
            try:
                release_alert(db, call_log_id)
            except PersistenceError:
                logger.exception("Could not release alert claim for %s", call_log_id)
            if not isinstance(e, DispatchError):
                raise
            return None

    # -----------------------------------------------------------------------
    # Manual operator actions
    # -----------------------------------------------------------------------
    async def reanalyze(self, db: Session, call_log_id: str) -> AnalysisOutcome:
        """Re-run classification on a stored call log. Errors propagate to the caller."""
        log = db.query(CallLog).filter(CallLog.id == call_log_id).first()
        if log is None:
            raise NotFoundError(f"Call log {call_log_id} not found")
        text = log.transcript or log.summary
        if not text:
            raise MissingInputError(f"Call log {call_log_id} has no transcript or summary")
        logger.info("Re-analyzing call log %s", call_log_id)
        return await self.classify_call_log(db, log.id, log.resident_id, text)

    def clear_distress(self, db: Session, resident_id: str) -> Resident:
        """Manually clear a resident's sticky distress status."""
        resident = _get_resident(db, resident_id)
        set_resident_status(db, resident_id, ResidentStatus.SAFE)
        db.refresh(resident)
        logger.info("Distress cleared for resident %s", resident_id)
        return resident

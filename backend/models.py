"""Pydantic models for Vapi webhook events, LLM analysis and internal state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Resident / call state
# ---------------------------------------------------------------------------
class ResidentStatus(str, Enum):
    PENDING = "pending"
    SAFE = "safe"
    DISTRESS = "distress"
    UNRESPONSIVE = "unresponsive"


class RiskLabel(str, Enum):
    SAFE = "safe"
    DISTRESS = "distress"
    PENDING = "pending"


# Scores at or above this mark a call as distress.
DISTRESS_SCORE_THRESHOLD = 7


# ---------------------------------------------------------------------------
# Transcript analysis
# ---------------------------------------------------------------------------
class Tag(str, Enum):
    MEDICAL = "Medical"
    FOOD_WATER = "Food/Water"
    POWER = "Power"
    EVACUATION = "Evacuation"
    MENTAL_HEALTH = "Mental Health"
    PROPERTY_DAMAGE = "Property Damage"
    SAFE = "Safe"


VALID_TAGS = [t.value for t in Tag]


class CallAnalysis(BaseModel):
    tags: list[Tag] = Field(default_factory=list)
    sentiment_score: int = Field(ge=0, le=10, description="0=calm, 10=life-threatening")
    key_topics: str = Field(description="One sentence, at most 15 words, focused on needs")

    @property
    def is_distress(self) -> bool:
        return self.sentiment_score >= DISTRESS_SCORE_THRESHOLD


# ---------------------------------------------------------------------------
# Canonical webhook events (output of events.normalize_event)
# ---------------------------------------------------------------------------
class ToolInvocation(BaseModel):
    function_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None


class ToolCallEvent(BaseModel):
    """One or more mid-call function/tool invocations."""
    resident_id: Optional[str] = None
    vapi_call_id: Optional[str] = None
    invocations: list[ToolInvocation] = Field(default_factory=list)


class EndOfCallReport(BaseModel):
    """Final artifacts delivered after the voice session ends."""
    resident_id: Optional[str] = None
    vapi_call_id: Optional[str] = None
    summary: Optional[str] = None
    transcript: Optional[str] = None
    recording_url: Optional[str] = None

    @property
    def analysis_text(self) -> Optional[str]:
        return self.transcript or self.summary


class IgnoredEvent(BaseModel):
    message_type: str


WebhookEvent = Union[ToolCallEvent, EndOfCallReport, IgnoredEvent]


class ReportStatusArgs(BaseModel):
    status: ResidentStatus
    summary: Optional[str] = None


# ---------------------------------------------------------------------------
# Alert dispatch
# ---------------------------------------------------------------------------
class RecipientSource(str, Enum):
    LIAISON = "liaison"
    ANY_PROFILE = "any_profile"
    FALLBACK = "fallback"


class DispatchResult(BaseModel):
    delivered: bool
    recipient: str
    source: RecipientSource


class BroadcastResult(BaseModel):
    """Flood warning fan-out to every liaison with a chat id."""
    recipients: int = 0
    delivered: int = 0
    failed: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Outbound check-in calls
# ---------------------------------------------------------------------------
class CheckInTarget(BaseModel):
    """Snapshot of the resident fields an outbound call needs."""
    resident_id: str
    name: str
    phone: str
    language: Optional[str] = None


class TriggerOutcome(BaseModel):
    resident_id: str
    ok: bool
    session_id: Optional[str] = None
    error: Optional[str] = None


class TriggerResponse(BaseModel):
    message: str
    results: list[TriggerOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


# ---------------------------------------------------------------------------
# Classification outcome for one call log
# ---------------------------------------------------------------------------
class AnalysisOutcome(BaseModel):
    call_log_id: str
    analysis: Optional[CallAnalysis] = None
    distress: bool = False
    alert: Optional[DispatchResult] = None


# ---------------------------------------------------------------------------
# Liaison accounts
# ---------------------------------------------------------------------------
class LiaisonLogin(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class LiaisonCreate(LiaisonLogin):
    name: str
    org_name: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class LiaisonSettingsUpdate(BaseModel):
    """Fields a liaison edits on the dashboard settings page."""
    name: Optional[str] = None
    org_name: Optional[str] = None
    telegram_chat_id: Optional[str] = None


class LiaisonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    org_name: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    created_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int

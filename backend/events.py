"""Normalization of Vapi server messages into canonical webhook events.

Vapi has delivered mid-call tool invocations in several encodings over time:

- ``function-call``: a single ``message.functionCall`` object whose
  ``parameters`` may be a JSON string or an object.
- ``tool-calls``: a list under ``message.toolCallList`` (or ``toolCalls``) of
  ``{id, function: {name, arguments}}`` entries, or the older
  ``toolWithToolCallList`` wrapper around the same entries.

Everything downstream of :func:`normalize_event` only sees
:class:`ToolCallEvent`, :class:`EndOfCallReport` or :class:`IgnoredEvent`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from errors import InvalidPayloadError
from models import (
    EndOfCallReport,
    IgnoredEvent,
    ToolCallEvent,
    ToolInvocation,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

TOOL_MESSAGE_TYPES = {"function-call", "tool-calls"}
END_OF_CALL_TYPE = "end-of-call-report"


def normalize_event(payload: Any) -> WebhookEvent:
    """Map a raw webhook body onto one canonical event.

    Raises InvalidPayloadError when the body has no ``message.type``.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("Webhook body must be a JSON object")
    message = payload.get("message")
    if not isinstance(message, dict):
        raise InvalidPayloadError("Webhook body has no 'message' object")
    message_type = message.get("type")
    if not isinstance(message_type, str) or not message_type:
        raise InvalidPayloadError("Webhook message has no 'type'")

    resident_id, vapi_call_id = _call_context(message)

    if message_type in TOOL_MESSAGE_TYPES:
        return ToolCallEvent(
            resident_id=resident_id,
            vapi_call_id=vapi_call_id,
            invocations=_tool_invocations(message),
        )

    if message_type == END_OF_CALL_TYPE:
        analysis = message.get("analysis") if isinstance(message.get("analysis"), dict) else {}
        artifact = message.get("artifact") if isinstance(message.get("artifact"), dict) else {}
        return EndOfCallReport(
            resident_id=resident_id,
            vapi_call_id=vapi_call_id,
            summary=_text(analysis.get("summary")) or _text(message.get("summary")),
            transcript=_text(artifact.get("transcript")) or _text(message.get("transcript")),
            recording_url=_text(artifact.get("recordingUrl")) or _text(message.get("recordingUrl")),
        )

    return IgnoredEvent(message_type=message_type)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _call_context(message: dict) -> tuple[Optional[str], Optional[str]]:
    call = message.get("call") if isinstance(message.get("call"), dict) else {}
    metadata = call.get("metadata") if isinstance(call.get("metadata"), dict) else {}
    if not metadata and isinstance(message.get("metadata"), dict):
        metadata = message["metadata"]
    resident_id = metadata.get("residentId")
    call_id = call.get("id")
    return _id(resident_id), _id(call_id)


def _id(value: Any) -> Optional[str]:
    """Vapi ids are strings, but numeric ids show up in hand-built payloads."""
    if value is None or value == "":
        return None
    return str(value)


def _tool_invocations(message: dict) -> list[ToolInvocation]:
    invocations: list[ToolInvocation] = []

    legacy = message.get("functionCall")
    if isinstance(legacy, dict):
        invocations.append(
            ToolInvocation(
                function_name=str(legacy.get("name") or ""),
                arguments=_arguments(legacy.get("parameters")),
                call_id=_id(legacy.get("id") or legacy.get("toolCallId")),
            )
        )

    entries = message.get("toolCallList") or message.get("toolCalls") or []
    if not entries and isinstance(message.get("toolWithToolCallList"), list):
        entries = [
            w.get("toolCall") for w in message["toolWithToolCallList"] if isinstance(w, dict)
        ]
    for entry in entries:
        if not isinstance(entry, dict):
            logger.warning("Skipping non-object tool call entry: %r", entry)
            continue
        function = entry.get("function") if isinstance(entry.get("function"), dict) else {}
        invocations.append(
            ToolInvocation(
                function_name=str(function.get("name") or entry.get("name") or ""),
                arguments=_arguments(function.get("arguments", entry.get("arguments"))),
                call_id=_id(entry.get("id")),
            )
        )

    return invocations


def _arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Tool arguments are not valid JSON: %.200s", raw)
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _text(value: Any) -> Optional[str]:
    """Return a non-empty string, flattening message lists into 'role: text' lines."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list):
        lines = [
            f"{m.get('role', 'unknown')}: {m.get('message') or m.get('content') or ''}".strip()
            for m in value
            if isinstance(m, dict)
        ]
        return "\n".join(lines) or None
    return None

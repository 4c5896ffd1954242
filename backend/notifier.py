"""Distress alerts via Telegram, with an optional Twilio SMS escalation."""

from __future__ import annotations

import asyncio
import html
import logging
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session
from twilio.rest import Client as TwilioClient

from config import DispatcherConfig
from database import LiaisonProfile, Resident
from errors import DispatchError
from models import BroadcastResult, DispatchResult, RecipientSource

logger = logging.getLogger(__name__)


def format_distress_message(resident_name: str, dashboard_url: str) -> str:
    return (
        "🚨 <b>DISTRESS ALERT</b>\n\n"
        f"Resident: <b>{html.escape(resident_name)}</b>\n"
        "Status: <b>IN DISTRESS</b>\n\n"
        "⚠️ Immediate action required.\n\n"
        f'<a href="{html.escape(dashboard_url, quote=True)}">Open the dashboard</a>: {html.escape(dashboard_url)}'
    )


def format_flood_message(sensor: str, depth_inches: float, dashboard_url: str) -> str:
    return (
        "⚠️ <b>FLOOD RISK DETECTED</b>\n\n"
        f"Sensor: <b>{html.escape(sensor)}</b>\n"
        f"Depth: <b>{depth_inches:.2f} inches</b>\n\n"
        "Review your pod and consider triggering emergency check-ins.\n\n"
        f"Dashboard: {html.escape(dashboard_url)}"
    )


class AlertDispatcher:
    """Resolves who should hear about a resident in distress and tells them.

    Recipient resolution never fails: the resident's liaison, then any liaison
    with a chat id, then the configured fallback chat.
    """

    def __init__(self, config: DispatcherConfig):
        self.config = config
        self._twilio_client: Optional[TwilioClient] = None

    @property
    def dashboard_url(self) -> str:
        return f"{self.config.app_url}/dashboard/residents"

    # -----------------------------------------------------------------------
    # Recipient resolution
    # -----------------------------------------------------------------------
    def resolve_recipient(self, db: Session, resident_id: str) -> tuple[str, RecipientSource]:
        resident = db.query(Resident).filter(Resident.id == resident_id).first()
        if resident is not None and resident.liaison_id:
            liaison = db.query(LiaisonProfile).filter(LiaisonProfile.id == resident.liaison_id).first()
            if liaison is not None and liaison.telegram_chat_id:
                return liaison.telegram_chat_id, RecipientSource.LIAISON

        any_profile = (
            db.query(LiaisonProfile)
            .filter(LiaisonProfile.telegram_chat_id.isnot(None), LiaisonProfile.telegram_chat_id != "")
            .first()
        )
        if any_profile is not None:
            logger.info("Resident %s has no reachable liaison; using profile %s", resident_id, any_profile.id)
            return any_profile.telegram_chat_id, RecipientSource.ANY_PROFILE

        logger.warning("No liaison chat id configured anywhere; using fallback chat for %s", resident_id)
        return self.config.fallback_chat_id, RecipientSource.FALLBACK

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------
    async def dispatch_distress_alert(
        self, db: Session, resident_id: str, resident_name: str
    ) -> DispatchResult:
        """Send a distress alert for a resident.

        Raises DispatchError only when the chat API itself fails.
        """
        recipient, source = self.resolve_recipient(db, resident_id)
        text = format_distress_message(resident_name, self.dashboard_url)

        try:
            delivered = await self.send_telegram_message(recipient, text)
        finally:
            # The SMS channel goes out even when Telegram is down.
            await asyncio.to_thread(self.send_escalation_sms, resident_name, resident_id)

        logger.info(
            "Distress alert for %s: recipient=%s source=%s delivered=%s",
            resident_id, recipient, source.value, delivered,
        )
        return DispatchResult(delivered=delivered, recipient=recipient, source=source)

    async def broadcast_flood_alert(self, db: Session, sensor: str, depth_inches: float) -> BroadcastResult:
        """Warn every liaison with a chat id. One failed chat does not stop the rest."""
        chat_ids = [
            row.telegram_chat_id
            for row in db.query(LiaisonProfile)
            .filter(LiaisonProfile.telegram_chat_id.isnot(None), LiaisonProfile.telegram_chat_id != "")
            .order_by(LiaisonProfile.created_at)
            .all()
        ]
        result = BroadcastResult(recipients=len(chat_ids))
        if not chat_ids:
            logger.warning("Flood alert for %s not sent: no liaison has a chat id", sensor)
            return result

        text = format_flood_message(sensor, depth_inches, f"{self.config.app_url}/dashboard")
        outcomes = await asyncio.gather(
            *(self.send_telegram_message(chat_id, text) for chat_id in chat_ids),
            return_exceptions=True,
        )
        for chat_id, outcome in zip(chat_ids, outcomes):
            if isinstance(outcome, DispatchError):
                logger.error("Flood alert to %s failed: %s", chat_id, outcome)
                result.failed.append(chat_id)
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome:
                result.delivered += 1

        logger.info(
            "Flood alert for %s (%.2f in): %d/%d delivered",
            sensor, depth_inches, result.delivered, result.recipients,
        )
        return result

    async def send_telegram_message(self, chat_id: str, text: str, parse_mode: str = "HTML") -> bool:
        """Returns True when Telegram accepted the message, False in mock mode."""
        if not self.config.telegram_bot_token:
            logger.info("[MOCK TELEGRAM] To=%s | %s", chat_id, text)
            return False

        url = f"{self.config.telegram_api_base}/bot{self.config.telegram_bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(
                    url,
                    json={"chat_id": chat_id, "text": text, "parse_mode": parse_mode},
                )
        except httpx.HTTPError as e:
            raise DispatchError(f"Telegram request failed: {e}", recipient=chat_id) from e

        if response.status_code != 200:
            raise DispatchError(
                f"Telegram API error {response.status_code}: {response.text[:300]}",
                recipient=chat_id,
            )
        return True

    # -----------------------------------------------------------------------
    # SMS escalation (optional second channel)
    # -----------------------------------------------------------------------
    def _get_twilio_client(self) -> Optional[TwilioClient]:
        if self._twilio_client is not None:
            return self._twilio_client
        if self.config.twilio_account_sid and self.config.twilio_auth_token:
            self._twilio_client = TwilioClient(self.config.twilio_account_sid, self.config.twilio_auth_token)
            return self._twilio_client
        return None

    def send_escalation_sms(self, resident_name: str, resident_id: str) -> bool:
        """Best-effort SMS to the escalation number. Never raises."""
        recipient = self.config.escalation_to_number
        if not recipient:
            return False

        body = (
            "🚨 FloodVoice DISTRESS\n"
            f"Resident: {resident_name}\n"
            "Status: IN DISTRESS\n"
            f"Dashboard: {self.dashboard_url}"
        )

        client = self._get_twilio_client()
        if client is None or not self.config.twilio_from_number:
            logger.info("[MOCK SMS] To=%s | %s", recipient, body)
            return False

        try:
            message = client.messages.create(body=body, from_=self.config.twilio_from_number, to=recipient)
            logger.info("SMS sent: sid=%s to=%s resident=%s", message.sid, recipient, resident_id)
            return True
        except Exception:
            logger.exception("Failed to send escalation SMS to %s", recipient)
            return False

    # -----------------------------------------------------------------------
    # Bot updates
    # -----------------------------------------------------------------------
    async def handle_bot_update(self, update: dict[str, Any]) -> bool:
        """Answer /start with the chat id a liaison needs for their settings."""
        message = update.get("message") if isinstance(update, dict) else None
        if not isinstance(message, dict) or (message.get("text") or "").strip() != "/start":
            return False
        chat = message.get("chat") if isinstance(message.get("chat"), dict) else {}
        chat_id = chat.get("id")
        if chat_id is None:
            return False

        text = (
            "Welcome to FloodVoice! 🌊\n\n"
            f"Your Chat ID is: <code>{html.escape(str(chat_id))}</code>\n\n"
            "Enter this ID in your dashboard settings to receive alerts."
        )
        return await self.send_telegram_message(str(chat_id), text)

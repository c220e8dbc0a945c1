from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from orderdesk.core.config import Settings, get_settings
from orderdesk.core.logging import mask_email

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReceipt:
    channel: str
    delivered: bool
    provider_id: str | None = None
    detail: str = ""


class NotificationChannel(Protocol):
    channel_name: str

    def send(self, recipient: str, subject: str, content: str) -> DeliveryReceipt:
        ...


class _HTTPChannel:
    channel_name = "http"

    def __init__(self, settings: Settings | None = None, client: httpx.Client | None = None):
        self.settings = settings or get_settings()
        self.timeout = max(1, self.settings.notification_timeout_seconds)
        self.client = client

    def _post(self, url: str, *, json_body: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
        if self.client is not None:
            response = self.client.post(url, json=json_body, headers=headers)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=json_body, headers=headers)
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {"result": payload}


class ResendEmailChannel(_HTTPChannel):
    channel_name = "email"

    def send(self, recipient: str, subject: str, content: str) -> DeliveryReceipt:
        if not self.settings.email_enabled or not self.settings.resend_api_key:
            return DeliveryReceipt(channel=self.channel_name, delivered=False, detail="email disabled")
        try:
            payload = self._post(
                self.settings.resend_api_url,
                json_body={
                    "from": self.settings.email_sender,
                    "to": [recipient],
                    "subject": subject,
                    "text": content,
                },
                headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("email send failed: to=%s error=%s", mask_email(recipient), exc)
            return DeliveryReceipt(channel=self.channel_name, delivered=False, detail=str(exc))
        logger.info("email sent: to=%s subject=%s", mask_email(recipient), subject)
        return DeliveryReceipt(channel=self.channel_name, delivered=True, provider_id=payload.get("id"))


class TelegramChannel(_HTTPChannel):
    channel_name = "telegram"

    def send(self, recipient: str, subject: str, content: str) -> DeliveryReceipt:
        token = self.settings.telegram_bot_token
        if not self.settings.telegram_enabled or not token:
            return DeliveryReceipt(channel=self.channel_name, delivered=False, detail="telegram disabled")
        try:
            payload = self._post(
                f"https://api.telegram.org/bot{token}/sendMessage",
                json_body={"chat_id": recipient, "text": f"{subject}\n\n{content}", "disable_web_page_preview": True},
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("telegram send failed: chat_id=%s error=%s", recipient, exc)
            return DeliveryReceipt(channel=self.channel_name, delivered=False, detail=str(exc))
        if not payload.get("ok", False):
            detail = str(payload.get("description") or "unknown telegram error")
            logger.warning("telegram rejected message: chat_id=%s detail=%s", recipient, detail)
            return DeliveryReceipt(channel=self.channel_name, delivered=False, detail=detail)
        message_id = (payload.get("result") or {}).get("message_id")
        return DeliveryReceipt(
            channel=self.channel_name,
            delivered=True,
            provider_id=str(message_id) if message_id is not None else None,
        )

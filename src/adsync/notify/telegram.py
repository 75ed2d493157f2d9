from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from adsync.config import Settings


TELEGRAM_API = "https://api.telegram.org"

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, user_id: str, alert_id: str, message: str) -> None:
        """Deliver one alert message. Callers log failures and never retry."""


class LogNotifier:
    """Default sink: writes alerts to the application log."""

    async def notify(self, user_id: str, alert_id: str, message: str) -> None:
        logger.warning("ALERT user=%s rule=%s %s", user_id, alert_id, message)


async def _send_message(
    client: httpx.AsyncClient,
    *,
    token: str,
    chat_id: int,
    text: str,
) -> dict[str, Any]:
    r = await client.post(
        f"{TELEGRAM_API}/bot{token}/sendMessage",
        json={"chat_id": chat_id, "text": text},
        timeout=20,
    )
    r.raise_for_status()
    return r.json()


class TelegramNotifier:
    """
    Send alert messages to one operator chat via the Telegram Bot API.
    """

    def __init__(self, token: str, chat_id: int, *, transport: httpx.AsyncBaseTransport | None = None):
        self.token = token
        self.chat_id = chat_id
        self._transport = transport

    async def notify(self, user_id: str, alert_id: str, message: str) -> None:
        text = f"[ALERT] {message}\nuser: {user_id}\nrule: {alert_id}"
        async with httpx.AsyncClient(transport=self._transport) as client:
            await _send_message(client, token=self.token, chat_id=int(self.chat_id), text=text)


def build_notifier(settings: Settings) -> NotificationSink:
    if settings.telegram_bot_token and settings.telegram_chat_id:
        return TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id)
    return LogNotifier()

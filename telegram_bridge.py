from __future__ import annotations

import json
import logging
from typing import Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import get_settings


logger = logging.getLogger(__name__)


class TelegramClient:
    """Outbound half of the bot: pushes plain-text messages to a chat id."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout: float = 5.0,
    ) -> None:
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "TelegramClient":
        settings = get_settings()
        return cls(
            settings.telegram_bot_token,
            api_base=settings.telegram_api_base,
            timeout=settings.telegram_timeout_secs,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    def send_message(self, chat_id: Optional[str], text: str) -> None:
        if not chat_id or not chat_id.strip():
            return
        if not self.enabled:
            logger.debug("telegram_send: skipped, bot token not configured")
            return

        try:
            numeric_chat_id = int(chat_id.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid Telegram chat id: {chat_id!r}") from exc

        url = f"{self.api_base}/bot{self.token}/sendMessage"
        body = json.dumps({"chat_id": numeric_chat_id, "text": text}).encode("utf-8")
        req = Request(
            url,
            data=body,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RuntimeError(f"Failed to deliver Telegram message to {chat_id}") from exc

        if not payload.get("ok", False):
            raise RuntimeError(
                f"Telegram rejected message: {payload.get('description', 'unknown error')}"
            )

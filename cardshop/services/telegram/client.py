"""
Telegram client wrapper using httpx sync client.
Used by Celery workers to notify the shop admin about captured payments.
"""
import time
import logging

import httpx

from cardshop.core.config import Settings, get_settings
from cardshop.utils.metrics import telegram_requests_total


logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramClient:
    """
    Sync Telegram client for Celery workers.
    Uses httpx sync client - no event loop issues.
    """

    def __init__(self, config: Settings | None = None, http_client: httpx.Client | None = None) -> None:
        self.config = config or get_settings()
        self._base_url = f"{TELEGRAM_API_BASE}/bot{self.config.telegram_bot_token}"
        self._client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.config.telegram_bot_token and self.config.admin_telegram_chat_id)

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=30.0)
        return self._client

    def _api_call(self, method: str, data: dict) -> dict:
        resp = self.client.post(f"{self._base_url}/{method}", json=data)
        result = resp.json()
        if not result.get("ok"):
            error_desc = result.get("description", "Unknown error")
            error_code = result.get("error_code", 0)
            logger.warning(f"Telegram API error: {method} -> {error_code}: {error_desc}")
            raise RuntimeError(f"{error_code}: {error_desc}")
        return result

    def send_message(self, chat_id: str, text: str) -> dict:
        """Send text message to chat."""
        start = time.time()
        try:
            result = self._api_call("sendMessage", {"chat_id": chat_id, "text": text})
            telegram_requests_total.labels(method="sendMessage", status="success").inc()
            return result
        except Exception as e:
            telegram_requests_total.labels(method="sendMessage", status="error").inc()
            logger.error(
                "Failed to send message",
                extra={"error": str(e), "latency_ms": int((time.time() - start) * 1000)},
            )
            raise

    def notify_admin(self, text: str) -> bool:
        """Send to the configured admin chat. False when notifications are disabled."""
        if not self.enabled:
            return False
        self.send_message(self.config.admin_telegram_chat_id, text)
        return True

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

#!/usr/bin/env python3
"""
Loki Notifier - Telegram Bot API client.

Minimal client for the Bot API sendMessage call. A client is bound to one bot
token; the dispatcher creates one per destination token.
"""

import re
import time
from typing import Any, Dict, Optional, Union

import requests
from prometheus_client import Histogram

from loki_notifier.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_API_URL = "https://api.telegram.org"
DEFAULT_TIMEOUT = 10.0
PARSE_MODE_MARKDOWN_V2 = "MarkdownV2"

RESPONSE_PREVIEW_LENGTH = 200

# <bot id>:<secret>
_TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")

METRIC_TELEGRAM_LATENCY = Histogram(
    'loki_notifier_telegram_request_latency_seconds',
    'Latency of Telegram sendMessage requests',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)


class TelegramError(Exception):
    """Raised when a bot cannot be created or a message cannot be sent."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TelegramBot:
    """
    Telegram bot bound to a single token.

    Raises TelegramError on construction if the token is not of the form
    `<digits>:<secret>`.
    """

    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if not token or not _TOKEN_RE.match(token):
            raise TelegramError("invalid bot token")

        self._token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"TelegramBot(bot_id={self.bot_id!r}, api_url={self.api_url!r})"

    @property
    def bot_id(self) -> str:
        return self._token.split(":", 1)[0]

    def close(self) -> None:
        """Release pooled connections."""
        self.session.close()

    def _method_url(self, method: str) -> str:
        return f"{self.api_url}/bot{self._token}/{method}"

    def send_message(
        self,
        chat_id: Union[int, str],
        text: str,
        parse_mode: Optional[str] = PARSE_MODE_MARKDOWN_V2,
    ) -> Dict[str, Any]:
        """
        Send a text message.

        Returns:
            dict: The `result` object of the API reply.

        Raises:
            TelegramError: On transport errors, non-2xx responses or `ok: false`.
        """
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode

        start_time = time.time()
        try:
            response = self.session.post(self._method_url("sendMessage"), json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise TelegramError(f"request timeout after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            # Message text of connection errors can embed the URL, and with it the token
            raise TelegramError(f"connection error: {type(e).__name__}")
        finally:
            METRIC_TELEGRAM_LATENCY.observe(time.time() - start_time)

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            raise TelegramError(
                f"unexpected response {response.status_code}: {response.text[:RESPONSE_PREVIEW_LENGTH]}",
                status_code=response.status_code,
            )

        if response.status_code >= 300 or not body.get("ok"):
            description = body.get("description", "unknown error")
            raise TelegramError(
                f"sendMessage failed ({response.status_code}): {description}",
                status_code=response.status_code,
            )

        return body.get("result") or {}

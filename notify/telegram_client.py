"""
Telegram Bot API client (transport only).

Thin aiohttp wrapper used by the trade notifier (outbound) and the chat
front-end (long polling). Formatting lives in notify/formatter.py.

Usage:
    client = TelegramClient(bot_token)
    await client.send_message(chat_id, "<b>hello</b>", parse_mode="HTML")
    updates = await client.get_updates(offset=last_id + 1, timeout=30)
    await client.close()
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import aiohttp

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config

_DEFAULT_API_URL = "https://api.telegram.org"


class TelegramClientError(Exception):
    """Raised when a Bot API call fails or returns ``ok: false``."""


class TelegramClient:
    """Async Bot API client with a lazily created aiohttp session."""

    def __init__(self, bot_token: str, api_url: str = _DEFAULT_API_URL) -> None:
        self._base_url = f"{api_url.rstrip('/')}/bot{bot_token}"

        telegram_cfg = get_config().get_timing_config().get("telegram", {})
        self._timeout: float = telegram_cfg.get("request_timeout_seconds", 45)
        self._per_chat_interval: float = telegram_cfg.get("per_chat_interval_seconds", 1.0)

        # Per-chat send throttling (Bot API allows ~1 message/s per chat)
        self._last_send: dict[int | str, float] = {}

        self._session: aiohttp.ClientSession | None = None

        self._logger = setup_module_logger(
            "telegram_client", "telegram_client.log", module_folder="Notifier_Logs"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
        disable_web_page_preview: bool = True,
    ) -> dict[str, Any]:
        """Send a text message. Returns the Bot API Message object."""
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_web_page_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup

        await self._enforce_chat_interval(chat_id)
        return await self._call("sendMessage", payload)

    async def get_updates(self, offset: int | None = None, timeout: int = 30) -> list[dict[str, Any]]:
        """Long-poll for updates. ``timeout`` is the server-side hold time."""
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload, timeout=self._timeout + timeout)

    async def close(self) -> None:
        """Close the underlying aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _call(
        self, method: str, payload: dict[str, Any], timeout: float | None = None
    ) -> Any:
        session = await self._ensure_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout or self._timeout)
        try:
            async with session.post(
                f"{self._base_url}/{method}", json=payload, timeout=client_timeout
            ) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TelegramClientError(f"{method} request failed: {e}") from e
        except ValueError as e:
            # Non-JSON body, e.g. an HTML error page from a proxy
            raise TelegramClientError(f"{method} returned an unreadable body: {e}") from e

        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else data
            raise TelegramClientError(f"{method} rejected: {description}")
        return data.get("result")

    async def _enforce_chat_interval(self, chat_id: int | str) -> None:
        """Sleep if necessary to respect the per-chat send interval."""
        now = time.monotonic()
        # Chats outside the window no longer constrain anything
        self._last_send = {
            chat: sent for chat, sent in self._last_send.items() if now - sent < self._per_chat_interval
        }
        last_time = self._last_send.get(chat_id, 0.0)
        elapsed = now - last_time
        if last_time > 0 and elapsed < self._per_chat_interval:
            await asyncio.sleep(self._per_chat_interval - elapsed)
        self._last_send[chat_id] = time.monotonic()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Lazily create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

"""
Telegram chat front-end.

Long-polls getUpdates and runs a two-step dialogue per chat:

    /start            -> reset the session, tear down its subscriptions,
                         show the network menu
    choose_network    -> "ETH" / "BSC" / "BASE"
    enter_contract    -> token address text; previous subscriptions of the
                         chat are torn down, then the new one is created
    "Stop"            -> tear down and forget the session

The chat id is the listener id for every subscription created here. Each
chat is served by its own worker task, so a slow subscribe in one chat
never holds up the others, while one chat's messages stay in order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from bot_logging.logger_manager import setup_module_logger
from chain.connection import ChainReadError
from chain.pool_resolver import PoolNotFoundError, TokenNotInPoolError
from config.loader import get_config
from core.subscription_registry import UnknownNetworkError
from notify.formatter import format_subscription_confirmation
from notify.telegram_client import TelegramClientError
from shared.address import AddressValidationError, clean_address_text

if TYPE_CHECKING:
    from chain.connection_manager import ConnectionManager
    from chain.pool_resolver import PoolResolver
    from core.subscription_registry import Subscription, SubscriptionRegistry
    from notify.telegram_client import TelegramClient
    from shared.types import Network, PoolReserves

STATE_CHOOSE_NETWORK = "choose_network"
STATE_ENTER_CONTRACT = "enter_contract"
STOP_TEXT = "Stop"


@dataclass
class ChatSession:
    state: str = STATE_CHOOSE_NETWORK
    network_key: str | None = None


class TelegramFrontend:
    """Maps chat messages onto subscribe/unsubscribe requests."""

    def __init__(
        self,
        client: TelegramClient,
        registry: SubscriptionRegistry,
        resolver: PoolResolver,
        manager: ConnectionManager,
        networks: dict[str, Network],
    ) -> None:
        self._client = client
        self._registry = registry
        self._resolver = resolver
        self._manager = manager
        self._networks = networks

        telegram_cfg = get_config().get_timing_config().get("telegram", {})
        self._poll_timeout: int = telegram_cfg.get("poll_timeout_seconds", 30)
        self._error_retry_delay: float = telegram_cfg.get("error_retry_delay_seconds", 5)

        self._sessions: dict[Any, ChatSession] = {}
        self._chat_queues: dict[Any, asyncio.Queue[str]] = {}
        self._workers: set[asyncio.Task[None]] = set()
        self._offset: int | None = None
        self._running = False

        self._logger = setup_module_logger(
            "telegram_frontend", "telegram_frontend.log", module_folder="Frontend_Logs"
        )

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Long-polling loop, launched as an asyncio.Task."""
        self._running = True
        self._logger.info("Telegram front-end polling started")
        try:
            while self._running:
                try:
                    updates = await self._client.get_updates(
                        offset=self._offset, timeout=self._poll_timeout
                    )
                except asyncio.CancelledError:
                    raise
                except TelegramClientError as e:
                    self._logger.error(
                        "getUpdates failed: %s. Retrying in %.1fs", e, self._error_retry_delay
                    )
                    await asyncio.sleep(self._error_retry_delay)
                    continue

                for update in updates or []:
                    self._handle_update(update)
        except asyncio.CancelledError:
            for worker in list(self._workers):
                worker.cancel()
            raise
        finally:
            self._running = False

        # Graceful stop: let chats finish what they already received
        if self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)

    def stop(self) -> None:
        """Signal the polling loop to stop."""
        self._running = False

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def busy_chat_count(self) -> int:
        return len(self._chat_queues)

    def session(self, chat_id: Any) -> ChatSession | None:
        return self._sessions.get(chat_id)

    def _handle_update(self, update: dict[str, Any]) -> None:
        self._offset = update["update_id"] + 1
        message = update.get("message") or {}
        chat_id = (message.get("chat") or {}).get("id")
        text = message.get("text")
        if chat_id is None or text is None:
            return
        self._dispatch(chat_id, text)

    def _dispatch(self, chat_id: Any, text: str) -> None:
        """Queue ``text`` on the chat's worker, starting one if the chat is idle."""
        queue = self._chat_queues.get(chat_id)
        if queue is None:
            queue = asyncio.Queue()
            self._chat_queues[chat_id] = queue
            worker = asyncio.create_task(self._chat_worker(chat_id, queue), name=f"chat:{chat_id}")
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
        queue.put_nowait(text)

    async def _chat_worker(self, chat_id: Any, queue: asyncio.Queue[str]) -> None:
        """Handle one chat's messages in arrival order; exits when the chat goes idle."""
        try:
            while not queue.empty():
                text = queue.get_nowait()
                try:
                    await self.handle_message(chat_id, text)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._logger.error(
                        "Message handling failed for chat %s: %s", chat_id, e, exc_info=True
                    )
        finally:
            self._chat_queues.pop(chat_id, None)

    # ------------------------------------------------------------------
    # Dialogue
    # ------------------------------------------------------------------

    async def handle_message(self, chat_id: Any, text: str) -> None:
        text = text.strip()

        if text.startswith("/start"):
            if chat_id in self._sessions:
                await self.on_unsubscribe_request(chat_id)
            self._sessions[chat_id] = ChatSession()
            await self._send(chat_id, "Choose a network to subscribe to:", self._main_menu())
            return

        session = self._sessions.get(chat_id)
        if session is None:
            return

        if text == STOP_TEXT:
            await self.on_unsubscribe_request(chat_id)
            del self._sessions[chat_id]
            await self._send(chat_id, "Subscriptions removed. /start to begin again.")
            return

        if session.state == STATE_CHOOSE_NETWORK:
            if text not in self._networks:
                await self._send(
                    chat_id,
                    f"Please choose one of the offered networks: {', '.join(self._networks)}.",
                )
                return
            session.network_key = text
            session.state = STATE_ENTER_CONTRACT
            await self._send(chat_id, f"Network {text} selected. Send the token address:")
            return

        if session.state == STATE_ENTER_CONTRACT:
            # One token per chat: entering a new contract replaces what was there
            await self.on_unsubscribe_request(chat_id)
            subscription = await self.on_subscribe_request(chat_id, session.network_key, text)
            if subscription is not None:
                session.state = STATE_CHOOSE_NETWORK

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def on_subscribe_request(
        self, listener_id: Any, network_key: str, raw_text: str
    ) -> Subscription | None:
        """Create a subscription from free-form address text and report the outcome."""
        try:
            subscription = await self._registry.subscribe(
                listener_id, network_key, clean_address_text(raw_text)
            )
        except AddressValidationError as e:
            self._logger.info("Address rejected for chat %s: %s", listener_id, e)
            await self._send(listener_id, e.user_message())
            return None
        except UnknownNetworkError:
            await self._send(
                listener_id,
                f"Please choose one of the offered networks: {', '.join(self._networks)}.",
                self._main_menu(),
            )
            return None
        except PoolNotFoundError:
            base_symbol = self._networks[network_key].base_symbol
            await self._send(listener_id, f"No pool with {base_symbol} found.", self._main_menu())
            return None
        except TokenNotInPoolError:
            await self._send(
                listener_id, "Error: the token was not found in the pair.", self._main_menu()
            )
            return None
        except ChainReadError as e:
            self._logger.error(
                "[%s] Chain read failed during subscribe for chat %s: %s", network_key, listener_id, e
            )
            await self._send(
                listener_id,
                "Error reading token or pool data. Check the address and try again.",
            )
            return None

        reserves = await self._read_reserves(subscription)
        await self._send(
            listener_id,
            format_subscription_confirmation(
                subscription.network, subscription.token_info, subscription.pool, reserves
            ),
            parse_mode="HTML",
        )
        return subscription

    async def on_unsubscribe_request(self, listener_id: Any) -> int:
        removed = await self._registry.unsubscribe_listener(listener_id)
        if removed:
            self._logger.info("Chat %s: %d subscription(s) removed", listener_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _read_reserves(self, subscription: Subscription) -> PoolReserves | None:
        connection = self._manager.get_connection(subscription.network.key)
        if connection is None or not connection.is_open:
            return None
        try:
            return await self._resolver.get_reserves(connection, subscription.pool)
        except ChainReadError as e:
            self._logger.warning(
                "[%s] Reserves read failed for %s: %s",
                subscription.network.key,
                subscription.pool.address,
                e,
            )
            return None

    def _main_menu(self) -> dict[str, Any]:
        return {
            "keyboard": [list(self._networks), [STOP_TEXT]],
            "resize_keyboard": True,
            "one_time_keyboard": True,
        }

    async def _send(
        self,
        chat_id: Any,
        text: str,
        reply_markup: dict[str, Any] | None = None,
        parse_mode: str | None = None,
    ) -> None:
        try:
            await self._client.send_message(
                chat_id, text, parse_mode=parse_mode, reply_markup=reply_markup
            )
        except TelegramClientError as e:
            self._logger.error("Reply to chat %s failed: %s", chat_id, e)

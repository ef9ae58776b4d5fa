"""
Notifier sink: formats a TradeRecord and hands it to the transport.

The only outbound effect of the monitor. Transport failures are logged and
never propagate back into event handling.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from bot_logging.logger_manager import setup_module_logger
from notify.formatter import format_trade_message
from notify.telegram_client import TelegramClientError

if TYPE_CHECKING:
    from notify.telegram_client import TelegramClient
    from shared.types import Network, TokenInfo, TradeRecord


class TradeNotifier:
    """Delivers trade notifications to listeners (Telegram chat ids)."""

    def __init__(self, client: TelegramClient) -> None:
        self._client = client
        self._delivered = 0
        self._failed = 0
        self._logger = setup_module_logger(
            "trade_notifier", "trade_notifier.log", module_folder="Notifier_Logs"
        )

    @property
    def delivered_count(self) -> int:
        return self._delivered

    @property
    def failed_count(self) -> int:
        return self._failed

    async def deliver_trade(
        self,
        listener_id: int | str,
        record: TradeRecord,
        network: Network,
        token_info: TokenInfo,
    ) -> bool:
        """Format and send one trade. Returns False if the transport failed."""
        message = format_trade_message(record, network, token_info)
        try:
            await self._client.send_message(listener_id, message, parse_mode="HTML")
        except TelegramClientError as e:
            self._failed += 1
            self._logger.error(
                "[%s] Delivery of %s %s to %s failed: %s",
                network.key,
                record.side.value,
                record.tx_hash,
                listener_id,
                e,
            )
            return False

        self._delivered += 1
        self._logger.info(
            "[%s] Delivered %s %s %s to %s",
            network.key,
            record.side.value,
            record.token_amount,
            token_info.symbol,
            listener_id,
        )
        return True

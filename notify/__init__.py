from notify.telegram_client import TelegramClient, TelegramClientError
from notify.trade_notifier import TradeNotifier

__all__ = [
    "TelegramClient",
    "TelegramClientError",
    "TradeNotifier",
]

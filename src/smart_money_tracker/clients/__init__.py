"""Upstream clients - Market data, security scans, prices and Telegram."""

from smart_money_tracker.clients.http import RetryError, UpstreamFetchError, UpstreamTransientError
from smart_money_tracker.clients.market_data import ActivityBatch, MarketDataClient
from smart_money_tracker.clients.prices import PriceClient, TokenPrice
from smart_money_tracker.clients.security import SecurityClient
from smart_money_tracker.clients.telegram import DeliveryError, TelegramClient, TelegramSubstrate

__all__ = [
    "ActivityBatch",
    "DeliveryError",
    "MarketDataClient",
    "PriceClient",
    "RetryError",
    "SecurityClient",
    "TelegramClient",
    "TelegramSubstrate",
    "TokenPrice",
    "UpstreamFetchError",
    "UpstreamTransientError",
]

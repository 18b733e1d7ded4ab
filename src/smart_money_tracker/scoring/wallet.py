"""Wallet-level entry scoring.

Turns a wallet's recent per-token trade summaries into one average entry
score by classifying each token entry against its candle series.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from smart_money_tracker.clients.http import UpstreamFetchError
from smart_money_tracker.models import Candle, WalletHistoryPage, WalletTrade
from smart_money_tracker.scoring.classifier import classify_entry

logger = logging.getLogger(__name__)


class WalletHistoryProvider(Protocol):
    async def fetch_wallet_history(
        self,
        chain_id: int,
        wallet_address: str,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> WalletHistoryPage:
        raise NotImplementedError

    async def fetch_candles(
        self,
        chain_id: int,
        token_address: str,
        *,
        bar: str = "15m",
        limit: int = 300,
    ) -> list[Candle]:
        raise NotImplementedError


@dataclass(frozen=True)
class WalletScorerConfig:
    page_size: int = 20
    recent_window: timedelta = timedelta(days=7)
    max_scored_tokens: int = 10
    max_weight_per_token: int = 5
    candle_bar: str = "15m"
    candle_limit: int = 300
    page_delay_seconds: float = 0.05
    token_delay_seconds: float = 0.03


@dataclass(frozen=True)
class WalletScore:
    """Mean entry score over a wallet's weighted sample pool."""

    average: float
    sample_count: int

    @classmethod
    def empty(cls) -> WalletScore:
        return cls(average=0.0, sample_count=0)


def nearest_close(candles: list[Candle], price: float) -> Candle:
    """Return the first candle whose close is nearest to ``price``."""
    return min(candles, key=lambda c: abs(c.close - price))


class WalletScorer:
    """Scores a wallet by how well it timed its recent entries.

    For each eligible token the wallet bought in the last 7 days the scorer
    finds the candle whose close is nearest the wallet's average buy price,
    classifies that moment as the entry, and adds the score to a sample pool
    once per buy (capped at 5 so one token cannot dominate).
    """

    def __init__(
        self,
        provider: WalletHistoryProvider,
        *,
        config: WalletScorerConfig | None = None,
    ) -> None:
        self._provider = provider
        self._cfg = config or WalletScorerConfig()

    async def fetch_history(
        self,
        wallet_address: str,
        chain_id: int,
        max_tokens: int,
    ) -> list[WalletTrade]:
        """Page through the wallet's trade history up to ``max_tokens`` items.

        A failure on the first page propagates. Later page failures end the
        pagination and keep what was gathered.
        """
        trades: list[WalletTrade] = []
        offset = 0
        max_pages = max_tokens // self._cfg.page_size + 2

        for page_number in range(max_pages):
            try:
                page = await self._provider.fetch_wallet_history(
                    chain_id,
                    wallet_address,
                    offset=offset,
                    limit=self._cfg.page_size,
                )
            except UpstreamFetchError as e:
                if page_number == 0:
                    raise
                logger.warning(
                    "History page %d failed for %s: %s",
                    page_number,
                    wallet_address[:10] + "...",
                    e,
                )
                break

            trades.extend(page.items)
            if not page.has_next or len(trades) >= max_tokens:
                break
            offset = page.offset
            await asyncio.sleep(self._cfg.page_delay_seconds)

        return trades[:max_tokens]

    async def score(
        self,
        wallet_address: str,
        chain_id: int,
        max_tokens: int = 10,
        *,
        now: datetime | None = None,
    ) -> WalletScore:
        """Score a wallet's recent entries.

        Raises:
            UpstreamFetchError: If the wallet history cannot be fetched.
        """
        now = now or datetime.now(UTC)
        cutoff = now - self._cfg.recent_window

        trades = await self.fetch_history(wallet_address, chain_id, max_tokens)
        recent = [t for t in trades if t.latest_time is not None and t.latest_time >= cutoff]
        if not recent:
            return WalletScore.empty()

        samples: list[int] = []
        for trade in recent[: self._cfg.max_scored_tokens]:
            if trade.buy_count > 0 and trade.buy_avg_price > 0:
                score = await self._score_token(trade, chain_id)
                if score is not None:
                    samples.extend([score] * min(trade.buy_count, self._cfg.max_weight_per_token))
            await asyncio.sleep(self._cfg.token_delay_seconds)

        if not samples:
            return WalletScore.empty()
        return WalletScore(average=sum(samples) / len(samples), sample_count=len(samples))

    async def _score_token(self, trade: WalletTrade, chain_id: int) -> int | None:
        try:
            candles = await self._provider.fetch_candles(
                chain_id,
                trade.token_address,
                bar=self._cfg.candle_bar,
                limit=self._cfg.candle_limit,
            )
        except UpstreamFetchError as e:
            logger.debug("Candles unavailable for %s: %s", trade.token_address, e)
            return None
        if not candles:
            return None

        entry = nearest_close(candles, trade.buy_avg_price)
        return classify_entry(trade.buy_avg_price, entry.timestamp, candles)

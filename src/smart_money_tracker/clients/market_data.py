"""OKX smart-money market-data client.

Wraps the four endpoints the pipeline consumes: the filter-activity
overview (candidate signals), the per-signal participant detail, a
wallet's per-token PnL history, and token OHLC candles.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

from smart_money_tracker.clients.http import (
    DEFAULT_MAX_RETRIES,
    JsonHttpClient,
    UpstreamFetchError,
    with_retry,
)
from smart_money_tracker.models import (
    Candle,
    ParticipantEntry,
    Signal,
    WalletHistoryPage,
    WalletTrade,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://web3.okx.com"
FILTER_ACTIVITY_PATH = "/priapi/v1/dx/market/v2/smartmoney/signal/filter-activity-overview"
SIGNAL_DETAIL_PATH = "/priapi/v1/dx/market/v2/smartmoney/signal-detail"
TOKEN_LIST_PATH = "/priapi/v1/dx/market/v2/pnl/token-list"
CANDLES_PATH = "/priapi/v5/dex/token/market/dex-token-hlc-candles"

SIGNAL_LABELS = (1, 2, 3)  # smart money, influencers, whales


@dataclass(frozen=True)
class ActivityBatch:
    """Parsed filter-activity response."""

    signals: tuple[Signal, ...]
    skipped: int = 0
    raw_count: int = 0


def _check_code(payload: Any, url: str) -> Any:
    if not isinstance(payload, dict):
        raise UpstreamFetchError(f"Unexpected payload from {url}")
    code = payload.get("code")
    if code not in (0, "0"):
        message = payload.get("error_message") or payload.get("msg") or "unknown error"
        raise UpstreamFetchError(f"API error {code} from {url}: {message}")
    return payload.get("data")


def _cache_buster() -> int:
    return int(time.time() * 1000)


class MarketDataClient(JsonHttpClient):
    """Async client for the OKX web3 smart-money endpoints.

    Example:
        ```python
        client = MarketDataClient()
        batch = await client.fetch_activity(501, trend="1", page_size=10)
        for signal in batch.signals:
            participants = await client.fetch_detail(
                signal.chain_id, signal.token_address, signal.batch_id, signal.batch_index
            )
        await client.aclose()
        ```
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = 15.0,
        requests_per_second: float = 5.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        super().__init__(
            session=session,
            timeout_seconds=timeout_seconds,
            requests_per_second=requests_per_second,
        )
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        logger.debug("Initialized MarketDataClient with base_url=%s", self._base_url)

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        url = self._url(path)

        @with_retry(max_retries=self._max_retries)
        async def _do() -> Any:
            return await self._request_json("GET", url, params=params)

        return _check_code(await _do(), url)

    async def fetch_activity(
        self,
        chain_id: int,
        *,
        trend: str = "1",
        page_size: int = 10,
    ) -> ActivityBatch:
        """Fetch the latest smart-money activities for a chain.

        Raises:
            UpstreamFetchError: On HTTP, provider or parsing failures.
        """
        url = self._url(FILTER_ACTIVITY_PATH)
        body = {
            "chainId": chain_id,
            "trend": trend,
            "signalLabelList": list(SIGNAL_LABELS),
            "protocolIdList": [],
            "tokenMetricsFilter": {},
            "signalMetricsFilter": {},
            "pageSize": page_size,
        }

        @with_retry(max_retries=self._max_retries)
        async def _do() -> Any:
            return await self._request_json("POST", url, params={"t": _cache_buster()}, json=body)

        data = _check_code(await _do(), url) or {}
        activities = data.get("activityList") or []
        token_info = data.get("tokenInfo") or {}
        overviews = {o.get("tokenKey"): o for o in data.get("overviewList") or [] if isinstance(o, dict)}

        signals: list[Signal] = []
        skipped = 0
        for activity in activities:
            try:
                token_key = activity["tokenKey"]
                signals.append(
                    Signal.from_activity(activity, token_info.get(token_key), overviews.get(token_key))
                )
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning("Skipping malformed activity %s: %s", activity.get("id", "?"), e)

        return ActivityBatch(signals=tuple(signals), skipped=skipped, raw_count=len(activities))

    async def fetch_detail(
        self,
        chain_id: int,
        token_address: str,
        batch_id: str,
        batch_index: str,
    ) -> list[ParticipantEntry]:
        """Fetch the participant wallets of one signal."""
        data = await self._get(
            SIGNAL_DETAIL_PATH,
            {
                "chainId": chain_id,
                "tokenContractAddress": token_address,
                "batchId": batch_id,
                "batchIndex": batch_index,
                "t": _cache_buster(),
            },
        )
        addresses = (data or {}).get("addresses") or []
        try:
            return [ParticipantEntry.from_dict(a) for a in addresses]
        except (KeyError, TypeError) as e:
            raise UpstreamFetchError(f"Malformed signal detail: {e}") from e

    async def fetch_wallet_history(
        self,
        chain_id: int,
        wallet_address: str,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> WalletHistoryPage:
        """Fetch one page of a wallet's per-token trading history."""
        data = await self._get(
            TOKEN_LIST_PATH,
            {
                "walletAddress": wallet_address,
                "chainId": chain_id,
                "isAsc": "false",
                "sortType": 2,
                "offset": offset,
                "limit": limit,
                "filterRisk": "false",
                "filterSmallBalance": "false",
                "filterEmptyBalance": "false",
                "t": _cache_buster(),
            },
        )
        data = data or {}
        items = tuple(WalletTrade.from_dict(t) for t in data.get("tokenList") or [])
        next_offset = data.get("offset")
        return WalletHistoryPage(
            items=items,
            offset=int(next_offset) if next_offset is not None else offset + len(items),
            has_next=bool(data.get("hasNext")),
        )

    async def fetch_candles(
        self,
        chain_id: int,
        token_address: str,
        *,
        bar: str = "15m",
        limit: int = 300,
    ) -> list[Candle]:
        """Fetch OHLC candles for a token in provider order."""
        data = await self._get(
            CANDLES_PATH,
            {
                "chainId": chain_id,
                "address": token_address,
                "bar": bar,
                "limit": limit,
                "t": _cache_buster(),
            },
        )
        candles: list[Candle] = []
        for row in data or []:
            try:
                candles.append(Candle.from_row(row))
            except (IndexError, TypeError, ValueError):
                logger.debug("Skipping malformed candle row for %s", token_address)
        return candles

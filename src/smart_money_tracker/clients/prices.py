"""Current token prices from DexScreener."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from smart_money_tracker.clients.http import JsonHttpClient, UpstreamFetchError

logger = logging.getLogger(__name__)

DEFAULT_DEXSCREENER_URL = "https://api.dexscreener.com"
BATCH_SIZE = 20
BATCH_DELAY_SECONDS = 0.2

DEXSCREENER_CHAINS = {
    501: "solana",
    1: "ethereum",
    56: "bsc",
    8453: "base",
}


@dataclass(frozen=True)
class TokenPrice:
    price_usd: float
    liquidity_usd: float = 0.0
    price_change_24h: float = 0.0
    volume_24h: float = 0.0


def _num(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def best_pairs(pairs: list[dict[str, Any]], chain_name: str) -> dict[str, TokenPrice]:
    """Pick the highest-liquidity pair per base token on one chain."""
    prices: dict[str, TokenPrice] = {}
    for pair in pairs:
        if pair.get("chainId") != chain_name:
            continue
        address = ((pair.get("baseToken") or {}).get("address") or "").lower()
        if not address:
            continue
        liquidity = _num((pair.get("liquidity") or {}).get("usd"))
        current = prices.get(address)
        if current is None or liquidity > current.liquidity_usd:
            prices[address] = TokenPrice(
                price_usd=_num(pair.get("priceUsd")),
                liquidity_usd=liquidity,
                price_change_24h=_num((pair.get("priceChange") or {}).get("h24")),
                volume_24h=_num((pair.get("volume") or {}).get("h24")),
            )
    return prices


class PriceClient(JsonHttpClient):
    """Batch price lookups keyed by lowercase token address."""

    def __init__(
        self,
        base_url: str = DEFAULT_DEXSCREENER_URL,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = 10.0,
        batch_delay_seconds: float = BATCH_DELAY_SECONDS,
    ) -> None:
        super().__init__(session=session, timeout_seconds=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._batch_delay = batch_delay_seconds

    async def get_token_prices(self, chain_id: int, token_addresses: list[str]) -> dict[str, TokenPrice]:
        """Fetch current prices; failed batches are logged and skipped."""
        chain_name = DEXSCREENER_CHAINS.get(chain_id)
        if chain_name is None or not token_addresses:
            return {}

        prices: dict[str, TokenPrice] = {}
        chunks = [token_addresses[i : i + BATCH_SIZE] for i in range(0, len(token_addresses), BATCH_SIZE)]
        for i, chunk in enumerate(chunks):
            url = f"{self._base_url}/latest/dex/tokens/{','.join(chunk)}"
            try:
                data = await self._request_json("GET", url)
            except UpstreamFetchError as e:
                logger.warning("Price batch %d/%d failed: %s", i + 1, len(chunks), e)
                continue
            pairs = (data or {}).get("pairs") or []
            prices.update(best_pairs(pairs, chain_name))
            if i < len(chunks) - 1:
                await asyncio.sleep(self._batch_delay)

        return {addr: p for addr, p in prices.items() if p.price_usd > 0}

"""Store maintenance jobs: retention sweep, price refresh and leaderboard."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from smart_money_tracker.alerter.formatter import LEADERBOARD_SIZE, AlertFormatter
from smart_money_tracker.clients.prices import PriceClient
from smart_money_tracker.clients.telegram import DeliveryError, TelegramClient, TelegramSubstrate
from smart_money_tracker.config import CHAIN_NAMES, SUPPORTED_CHAINS, Settings
from smart_money_tracker.store.record_store import (
    INDEX_ANCHOR_KEY,
    Partition,
    RecordStore,
    RecordStoreConfig,
    RecordSubstrate,
    RecordTooLarge,
    StoreUnavailable,
)
from smart_money_tracker.store.schemas import (
    IndexRecord,
    TokenAggregate,
    WalletAggregate,
    apply_price,
    prune_tracked_tokens,
    token_key,
    trim_index,
)

logger = logging.getLogger(__name__)

CHAIN_PAUSE_SECONDS = 0.2

# Index-partition record holding the leaderboard message ids
LEADERBOARD_KEY = "leaderboard"


@dataclass
class PriceRefreshSummary:
    """Outcome of one price refresh run."""

    chain: str
    chain_id: int
    ok: bool = True
    tracked: int = 0
    updated: int = 0
    new_peaks: int = 0
    new_lows: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class LeaderboardSummary:
    """Outcome of one leaderboard publish."""

    chain: str
    chain_id: int
    ok: bool = True
    wallets: int = 0
    tokens: int = 0
    primary_handle: int | None = None
    public_handle: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def build_store(
    settings: Settings,
    chain_id: int,
    substrate: RecordSubstrate,
    *,
    clock: Callable[[], datetime] | None = None,
) -> RecordStore:
    """Build a chain's record store from the configured channels.

    Raises:
        ValueError: If a partition has no channel configured.
    """
    targets = {p: settings.store_chat_id(p.value, chain_id) or "" for p in Partition}
    return RecordStore(
        substrate,
        targets,
        config=RecordStoreConfig(
            max_record_chars=settings.store.max_record_chars,
            namespace=str(chain_id),
        ),
        clock=clock,
    )


def stage_index(store: RecordStore, index: IndexRecord) -> int:
    """Stage the chain index, trimming its oldest entries until it fits.

    Returns the number of entries dropped.

    Raises:
        RecordTooLarge: If even an emptied index exceeds the ceiling.
    """
    dropped = 0
    while True:
        try:
            store.stage(Partition.INDEX, INDEX_ANCHOR_KEY, index.to_dict())
        except RecordTooLarge:
            if not trim_index(index):
                raise
            dropped += 1
            continue
        if dropped:
            logger.warning("Trimmed %d index entries for chain %s to fit the record ceiling", dropped, index.chain_id)
        return dropped


def _open_telegram(settings: Settings) -> TelegramClient:
    if settings.telegram.bot_token is None:
        raise ValueError("TELEGRAM_BOT_TOKEN is required")
    return TelegramClient(settings.telegram.bot_token.get_secret_value(), api_base=settings.telegram.api_base)


async def sweep_store(store: RecordStore, now: datetime | None = None) -> dict[str, int]:
    """Sweep every partition of a loaded store and flush.

    Also drops tracked tokens that have gone quiet from the index. Returns
    evictions per partition plus the ``tracked`` prune count.
    """
    evicted = {p.value: await store.sweep(p, now) for p in Partition}

    raw = store.get(Partition.INDEX, INDEX_ANCHOR_KEY)
    pruned = 0
    if raw is not None:
        index = IndexRecord.from_dict(raw)
        pruned = prune_tracked_tokens(index, now or datetime.now(UTC))
        if pruned:
            stage_index(store, index)
    evicted["tracked"] = pruned

    await store.flush()
    return evicted


async def sweep_chains(
    settings: Settings,
    chain_ids: Iterable[int] | None = None,
    *,
    substrate: RecordSubstrate | None = None,
) -> dict[str, Any]:
    """Evict expired records on each chain's store.

    A chain whose store cannot be loaded is reported with an error and the
    sweep moves on to the next chain.
    """
    chains = list(chain_ids) if chain_ids else list(SUPPORTED_CHAINS)
    client: TelegramClient | None = None
    if substrate is None:
        client = _open_telegram(settings)
        substrate = TelegramSubstrate(client)

    results: dict[str, Any] = {}
    try:
        for position, chain_id in enumerate(chains):
            name = CHAIN_NAMES.get(chain_id, str(chain_id))
            if position:
                await asyncio.sleep(CHAIN_PAUSE_SECONDS)
            try:
                store = build_store(settings, chain_id, substrate)
                await store.load(Partition.INDEX)
                evicted = await sweep_store(store)
            except (StoreUnavailable, ValueError) as e:
                logger.warning("Sweep skipped for %s: %s", name, e)
                results[name] = {"ok": False, "error": str(e)}
                continue
            logger.info("Swept %s: %d record(s) evicted", name, sum(evicted.values()))
            results[name] = {"ok": True, "evicted": evicted}
    finally:
        if client is not None:
            await client.aclose()

    return {"ok": all(r["ok"] for r in results.values()), "chains": results}


async def refresh_prices(
    settings: Settings,
    chain_id: int,
    *,
    substrate: RecordSubstrate | None = None,
    prices: PriceClient | None = None,
    clock: Callable[[], datetime] | None = None,
) -> PriceRefreshSummary:
    """Refresh current, peak and low price marks of the chain's tracked tokens.

    The matching token aggregates get the same marks, so the next alert for
    a token and the leaderboard both see the refreshed price.
    """
    clock = clock or (lambda: datetime.now(UTC))
    summary = PriceRefreshSummary(chain=CHAIN_NAMES.get(chain_id, str(chain_id)), chain_id=chain_id)

    owned: list[TelegramClient | PriceClient] = []
    if substrate is None:
        client = _open_telegram(settings)
        owned.append(client)
        substrate = TelegramSubstrate(client)
    if prices is None:
        prices = PriceClient(settings.prices.dexscreener_url)
        owned.append(prices)

    try:
        store = build_store(settings, chain_id, substrate, clock=clock)
        try:
            await store.load(Partition.INDEX)
        except StoreUnavailable as e:
            logger.warning("Price refresh skipped for %s: %s", summary.chain, e)
            summary.ok = False
            summary.error = str(e)
            return summary

        raw = store.get(Partition.INDEX, INDEX_ANCHOR_KEY)
        if raw is None:
            logger.info("No index for %s, nothing to refresh", summary.chain)
            return summary

        index = IndexRecord.from_dict(raw)
        summary.tracked = len(index.tracked_tokens)
        if not index.tracked_tokens:
            return summary

        quotes = await prices.get_token_prices(chain_id, [t.token_address for t in index.tracked_tokens])
        now = clock()
        for tracked in index.tracked_tokens:
            quote = quotes.get(tracked.token_address.lower())
            if quote is None:
                logger.debug("No price for %s", tracked.symbol)
                continue
            move = apply_price(tracked, quote.price_usd, now)
            summary.updated += 1
            summary.new_peaks += int(move.new_peak)
            summary.new_lows += int(move.new_low)
            if move.new_peak:
                logger.info("%s new peak: %.1fx from first signal", tracked.symbol, move.multiple)

            key = token_key(tracked.token_address)
            raw_token = store.get(Partition.TOKEN, key)
            if raw_token is not None:
                token = TokenAggregate.from_dict(raw_token)
                apply_price(token, quote.price_usd, now)
                store.stage(Partition.TOKEN, key, token.to_dict())

        if summary.updated:
            try:
                stage_index(store, index)
            except RecordTooLarge as e:
                logger.error("Rejected index update: %s", e)
                summary.ok = False
                summary.error = str(e)
            await store.flush()
    finally:
        for owned_client in owned:
            await owned_client.aclose()

    logger.info(
        "Refreshed %d/%d tracked token price(s) on %s",
        summary.updated,
        summary.tracked,
        summary.chain,
    )
    return summary


def _records(store: RecordStore, partition: Partition) -> list[dict[str, Any]]:
    return [r for key in store.keys(partition) if (r := store.get(partition, key)) is not None]


def rank_wallets(index: IndexRecord, wallets: Iterable[WalletAggregate]) -> list[WalletAggregate]:
    """Index top performers first, then every other wallet by running average.

    A top performer whose wallet record was already swept is shown from the
    index entry alone.
    """
    by_key = {w.key: w for w in wallets}
    ranked: list[WalletAggregate] = []
    for performer in index.top_performers:
        wallet = by_key.pop(performer.wallet, None)
        if wallet is None:
            wallet = WalletAggregate(
                wallet_address=performer.wallet,
                last_seen=0,
                appearance_count=performer.appearances,
                average_score=performer.average_score,
            )
        ranked.append(wallet)
    ranked += sorted(by_key.values(), key=lambda w: (w.average_score, w.appearance_count), reverse=True)
    return ranked


def rank_tokens(tokens: Iterable[TokenAggregate]) -> list[TokenAggregate]:
    """Delivered tokens by peak multiple, then by signal count."""
    delivered = [t for t in tokens if t.primary_handle is not None]
    return sorted(delivered, key=lambda t: (t.peak_multiple, t.signal_count), reverse=True)


async def _post_board(telegram: TelegramClient, chat_id: str, handle: int | None, text: str) -> int:
    if handle is not None:
        try:
            await telegram.edit_text(chat_id, handle, text, parse_mode="HTML")
            return handle
        except DeliveryError as e:
            logger.warning("Leaderboard edit (message %s) failed, sending new: %s", handle, e)
    return await telegram.send_text(chat_id, text)


async def publish_leaderboard(
    settings: Settings,
    chain_id: int,
    *,
    substrate: RecordSubstrate | None = None,
    telegram: TelegramClient | None = None,
    formatter: AlertFormatter | None = None,
    clock: Callable[[], datetime] | None = None,
) -> LeaderboardSummary:
    """Send or edit the chain's leaderboard in the primary and public chats.

    The public board hides wallet addresses. Message ids are kept in the
    index partition under ``LEADERBOARD_KEY``, so every run edits the boards
    of the previous one instead of posting new messages.
    """
    clock = clock or (lambda: datetime.now(UTC))
    formatter = formatter or AlertFormatter()
    summary = LeaderboardSummary(chain=CHAIN_NAMES.get(chain_id, str(chain_id)), chain_id=chain_id)

    owned: TelegramClient | None = None
    if telegram is None:
        telegram = owned = _open_telegram(settings)
    if substrate is None:
        substrate = TelegramSubstrate(telegram)

    try:
        store = build_store(settings, chain_id, substrate, clock=clock)
        try:
            await store.load(Partition.INDEX)
        except StoreUnavailable as e:
            logger.warning("Leaderboard skipped for %s: %s", summary.chain, e)
            summary.ok = False
            summary.error = str(e)
            return summary

        raw = store.get(Partition.INDEX, INDEX_ANCHOR_KEY)
        index = IndexRecord.from_dict(raw) if raw else IndexRecord(chain_id=chain_id)
        wallets = rank_wallets(index, [WalletAggregate.from_dict(r) for r in _records(store, Partition.WALLET)])
        tokens = rank_tokens(TokenAggregate.from_dict(r) for r in _records(store, Partition.TOKEN))
        summary.wallets = min(len(wallets), LEADERBOARD_SIZE)
        summary.tokens = len(tokens)

        previous = store.get(Partition.INDEX, LEADERBOARD_KEY) or {}
        now = clock()
        try:
            if settings.telegram.chat_id:
                summary.primary_handle = await _post_board(
                    telegram,
                    settings.telegram.chat_id,
                    previous.get("primary"),
                    formatter.format_leaderboard(chain_id, wallets, tokens, now=now),
                )
            if settings.telegram.public_chat_id:
                summary.public_handle = await _post_board(
                    telegram,
                    settings.telegram.public_chat_id,
                    previous.get("public"),
                    formatter.format_leaderboard(chain_id, wallets, tokens, now=now, redacted=True),
                )
        except DeliveryError as e:
            logger.error("Leaderboard delivery failed for %s: %s", summary.chain, e)
            summary.ok = False
            summary.error = str(e)

        store.stage(
            Partition.INDEX,
            LEADERBOARD_KEY,
            {
                "primary": summary.primary_handle or previous.get("primary"),
                "public": summary.public_handle or previous.get("public"),
            },
        )
        await store.flush()
    finally:
        if owned is not None:
            await owned.aclose()

    logger.info(
        "Published %s leaderboard: %d wallet(s), %d token(s)",
        summary.chain,
        summary.wallets,
        summary.tokens,
    )
    return summary

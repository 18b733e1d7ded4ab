"""Main pipeline orchestrator for the Smart Money Tracker.

This module provides the Pipeline class that wires together the upstream
clients, entry scoring, dedup tiers, delivery and the record store, and runs
one bounded polling cycle per chain.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from redis.asyncio import Redis

from smart_money_tracker.alerter.formatter import AlertFormatter, truncate_address
from smart_money_tracker.alerter.models import FormattedAlert
from smart_money_tracker.clients.http import UpstreamFetchError
from smart_money_tracker.clients.market_data import MarketDataClient
from smart_money_tracker.clients.security import SecurityClient
from smart_money_tracker.clients.telegram import DeliveryError, TelegramClient, TelegramSubstrate
from smart_money_tracker.config import CHAIN_NAMES, Settings, get_settings
from smart_money_tracker.dedup import (
    MemoryRecentSignals,
    RecentSignalTier,
    RedisRecentSignals,
    SignalDeduplicator,
)
from smart_money_tracker.maintenance import build_store, stage_index
from smart_money_tracker.models import (
    Err,
    Ok,
    ParticipantEntry,
    Result,
    SecurityReport,
    SecurityStatus,
    Severity,
    Signal,
    mean_entry_score,
)
from smart_money_tracker.scoring.wallet import WalletScore, WalletScorer
from smart_money_tracker.store.record_store import (
    INDEX_ANCHOR_KEY,
    Partition,
    RecordStore,
    RecordSubstrate,
    RecordTooLarge,
    StoreUnavailable,
)
from smart_money_tracker.store.schemas import (
    IndexRecord,
    SignalOutcome,
    SignalRecord,
    TokenAggregate,
    WalletAggregate,
    merge_index_signal,
    merge_token_signal,
    merge_wallet_appearance,
    partition_participants,
    rank_wallet,
    record_delivery,
    token_key,
    track_token,
    wallet_key,
)

logger = logging.getLogger(__name__)

MISSING_TELEGRAM_CONFIG = "Missing Telegram configuration"

CardRenderer = Callable[[Signal, Sequence[ParticipantEntry], float], Awaitable[bytes]]


class ParticipantScorer(Protocol):
    async def score(self, wallet_address: str, chain_id: int, max_tokens: int = 10) -> WalletScore:
        raise NotImplementedError


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics accumulated across cycles of one pipeline instance."""

    started_at: datetime | None = None
    cycles_run: int = 0
    candidates_processed: int = 0
    alerts_sent: int = 0
    errors: int = 0
    last_cycle_time: datetime | None = None
    last_error: str | None = None


@dataclass
class CycleSummary:
    """Outcome counters of one polling cycle."""

    chain: str
    chain_id: int
    ok: bool = True
    duration_ms: int = 0
    new_signals: int = 0
    skipped_by_score: int = 0
    skipped_as_repeat: int = 0
    skipped_by_security: int = 0
    skipped_seen: int = 0
    skipped_by_wallets: int = 0
    errors: int = 0
    aborted_by_time_budget: bool = False
    store_available: bool = True
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class _CycleContext:
    chain_id: int
    summary: CycleSummary
    store: RecordStore | None
    index: IndexRecord | None
    now: datetime


class Pipeline:
    """Orchestrates one polling cycle per chain.

    Cycle flow:
        fetch activity → (newest first) dedup → wallet threshold → detail
        → score wallets → security scan → new-vs-repeat → quality filter
        → format → deliver → persist, bounded by a wall-clock budget,
        then one store flush.

    Collaborators can be injected; anything not injected is built from
    settings in ``start()`` and closed in ``stop()``.

    Example:
        ```python
        from smart_money_tracker.config import get_settings
        from smart_money_tracker.pipeline import Pipeline

        async with Pipeline(get_settings()) as pipeline:
            summary = await pipeline.run_cycle(501)
        print(summary.to_dict())
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        market_data: MarketDataClient | None = None,
        scorer: ParticipantScorer | None = None,
        security: SecurityClient | None = None,
        telegram: TelegramClient | None = None,
        substrate: RecordSubstrate | None = None,
        recent: RecentSignalTier | None = None,
        formatter: AlertFormatter | None = None,
        renderer: CardRenderer | None = None,
        ephemeral: dict[int, set[str]] | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, skip sending alerts. Overrides settings.dry_run.
            ephemeral: Per-chain seen-signal sets shared across pipeline
                instances of one process.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._market_data = market_data
        self._scorer = scorer
        self._security = security
        self._telegram = telegram
        self._substrate = substrate
        self._recent = recent
        self._formatter = formatter or AlertFormatter()
        self._renderer = renderer
        self._ephemeral = ephemeral if ephemeral is not None else {}
        self._clock = clock or (lambda: datetime.now(UTC))
        self._monotonic = monotonic

        self._redis: Redis | None = None
        self._owned: list[MarketDataClient | SecurityClient | TelegramClient] = []
        # Loaded once per chain, reused by later cycles of this instance.
        self._stores: dict[int, tuple[RecordStore, IndexRecord]] = {}

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    async def start(self) -> None:
        """Initialize components.

        Raises:
            RuntimeError: If pipeline is already running.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        logger.debug("Starting pipeline...")
        try:
            await self._initialize_components()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Close every client the pipeline created."""
        if self._state == PipelineState.STOPPED:
            return
        self._state = PipelineState.STOPPING
        await self._cleanup()
        self._state = PipelineState.STOPPED
        logger.debug("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Build collaborators that were not injected."""
        settings = self._settings

        if self._recent is None:
            if settings.redis.url:
                logger.debug("Initializing Redis connection...")
                self._redis = Redis.from_url(settings.redis.url)
                self._recent = RedisRecentSignals(
                    self._redis,
                    ttl_seconds=settings.redis.recent_signals_ttl_seconds,
                    max_entries=settings.redis.recent_signals_max,
                )
            else:
                logger.debug("No REDIS_URL, using in-memory recent signal tier")
                self._recent = MemoryRecentSignals(
                    ttl_seconds=settings.redis.recent_signals_ttl_seconds,
                    max_entries=settings.redis.recent_signals_max,
                )

        if self._market_data is None:
            logger.debug("Initializing market data client...")
            self._market_data = MarketDataClient(
                settings.market_data.base_url,
                timeout_seconds=settings.market_data.timeout_seconds,
                requests_per_second=settings.market_data.requests_per_second,
                max_retries=settings.market_data.max_retries,
            )
            self._owned.append(self._market_data)

        if self._scorer is None and settings.poll.score_wallets:
            self._scorer = WalletScorer(self._market_data)

        if self._security is None and settings.security.enabled:
            logger.debug("Initializing security client...")
            self._security = SecurityClient(
                goplus_url=settings.security.goplus_url,
                rugcheck_url=settings.security.rugcheck_url,
            )
            self._owned.append(self._security)

        if self._telegram is None and settings.telegram.bot_token is not None:
            logger.debug("Initializing Telegram client...")
            self._telegram = TelegramClient(
                settings.telegram.bot_token.get_secret_value(),
                api_base=settings.telegram.api_base,
            )
            self._owned.append(self._telegram)

        if self._substrate is None and self._telegram is not None:
            self._substrate = TelegramSubstrate(self._telegram)

    async def _cleanup(self) -> None:
        """Clean up resources."""
        for client in self._owned:
            await client.aclose()
        self._owned.clear()
        self._stores.clear()

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _build_store(self, chain_id: int) -> RecordStore | None:
        settings = self._settings
        if not settings.store.enabled or self._substrate is None:
            return None
        targets = {p: settings.store_chat_id(p.value, chain_id) for p in Partition}
        if not all(targets.values()):
            logger.warning("Record store channels not configured, persistence disabled")
            return None
        return build_store(settings, chain_id, self._substrate, clock=self._clock)

    async def _open_store(self, chain_id: int, summary: CycleSummary) -> tuple[RecordStore | None, IndexRecord | None]:
        if chain_id in self._stores:
            return self._stores[chain_id]

        store = self._build_store(chain_id)
        if store is None:
            summary.store_available = False
            return None, None
        try:
            await store.load(Partition.INDEX)
        except StoreUnavailable as e:
            logger.warning("Record store unavailable, continuing without durable state: %s", e)
            summary.store_available = False
            return None, None

        raw = store.get(Partition.INDEX, INDEX_ANCHOR_KEY)
        index = IndexRecord.from_dict(raw) if raw else IndexRecord(chain_id=chain_id)
        logger.info("Loaded index for chain %s: %d seen signal(s)", chain_id, len(index.seen))
        self._stores[chain_id] = (store, index)
        return store, index

    async def run_cycle(self, chain_id: int) -> CycleSummary:
        """Run one polling cycle for a chain.

        Raises:
            RuntimeError: If the pipeline has not been started.
        """
        if self._state != PipelineState.RUNNING:
            raise RuntimeError(f"Cannot run a cycle in state {self._state}")

        started = self._monotonic()
        summary = CycleSummary(chain=CHAIN_NAMES.get(chain_id, str(chain_id)), chain_id=chain_id)
        logger.info("Polling %s (chain %s)", summary.chain, chain_id)

        store, index = await self._open_store(chain_id, summary)
        dedup = SignalDeduplicator(
            chain_id,
            ephemeral=self._ephemeral.setdefault(chain_id, set()),
            recent=self._recent,
            index=index,
        )
        await dedup.prime()
        ctx = _CycleContext(chain_id=chain_id, summary=summary, store=store, index=index, now=self._clock())

        fetched = await self._fetch_candidates(chain_id)
        if isinstance(fetched, Err):
            summary.ok = False
            summary.error = fetched.message
            candidates: list[Signal] = []
        else:
            candidates = sorted(fetched.value, key=lambda s: s.activity_id, reverse=True)

        budget = self._settings.poll.time_budget_seconds
        for position, signal in enumerate(candidates):
            if self._monotonic() - started >= budget:
                summary.aborted_by_time_budget = True
                logger.warning(
                    "Time budget of %.0fs reached, abandoning %d candidate(s)",
                    budget,
                    len(candidates) - position,
                )
                break

            if await dedup.check_and_mark(signal.key):
                logger.debug("Already seen: %s", signal.key)
                summary.skipped_seen += 1
                continue

            if signal.participant_count < self._settings.poll.min_wallets:
                logger.debug("Skipping %s: only %d wallet(s)", signal.key, signal.participant_count)
                summary.skipped_by_wallets += 1
                continue

            self._stats.candidates_processed += 1
            try:
                await self._process_candidate(signal, ctx)
            except Exception as e:
                logger.error("Error processing signal %s: %s", signal.key, e)
                summary.errors += 1
                self._stats.errors += 1
                self._stats.last_error = str(e)

            if position < len(candidates) - 1:
                await asyncio.sleep(self._settings.poll.signal_delay_seconds)

        if store is not None and index is not None:
            if dedup.marked:
                try:
                    stage_index(store, index)
                except RecordTooLarge as e:
                    logger.error("Rejected index record: %s", e)
            await store.flush()

        summary.duration_ms = int((self._monotonic() - started) * 1000)
        self._stats.cycles_run += 1
        self._stats.last_cycle_time = datetime.now(UTC)
        logger.info(
            "Processed %d new signal(s) on %s, skipped %d by score, %d as repeat, %d by security",
            summary.new_signals,
            summary.chain,
            summary.skipped_by_score,
            summary.skipped_as_repeat,
            summary.skipped_by_security,
        )
        return summary

    async def _process_candidate(self, signal: Signal, ctx: _CycleContext) -> SignalOutcome | None:
        """Run one deduplicated candidate to a terminal outcome."""
        summary = ctx.summary
        logger.info("Processing signal %s: %s", signal.key, signal.token_symbol)

        detail = await self._fetch_detail(signal)
        if isinstance(detail, Err):
            logger.error("Signal %s aborted: %s", signal.key, detail.message)
            summary.errors += 1
            return None

        participants = await self._score_participants(signal, detail.value)
        security = await self._check_security(signal)
        prior = self._load_token(ctx.store, signal.token_address)

        new, repeat = partition_participants(prior, participants)
        average = mean_entry_score(new)

        if security is not None and security.status == SecurityStatus.SCAM:
            logger.info("Skipping %s: token flagged as scam (%s)", signal.key, ", ".join(security.flags))
            summary.skipped_by_security += 1
            outcome = SignalOutcome.SCAM
        elif not new:
            logger.info("Skipping %s: all %d wallet(s) already seen on this token", signal.key, len(repeat))
            summary.skipped_as_repeat += 1
            outcome = SignalOutcome.REPEAT
        elif average <= self._settings.poll.min_score:
            logger.info(
                "Skipping %s: avg score %.2f <= %.2f",
                signal.key,
                average,
                self._settings.poll.min_score,
            )
            summary.skipped_by_score += 1
            outcome = SignalOutcome.LOW_SCORE
        else:
            outcome = SignalOutcome.DELIVERED

        primary_handle: int | None = None
        secondary_handle: int | None = None
        if outcome == SignalOutcome.DELIVERED:
            alert = self._formatter.format(
                signal,
                new,
                average_score=average,
                history=prior,
                security=security,
                now=ctx.now,
            )
            if self._dry_run:
                logger.info(
                    "[DRY RUN] Would send signal %s: %s, avg=%.2f, %d new wallet(s)",
                    signal.key,
                    signal.token_symbol,
                    average,
                    len(new),
                )
                summary.new_signals += 1
            else:
                delivered = await self._deliver_primary(signal, new, average, alert, prior)
                if isinstance(delivered, Err):
                    logger.error("Delivery of %s failed: %s", signal.key, delivered.message)
                    summary.errors += 1
                    outcome = SignalOutcome.UNDELIVERED
                else:
                    primary_handle = delivered.value
                    summary.new_signals += 1
                    self._stats.alerts_sent += 1
                    logger.info("Posted %s (avg score %.2f)", signal.key, average)
                    secondary_handle = await self._deliver_secondary(alert, prior)

        self._persist(
            ctx,
            signal,
            prior=prior,
            new=new,
            average=average,
            outcome=outcome,
            security=security,
            primary_handle=primary_handle,
            secondary_handle=secondary_handle,
        )
        return outcome

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    async def _fetch_candidates(self, chain_id: int) -> Result[list[Signal]]:
        if self._market_data is None:
            raise RuntimeError("Market data client must be initialized before polling")
        poll = self._settings.poll
        try:
            batch = await self._market_data.fetch_activity(chain_id, trend=poll.trend, page_size=poll.page_size)
        except UpstreamFetchError as e:
            logger.error("Failed to fetch activity for chain %s: %s", chain_id, e)
            return Err(Severity.FATAL, f"Activity fetch failed: {e}")
        logger.debug("Fetched %d candidate(s), %d malformed", len(batch.signals), batch.skipped)
        return Ok(list(batch.signals))

    async def _fetch_detail(self, signal: Signal) -> Result[list[ParticipantEntry]]:
        if self._market_data is None:
            raise RuntimeError("Market data client must be initialized before polling")
        try:
            participants = await self._market_data.fetch_detail(
                signal.chain_id,
                signal.token_address,
                signal.batch_id,
                signal.batch_index,
            )
        except UpstreamFetchError as e:
            return Err(Severity.FATAL, f"Detail fetch failed: {e}")
        return Ok(participants)

    async def _score_participants(
        self,
        signal: Signal,
        participants: list[ParticipantEntry],
    ) -> list[ParticipantEntry]:
        """Score each wallet sequentially; failures leave a wallet unscored."""
        poll = self._settings.poll
        if not poll.score_wallets or self._scorer is None:
            return participants

        scored: list[ParticipantEntry] = []
        for position, participant in enumerate(participants):
            if position:
                await asyncio.sleep(poll.wallet_delay_seconds)
            try:
                result = await self._scorer.score(
                    participant.wallet_address,
                    signal.chain_id,
                    poll.wallet_max_tokens,
                )
            except UpstreamFetchError as e:
                logger.warning("Failed to score %s: %s", truncate_address(participant.wallet_address), e)
                scored.append(participant)
                continue
            scored.append(
                dataclasses.replace(
                    participant,
                    entry_score=result.average,
                    entry_count=result.sample_count,
                )
            )
        return scored

    async def _check_security(self, signal: Signal) -> SecurityReport | None:
        if self._security is None:
            return None
        try:
            return await self._security.fetch_security(signal.chain_id, signal.token_address)
        except UpstreamFetchError as e:
            logger.warning("Security check failed for %s: %s", signal.token_symbol, e)
            return SecurityReport.unknown()

    async def _deliver_primary(
        self,
        signal: Signal,
        participants: list[ParticipantEntry],
        average: float,
        alert: FormattedAlert,
        prior: TokenAggregate | None,
    ) -> Result[int]:
        """Send to the primary chat, as an image card when possible."""
        if self._telegram is None:
            return Err(Severity.FATAL, MISSING_TELEGRAM_CONFIG)
        chat_id = self._settings.telegram.chat_id or ""
        reply_to = prior.primary_handle if prior else None

        if self._renderer is not None:
            try:
                image = await self._renderer(signal, participants, average)
                handle = await self._telegram.send_photo(
                    chat_id,
                    image,
                    alert.caption,
                    reply_to=reply_to,
                    buttons=alert.buttons,
                )
                return Ok(handle)
            except Exception as e:
                logger.warning("Card delivery failed, falling back to text: %s", e)

        try:
            handle = await self._telegram.send_text(chat_id, alert.detailed, reply_to=reply_to, buttons=alert.buttons)
        except DeliveryError as e:
            return Err(Severity.FATAL, str(e))
        return Ok(handle)

    async def _deliver_secondary(self, alert: FormattedAlert, prior: TokenAggregate | None) -> int | None:
        """Best-effort redacted delivery to the public chat."""
        chat_id = self._settings.telegram.public_chat_id
        if not chat_id or self._telegram is None:
            return None
        try:
            return await self._telegram.send_text(
                chat_id,
                alert.redacted,
                reply_to=prior.secondary_handle if prior else None,
                buttons=alert.buttons,
            )
        except DeliveryError as e:
            logger.warning("Public delivery failed: %s", e)
            return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def _load_token(store: RecordStore | None, token_address: str) -> TokenAggregate | None:
        if store is None:
            return None
        raw = store.get(Partition.TOKEN, token_key(token_address))
        return TokenAggregate.from_dict(raw) if raw else None

    @staticmethod
    def _stage(store: RecordStore, partition: Partition, key: str, payload: dict[str, Any]) -> bool:
        try:
            store.stage(partition, key, payload)
        except RecordTooLarge as e:
            logger.error("Rejected record: %s", e)
            return False
        return True

    def _persist(
        self,
        ctx: _CycleContext,
        signal: Signal,
        *,
        prior: TokenAggregate | None,
        new: list[ParticipantEntry],
        average: float,
        outcome: SignalOutcome,
        security: SecurityReport | None,
        primary_handle: int | None,
        secondary_handle: int | None,
    ) -> None:
        """Stage every record touched by one candidate's outcome."""
        store, index = ctx.store, ctx.index
        if store is None or index is None:
            return

        token = merge_token_signal(
            prior,
            signal,
            new,
            None if outcome == SignalOutcome.REPEAT else average,
            security.status if security else None,
            ctx.now,
        )
        if primary_handle is not None:
            record_delivery(token, primary_handle)
        if secondary_handle is not None:
            record_delivery(token, secondary_handle, secondary=True)
        self._stage(store, Partition.TOKEN, token.key, token.to_dict())

        new_wallets = 0
        for participant in new:
            key = wallet_key(participant.wallet_address)
            raw = store.get(Partition.WALLET, key)
            if raw is None:
                new_wallets += 1
            wallet = merge_wallet_appearance(
                WalletAggregate.from_dict(raw) if raw else None,
                participant.wallet_address,
                signal.token_address,
                signal.price_at_signal,
                participant.entry_score,
                signal.event_time,
                ctx.now,
            )
            if self._stage(store, Partition.WALLET, key, wallet.to_dict()):
                rank_wallet(index, wallet)

        record = SignalRecord.from_signal(
            signal,
            new_wallet_count=len(new),
            average_score=average,
            outcome=outcome,
            message_handle=primary_handle,
        )
        self._stage(store, Partition.SIGNAL, record.key, record.to_dict())

        merge_index_signal(index, signal.key, new_token=prior is None, new_wallets=new_wallets)
        if outcome == SignalOutcome.DELIVERED:
            track_token(index, token)

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()


# Survives across invocations within one warm process.
_EPHEMERAL_SEEN: dict[int, set[str]] = {}
_MEMORY_RECENT = MemoryRecentSignals()


async def poll(chain_id: int, settings: Settings | None = None) -> dict[str, Any]:
    """Run one polling cycle for ``chain_id`` and return the summary dict.

    Fails fast, before any network call, when Telegram is not configured.
    """
    settings = settings or get_settings()
    if not settings.telegram.enabled:
        logger.error(MISSING_TELEGRAM_CONFIG)
        return {"ok": False, "error": MISSING_TELEGRAM_CONFIG}

    recent = None if settings.redis.url else _MEMORY_RECENT
    try:
        async with Pipeline(settings, recent=recent, ephemeral=_EPHEMERAL_SEEN) as pipeline:
            summary = await pipeline.run_cycle(chain_id)
        return summary.to_dict()
    except Exception as e:
        logger.exception("Poll failed for chain %s", chain_id)
        return {"ok": False, "chain": CHAIN_NAMES.get(chain_id, str(chain_id)), "error": str(e)}

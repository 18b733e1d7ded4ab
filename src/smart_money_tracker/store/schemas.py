"""Versioned durable record schemas and their merge functions.

Four record types live in the record store:

* ``IndexRecord``: one per chain, under a fixed key. Holds the seen-signal
  ring, running totals, top performers and recently delivered tokens with
  their price marks.
* ``SignalRecord``: one per processed candidate, kept for 7 days.
* ``TokenAggregate``: per-token accumulation across signals.
* ``WalletAggregate``: per-wallet accumulation across appearances.

Merge functions never touch the store. The pipeline merges, then stages the
result with ``RecordStore.stage``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from smart_money_tracker.models import (
    ParticipantEntry,
    SecurityStatus,
    Signal,
    to_epoch_ms,
)
from smart_money_tracker.store.ring import Ring

SCHEMA_VERSION = 1

KEY_ADDRESS_CHARS = 16
WALLET_PREFIX_CHARS = 8

SEEN_SIGNALS_MAX = 100
KNOWN_WALLETS_MAX = 50
RECENT_SCORES_MAX = 10
WALLET_TOKENS_MAX = 20
TOP_PERFORMERS_MAX = 5
TRACKED_TOKENS_MAX = 10
TRACKED_TOKEN_MAX_AGE = timedelta(days=30)
# Trimming an oversized index stops dropping seen keys at this floor
SEEN_SIGNALS_FLOOR = 20
PRICE_DIGITS = 6

MAX_SCORE_VARIANCE = 16.0


class SignalOutcome(str, Enum):
    """Terminal outcome of one candidate."""

    DELIVERED = "delivered"
    LOW_SCORE = "low_score"
    REPEAT = "repeat"
    SCAM = "scam"
    UNDELIVERED = "undelivered"


def signal_key(chain_id: int, batch_id: str, batch_index: str) -> str:
    return f"{chain_id}:{batch_id}:{batch_index}"


def token_key(token_address: str) -> str:
    return token_address[:KEY_ADDRESS_CHARS]


def wallet_key(wallet_address: str) -> str:
    return wallet_address[:KEY_ADDRESS_CHARS]


def running_mean(average: float, count: int, value: float) -> float:
    """Online mean after folding ``value`` into ``count`` prior samples."""
    return (average * count + value) / (count + 1)


def consistency(scores: Sequence[float]) -> int:
    """0-100 consistency from the population variance of entry scores."""
    if len(scores) < 2:
        return 100
    mean = sum(scores) / len(scores)
    variance = sum((s - mean) ** 2 for s in scores) / len(scores)
    return round(max(0.0, 100 - variance / MAX_SCORE_VARIANCE * 100))


def _mark(price: float) -> float:
    """Round a price mark to PRICE_DIGITS significant digits."""
    return float(f"{price:.{PRICE_DIGITS}g}")


def _int_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class SignalRecord:
    """Outcome of one processed candidate."""

    chain_id: int
    token_address: str
    batch_id: str
    batch_index: str
    event_time: int
    price: float
    mcap: float
    participant_count: int
    new_wallet_count: int
    average_score: float
    outcome: SignalOutcome
    message_handle: int | None = None
    version: int = SCHEMA_VERSION

    @property
    def key(self) -> str:
        return signal_key(self.chain_id, self.batch_id, self.batch_index)

    @classmethod
    def from_signal(
        cls,
        signal: Signal,
        *,
        new_wallet_count: int,
        average_score: float,
        outcome: SignalOutcome,
        message_handle: int | None = None,
    ) -> SignalRecord:
        return cls(
            chain_id=signal.chain_id,
            token_address=signal.token_address,
            batch_id=signal.batch_id,
            batch_index=signal.batch_index,
            event_time=to_epoch_ms(signal.event_time),
            price=signal.price_at_signal,
            mcap=signal.mcap_at_signal,
            participant_count=signal.participant_count,
            new_wallet_count=new_wallet_count,
            average_score=round(average_score, 4),
            outcome=outcome,
            message_handle=message_handle,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "chain_id": self.chain_id,
            "token": self.token_address,
            "batch_id": self.batch_id,
            "batch_index": self.batch_index,
            "time": self.event_time,
            "price": self.price,
            "mcap": self.mcap,
            "wallets": self.participant_count,
            "new_wallets": self.new_wallet_count,
            "average_score": self.average_score,
            "outcome": self.outcome.value,
            "handle": self.message_handle,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SignalRecord:
        return cls(
            chain_id=int(data["chain_id"]),
            token_address=str(data["token"]),
            batch_id=str(data["batch_id"]),
            batch_index=str(data["batch_index"]),
            event_time=int(data.get("time") or 0),
            price=float(data.get("price") or 0.0),
            mcap=float(data.get("mcap") or 0.0),
            participant_count=int(data.get("wallets") or 0),
            new_wallet_count=int(data.get("new_wallets") or 0),
            average_score=float(data.get("average_score") or 0.0),
            outcome=SignalOutcome(data.get("outcome", SignalOutcome.DELIVERED.value)),
            message_handle=_int_or_none(data.get("handle")),
            version=int(data.get("version", SCHEMA_VERSION)),
        )


@dataclass
class TokenAggregate:
    """Per-token accumulation across every signal seen for it."""

    chain_id: int
    token_address: str
    symbol: str
    first_price: float
    low_price: float
    peak_price: float
    current_price: float
    first_seen: int
    last_signal_time: int
    signal_count: int = 0
    average_score: float = 0.0
    known_wallets: Ring[str] = field(default_factory=lambda: Ring(KNOWN_WALLETS_MAX, unique=True))
    primary_handle: int | None = None
    secondary_handle: int | None = None
    security_status: SecurityStatus | None = None
    rugged: bool = False
    price_updated_at: int | None = None
    version: int = SCHEMA_VERSION

    @property
    def key(self) -> str:
        return token_key(self.token_address)

    @property
    def peak_multiple(self) -> float:
        """Peak price over the first signal price (1.0 when unknown)."""
        if self.first_price <= 0:
            return 1.0
        return self.peak_price / self.first_price

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "chain_id": self.chain_id,
            "address": self.token_address,
            "symbol": self.symbol,
            "first_price": self.first_price,
            "low_price": self.low_price,
            "peak_price": self.peak_price,
            "current_price": self.current_price,
            "first_seen": self.first_seen,
            "last_signal": self.last_signal_time,
            "signal_count": self.signal_count,
            "average_score": round(self.average_score, 4),
            "wallets": self.known_wallets.to_list(),
            "handle": self.primary_handle,
            "public_handle": self.secondary_handle,
            "security": self.security_status.value if self.security_status else None,
            "rugged": self.rugged,
            "price_updated_at": self.price_updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenAggregate:
        security = data.get("security")
        return cls(
            chain_id=int(data.get("chain_id") or 0),
            token_address=str(data["address"]),
            symbol=str(data.get("symbol") or "???"),
            first_price=float(data.get("first_price") or 0.0),
            low_price=float(data.get("low_price") or 0.0),
            peak_price=float(data.get("peak_price") or 0.0),
            current_price=float(data.get("current_price") or 0.0),
            first_seen=int(data.get("first_seen") or 0),
            last_signal_time=int(data.get("last_signal") or 0),
            signal_count=int(data.get("signal_count") or 0),
            average_score=float(data.get("average_score") or 0.0),
            known_wallets=Ring(KNOWN_WALLETS_MAX, data.get("wallets") or (), unique=True),
            primary_handle=_int_or_none(data.get("handle")),
            secondary_handle=_int_or_none(data.get("public_handle")),
            security_status=SecurityStatus(security) if security else None,
            rugged=bool(data.get("rugged", False)),
            price_updated_at=_int_or_none(data.get("price_updated_at")),
            version=int(data.get("version", SCHEMA_VERSION)),
        )


@dataclass(frozen=True)
class TokenEntry:
    """A wallet's entry into one token."""

    entry_price: float
    score: float
    time: int


@dataclass
class WalletAggregate:
    """Per-wallet accumulation across signal appearances."""

    wallet_address: str
    last_seen: int
    appearance_count: int = 0
    average_score: float = 0.0
    recent_scores: Ring[float] = field(default_factory=lambda: Ring(RECENT_SCORES_MAX))
    tokens: dict[str, TokenEntry] = field(default_factory=dict)
    version: int = SCHEMA_VERSION

    @property
    def key(self) -> str:
        return wallet_key(self.wallet_address)

    @property
    def consistency(self) -> int:
        return consistency(self.recent_scores.to_list())

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "address": self.wallet_address,
            "last_seen": self.last_seen,
            "appearances": self.appearance_count,
            "average_score": round(self.average_score, 4),
            "scores": self.recent_scores.to_list(),
            "consistency": self.consistency,
            "tokens": {
                token: {"entry": entry.entry_price, "score": entry.score, "time": entry.time}
                for token, entry in self.tokens.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalletAggregate:
        tokens: dict[str, TokenEntry] = {}
        for token, entry in (data.get("tokens") or {}).items():
            tokens[token] = TokenEntry(
                entry_price=float(entry.get("entry") or 0.0),
                score=float(entry.get("score") or 0.0),
                time=int(entry.get("time") or 0),
            )
        return cls(
            wallet_address=str(data["address"]),
            last_seen=int(data.get("last_seen") or 0),
            appearance_count=int(data.get("appearances") or 0),
            average_score=float(data.get("average_score") or 0.0),
            recent_scores=Ring(RECENT_SCORES_MAX, (float(s) for s in data.get("scores") or ())),
            tokens=tokens,
            version=int(data.get("version", SCHEMA_VERSION)),
        )


@dataclass
class TrackedToken:
    """Price marks of a recently delivered token, kept in the index."""

    token_address: str
    symbol: str
    first_price: float
    peak_price: float
    low_price: float
    current_price: float
    price_updated_at: int | None = None
    last_signal_time: int = 0

    def to_row(self) -> list[Any]:
        return [
            self.token_address,
            self.symbol,
            _mark(self.first_price),
            _mark(self.peak_price),
            _mark(self.low_price),
            _mark(self.current_price),
            self.price_updated_at,
            self.last_signal_time,
        ]

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> TrackedToken:
        return cls(
            token_address=str(row[0]),
            symbol=str(row[1]),
            first_price=float(row[2]),
            peak_price=float(row[3]),
            low_price=float(row[4]),
            current_price=float(row[5]),
            price_updated_at=_int_or_none(row[6]) if len(row) > 6 else None,
            last_signal_time=int(row[7] or 0) if len(row) > 7 else 0,
        )


@dataclass(frozen=True)
class TopPerformer:
    wallet: str
    average_score: float
    appearances: int


@dataclass
class IndexRecord:
    """Per-chain anchor record: dedup memory, totals and leaderboards."""

    chain_id: int
    seen: Ring[str] = field(default_factory=lambda: Ring(SEEN_SIGNALS_MAX, unique=True))
    total_signals: int = 0
    total_tokens: int = 0
    total_wallets: int = 0
    top_performers: list[TopPerformer] = field(default_factory=list)
    tracked_tokens: list[TrackedToken] = field(default_factory=list)
    version: int = SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "chain_id": self.chain_id,
            "seen": self.seen.to_list(),
            "signals": self.total_signals,
            "tokens": self.total_tokens,
            "wallets": self.total_wallets,
            "top": [[p.wallet, round(p.average_score, 3), p.appearances] for p in self.top_performers],
            "tracked": [t.to_row() for t in self.tracked_tokens],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexRecord:
        return cls(
            chain_id=int(data.get("chain_id") or 0),
            seen=Ring(SEEN_SIGNALS_MAX, (str(k) for k in data.get("seen") or ()), unique=True),
            total_signals=int(data.get("signals") or 0),
            total_tokens=int(data.get("tokens") or 0),
            total_wallets=int(data.get("wallets") or 0),
            top_performers=[
                TopPerformer(wallet=str(row[0]), average_score=float(row[1]), appearances=int(row[2]))
                for row in data.get("top") or ()
            ],
            tracked_tokens=[TrackedToken.from_row(row) for row in data.get("tracked") or ()],
            version=int(data.get("version", SCHEMA_VERSION)),
        )


# ---------------------------------------------------------------------------
# Merge functions
# ---------------------------------------------------------------------------


def partition_participants(
    token: TokenAggregate | None,
    participants: Iterable[ParticipantEntry],
) -> tuple[list[ParticipantEntry], list[ParticipantEntry]]:
    """Split participants into (new, repeat) by the token's known prefixes."""
    known = set(token.known_wallets) if token else set()
    new: list[ParticipantEntry] = []
    repeat: list[ParticipantEntry] = []
    for participant in participants:
        if participant.prefix in known:
            repeat.append(participant)
        else:
            new.append(participant)
    return new, repeat


def merge_token_signal(
    token: TokenAggregate | None,
    signal: Signal,
    participants: Iterable[ParticipantEntry],
    average_score: float | None,
    security_status: SecurityStatus | None,
    now: datetime,
) -> TokenAggregate:
    """Fold one signal into its token aggregate.

    ``average_score`` is the signal's mean over new participants. ``None``
    (a pure repeat) leaves the signal count and running mean untouched.
    """
    price = signal.price_at_signal
    signal_time = to_epoch_ms(signal.event_time)

    if token is None:
        token = TokenAggregate(
            chain_id=signal.chain_id,
            token_address=signal.token_address,
            symbol=signal.token_symbol,
            first_price=price,
            low_price=price,
            peak_price=price,
            current_price=price,
            first_seen=to_epoch_ms(now),
            last_signal_time=signal_time,
        )
    else:
        token.last_signal_time = max(token.last_signal_time, signal_time)
        token.current_price = price
        if price > 0 and (token.low_price <= 0 or price < token.low_price):
            token.low_price = price
        if price > token.peak_price:
            token.peak_price = price

    if average_score is not None:
        token.average_score = running_mean(token.average_score, token.signal_count, average_score)
        token.signal_count += 1

    token.known_wallets.extend(p.prefix for p in participants)
    if security_status is not None:
        mark_security(token, security_status)
    return token


def merge_wallet_appearance(
    wallet: WalletAggregate | None,
    wallet_address: str,
    token_address: str,
    entry_price: float,
    score: float | None,
    event_time: datetime,
    now: datetime,
) -> WalletAggregate:
    """Fold one appearance of a wallet into its aggregate.

    An unscored appearance counts as a score of 0.
    """
    value = float(score) if score is not None else 0.0
    if wallet is None:
        wallet = WalletAggregate(wallet_address=wallet_address, last_seen=to_epoch_ms(now))

    wallet.average_score = running_mean(wallet.average_score, wallet.appearance_count, value)
    wallet.appearance_count += 1
    wallet.last_seen = to_epoch_ms(now)
    wallet.recent_scores.push(value)

    key = token_key(token_address)
    wallet.tokens.pop(key, None)
    wallet.tokens[key] = TokenEntry(entry_price=entry_price, score=value, time=to_epoch_ms(event_time))
    while len(wallet.tokens) > WALLET_TOKENS_MAX:
        del wallet.tokens[next(iter(wallet.tokens))]
    return wallet


def record_delivery(token: TokenAggregate, handle: int, *, secondary: bool = False) -> TokenAggregate:
    """Remember the last delivered message so the next one replies to it."""
    if secondary:
        token.secondary_handle = handle
    else:
        token.primary_handle = handle
    return token


def mark_security(token: TokenAggregate, status: SecurityStatus) -> TokenAggregate:
    token.security_status = status
    if status == SecurityStatus.SCAM:
        token.rugged = True
    return token


def merge_index_signal(
    index: IndexRecord,
    key: str,
    *,
    new_token: bool = False,
    new_wallets: int = 0,
) -> IndexRecord:
    """Count one processed signal and remember its key."""
    index.seen.push(key)
    index.total_signals += 1
    if new_token:
        index.total_tokens += 1
    index.total_wallets += new_wallets
    return index


def rank_wallet(index: IndexRecord, wallet: WalletAggregate) -> IndexRecord:
    """Keep the best wallets by running average in the index."""
    performers = [p for p in index.top_performers if p.wallet != wallet.key]
    performers.append(
        TopPerformer(
            wallet=wallet.key,
            average_score=wallet.average_score,
            appearances=wallet.appearance_count,
        )
    )
    performers.sort(key=lambda p: (p.average_score, p.appearances), reverse=True)
    index.top_performers = performers[:TOP_PERFORMERS_MAX]
    return index


def track_token(index: IndexRecord, token: TokenAggregate) -> IndexRecord:
    """Move ``token`` to the most-recent end of the tracked-token ring."""
    ring: Ring[TrackedToken] = Ring(
        TRACKED_TOKENS_MAX,
        (t for t in index.tracked_tokens if t.token_address != token.token_address),
    )
    ring.push(
        TrackedToken(
            token_address=token.token_address,
            symbol=token.symbol,
            first_price=token.first_price,
            peak_price=token.peak_price,
            low_price=token.low_price,
            current_price=token.current_price,
            price_updated_at=token.price_updated_at,
            last_signal_time=token.last_signal_time,
        )
    )
    index.tracked_tokens = ring.to_list()
    return index


def prune_tracked_tokens(index: IndexRecord, now: datetime, max_age: timedelta = TRACKED_TOKEN_MAX_AGE) -> int:
    """Drop tracked tokens without a signal for ``max_age``. Returns the count."""
    cutoff = to_epoch_ms(now - max_age)
    kept = [t for t in index.tracked_tokens if t.last_signal_time >= cutoff]
    removed = len(index.tracked_tokens) - len(kept)
    index.tracked_tokens = kept
    return removed


def trim_index(index: IndexRecord) -> bool:
    """Drop the least valuable index entry. Returns False once nothing is left.

    Order: the oldest seen key down to ``SEEN_SIGNALS_FLOOR``, then the oldest
    tracked token, then the weakest top performer, then the remaining seen
    keys.
    """
    if len(index.seen) > SEEN_SIGNALS_FLOOR:
        index.seen = Ring(SEEN_SIGNALS_MAX, index.seen.to_list()[1:], unique=True)
    elif index.tracked_tokens:
        index.tracked_tokens = index.tracked_tokens[1:]
    elif index.top_performers:
        index.top_performers = index.top_performers[:-1]
    elif len(index.seen):
        index.seen = Ring(SEEN_SIGNALS_MAX, index.seen.to_list()[1:], unique=True)
    else:
        return False
    return True


@dataclass(frozen=True)
class PriceMove:
    """Result of applying a fresh price to a record's price marks."""

    previous: float
    current: float
    first_price: float
    new_peak: bool
    new_low: bool

    @property
    def multiple(self) -> float:
        """Current price as a multiple of the first seen price."""
        if self.first_price <= 0:
            return 0.0
        return self.current / self.first_price


def apply_price(token: TokenAggregate | TrackedToken, price: float, now: datetime) -> PriceMove:
    """Update current, peak and low price marks in place."""
    previous = token.current_price
    new_peak = price > token.peak_price
    new_low = price > 0 and (token.low_price <= 0 or price < token.low_price)

    token.current_price = price
    if new_peak:
        token.peak_price = price
    if new_low:
        token.low_price = price
    token.price_updated_at = to_epoch_ms(now)

    return PriceMove(
        previous=previous,
        current=price,
        first_price=token.first_price,
        new_peak=new_peak,
        new_low=new_low,
    )

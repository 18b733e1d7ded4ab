"""Shared data models for signals, participants and upstream results."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

TOKEN_KEY_SEPARATOR = "!@#"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an epoch timestamp in seconds or milliseconds into UTC."""
    if value is None or value == "":
        return None
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts > 1e12:
        ts /= 1000.0
    return datetime.fromtimestamp(ts, tz=UTC)


def to_epoch_ms(ts: datetime) -> int:
    """Convert a datetime into integer epoch milliseconds."""
    return int(ts.timestamp() * 1000)


def _float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_token_key(token_key: str) -> tuple[int, str]:
    """Split a ``"<chainId>!@#<address>"`` token key."""
    chain, _, address = token_key.partition(TOKEN_KEY_SEPARATOR)
    return int(chain), address


@dataclass(frozen=True)
class Candle:
    """One OHLC bar from the market-data provider."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float

    @classmethod
    def from_row(cls, row: list[Any]) -> Candle:
        """Create a Candle from a ``[ts, open, high, low, close, ...]`` row."""
        ts = parse_timestamp(row[0])
        if ts is None:
            raise ValueError(f"Invalid candle timestamp: {row[0]!r}")
        return cls(
            timestamp=ts,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
        )


@dataclass(frozen=True)
class Signal:
    """A smart-money trading activity event for one token.

    Identity is ``(batch_id, batch_index)``. The remaining fields are
    snapshot values reported by the provider when the activity was observed.

    Attributes:
        chain_id: Numeric chain id (501 Solana, 1 Ethereum, 56 BSC, 8453 Base).
        token_address: Token contract / mint address.
        batch_id: Provider batch identifier.
        batch_index: Index of the activity within the batch.
        event_time: When the provider observed the activity.
        price_at_signal: Token price (USD) at the activity.
        mcap_at_signal: Market cap (USD) at the activity.
        volume: Volume of the activity (USD).
        participant_count: Number of wallets that took part.
    """

    chain_id: int
    token_address: str
    batch_id: str
    batch_index: str
    event_time: datetime
    price_at_signal: float
    mcap_at_signal: float
    volume: float
    participant_count: int
    activity_id: int = 0
    token_symbol: str = "???"
    token_name: str = "Unknown"
    token_created_at: datetime | None = None
    signal_label: str = "1"
    max_multiplier: str = "0"
    max_pct_gain: str = "0"

    @property
    def key(self) -> str:
        """Dedup key, unique per chain."""
        return f"{self.batch_id}:{self.batch_index}"

    @classmethod
    def from_activity(
        cls,
        activity: dict[str, Any],
        token_info: dict[str, Any] | None = None,
        overview: dict[str, Any] | None = None,
    ) -> Signal:
        """Create a Signal from a filter-activity item and its lookups."""
        chain_id, token_address = parse_token_key(str(activity["tokenKey"]))
        token_info = token_info or {}
        overview = overview or {}

        event_time = parse_timestamp(activity.get("eventTime")) or datetime.now(UTC)
        created_at = parse_timestamp(token_info.get("tokenCreateTime"))

        activity_id = 0
        with contextlib.suppress(TypeError, ValueError):
            activity_id = int(activity.get("id", 0))

        return cls(
            chain_id=chain_id,
            token_address=token_address,
            batch_id=str(activity["batchId"]),
            batch_index=str(activity["batchIndex"]),
            event_time=event_time,
            price_at_signal=_float(activity.get("price")),
            mcap_at_signal=_float(activity.get("mcap")),
            volume=_float(activity.get("volume")),
            participant_count=int(_float(activity.get("addressNum"))),
            activity_id=activity_id,
            token_symbol=str(token_info.get("tokenSymbol") or "???"),
            token_name=str(token_info.get("tokenName") or "Unknown"),
            token_created_at=created_at,
            signal_label=str(activity.get("signalLabel") or "1"),
            max_multiplier=str(overview.get("maxIncreaseMultiplier") or "0"),
            max_pct_gain=str(overview.get("maxIncreasePercentage") or "0"),
        )


@dataclass(frozen=True)
class ParticipantEntry:
    """A wallet taking part in a signal.

    ``entry_score`` is ``None`` while the wallet is unscored (not yet scored,
    or scoring failed).
    """

    wallet_address: str
    entry_score: float | None = None
    provider_pnl: float = 0.0
    provider_roi: float = 0.0
    provider_win_rate: float = 0.0
    entry_count: int = 0
    kol_address: bool = False
    twitter_handle: str | None = None

    @property
    def is_scored(self) -> bool:
        return self.entry_score is not None

    @property
    def prefix(self) -> str:
        """Short prefix used to recognise repeat wallets."""
        return self.wallet_address[:8]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParticipantEntry:
        """Create a ParticipantEntry from a signal-detail address item."""
        info = data.get("addressInfo") or {}
        twitter = info.get("twitterHandle")
        return cls(
            wallet_address=str(data["walletAddress"]),
            provider_pnl=_float(data.get("pnl7d")),
            provider_roi=_float(data.get("roi")),
            provider_win_rate=_float(data.get("winRate")),
            kol_address=bool(info.get("kolAddress")),
            twitter_handle=str(twitter) if twitter else None,
        )


@dataclass(frozen=True)
class WalletTrade:
    """Per-token trading summary from a wallet's PnL history."""

    token_address: str
    buy_avg_price: float
    buy_count: int
    latest_time: datetime | None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalletTrade:
        """Create a WalletTrade from a token-list item."""
        return cls(
            token_address=str(data.get("tokenContractAddress") or ""),
            buy_avg_price=_float(data.get("buyAvgPrice")),
            buy_count=int(_float(data.get("totalTxBuy"))),
            latest_time=parse_timestamp(data.get("latestTime")),
        )


@dataclass(frozen=True)
class WalletHistoryPage:
    """One page of a wallet's trade history."""

    items: tuple[WalletTrade, ...]
    offset: int
    has_next: bool


def mean_entry_score(participants: list[ParticipantEntry]) -> float:
    """Arithmetic mean of scored participants, 0.0 when none are scored."""
    scores = [p.entry_score for p in participants if p.entry_score is not None]
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


class SecurityStatus(str, Enum):
    """Verdict of a token security scan."""

    SAFE = "SAFE"
    RISK = "RISK"
    SCAM = "SCAM"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class SecurityReport:
    """Normalized token risk report."""

    status: SecurityStatus
    risk_score: int = 0
    flags: tuple[str, ...] = ()
    provider: str | None = None

    @classmethod
    def unknown(cls) -> SecurityReport:
        return cls(status=SecurityStatus.UNKNOWN, risk_score=0, flags=("Data Unavailable",))


class Severity(str, Enum):
    """How a failed upstream step affects the current candidate."""

    FATAL = "fatal"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful step result."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed step result.

    FATAL aborts the candidate; DEGRADED lets the caller continue with a
    fallback value.
    """

    severity: Severity
    message: str

    @property
    def ok(self) -> bool:
        return False

    @property
    def is_fatal(self) -> bool:
        return self.severity == Severity.FATAL


Result = Ok[T] | Err

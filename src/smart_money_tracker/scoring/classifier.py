"""Entry-timing classifier.

Scores how well a trade entry was timed by looking at price action in the
8 hours before the entry and the 24 hours after it. Each side is bucketed
into a coarse context and the pair is looked up in a fixed scoring matrix:

    before \\ after   moon  pump  flat  dip  dump
    dumped_to           2     1     0   -1    -2
    fell_to             2     1     0   -1    -2
    flat                2     1     0   -1    -2
    rose_to             1     0    -1   -2    -2
    pumped_to           0    -1    -1   -2    -2

Buying a dip that then rallies scores +2; chasing a pump that then dumps
scores -2.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from smart_money_tracker.models import Candle

LOOKBACK = timedelta(hours=8)
LOOKFORWARD = timedelta(hours=24)

STRONG_MOVE_PCT = 25.0
MILD_MOVE_PCT = 10.0

MIN_SCORE = -2
MAX_SCORE = 2


class BeforeContext(str, Enum):
    """Price action leading into the entry."""

    PUMPED_TO = "pumped_to"
    ROSE_TO = "rose_to"
    FLAT = "flat"
    FELL_TO = "fell_to"
    DUMPED_TO = "dumped_to"


class AfterContext(str, Enum):
    """Price action following the entry."""

    MOON = "moon"
    PUMP = "pump"
    FLAT = "flat"
    DIP = "dip"
    DUMP = "dump"


_BUY_LOW_ROW = {
    AfterContext.MOON: 2,
    AfterContext.PUMP: 1,
    AfterContext.FLAT: 0,
    AfterContext.DIP: -1,
    AfterContext.DUMP: -2,
}

SCORE_MATRIX: dict[BeforeContext, dict[AfterContext, int]] = {
    BeforeContext.DUMPED_TO: dict(_BUY_LOW_ROW),
    BeforeContext.FELL_TO: dict(_BUY_LOW_ROW),
    BeforeContext.FLAT: dict(_BUY_LOW_ROW),
    BeforeContext.ROSE_TO: {
        AfterContext.MOON: 1,
        AfterContext.PUMP: 0,
        AfterContext.FLAT: -1,
        AfterContext.DIP: -2,
        AfterContext.DUMP: -2,
    },
    BeforeContext.PUMPED_TO: {
        AfterContext.MOON: 0,
        AfterContext.PUMP: -1,
        AfterContext.FLAT: -1,
        AfterContext.DIP: -2,
        AfterContext.DUMP: -2,
    },
}


@dataclass(frozen=True)
class EntryClassification:
    """Full classifier output, useful for debugging a score."""

    before: BeforeContext
    after: AfterContext
    score: int


def _pct(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return numerator / denominator * 100.0


def classify_before(entry_price: float, before_min: float, before_max: float) -> BeforeContext:
    """Bucket the move from the lookback range into the entry price."""
    rise = _pct(entry_price - before_min, before_min)
    fall = _pct(before_max - entry_price, before_max)

    if rise > STRONG_MOVE_PCT and rise > fall:
        return BeforeContext.PUMPED_TO
    if rise > MILD_MOVE_PCT and rise > fall:
        return BeforeContext.ROSE_TO
    if fall > STRONG_MOVE_PCT and fall > rise:
        return BeforeContext.DUMPED_TO
    if fall > MILD_MOVE_PCT and fall > rise:
        return BeforeContext.FELL_TO
    return BeforeContext.FLAT


def classify_after(entry_price: float, after_min: float, after_max: float) -> AfterContext:
    """Bucket the move from the entry price into the look-forward range."""
    up = _pct(after_max - entry_price, entry_price)
    down = _pct(entry_price - after_min, entry_price)

    if up > STRONG_MOVE_PCT and up > down:
        return AfterContext.MOON
    if up > MILD_MOVE_PCT and up > down:
        return AfterContext.PUMP
    if down > STRONG_MOVE_PCT and down > up:
        return AfterContext.DUMP
    if down > MILD_MOVE_PCT and down > up:
        return AfterContext.DIP
    return AfterContext.FLAT


def score_contexts(before: BeforeContext, after: AfterContext) -> int:
    """Look up a (before, after) pair in the scoring matrix."""
    return SCORE_MATRIX.get(before, {}).get(after, 0)


def _range(candles: Iterable[Candle], fallback: float) -> tuple[float, float]:
    lows: list[float] = []
    highs: list[float] = []
    for candle in candles:
        lows.append(candle.low)
        highs.append(candle.high)
    if not lows:
        return fallback, fallback
    return min(lows), max(highs)


def classify_entry_detail(
    entry_price: float,
    entry_time: datetime,
    candles: Iterable[Candle],
) -> EntryClassification:
    """Classify an entry and return both contexts alongside the score."""
    series = list(candles)
    before = [c for c in series if entry_time - LOOKBACK <= c.timestamp < entry_time]
    after = [c for c in series if entry_time < c.timestamp <= entry_time + LOOKFORWARD]

    before_min, before_max = _range(before, entry_price)
    after_min, after_max = _range(after, entry_price)

    before_ctx = classify_before(entry_price, before_min, before_max)
    after_ctx = classify_after(entry_price, after_min, after_max)
    score = max(MIN_SCORE, min(MAX_SCORE, score_contexts(before_ctx, after_ctx)))
    return EntryClassification(before=before_ctx, after=after_ctx, score=score)


def classify_entry(entry_price: float, entry_time: datetime, candles: Iterable[Candle]) -> int:
    """Score an entry in {-2, -1, 0, 1, 2}."""
    return classify_entry_detail(entry_price, entry_time, candles).score

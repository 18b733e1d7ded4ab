"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from smart_money_tracker.models import Candle, ParticipantEntry, Signal
from smart_money_tracker.store.record_store import SubstrateError

SOL_TOKEN = "So1TokenMint1111111111111111111111111111111"


class FakeSubstrate:
    """In-memory message channel store implementing the substrate protocol."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[int, str]] = {}
        self.files: dict[str, dict[int, str]] = {}
        self.pinned: dict[str, int] = {}
        self.next_id = 100
        self.fail_sends = False
        self.fail_edits = False
        self.fail_reads = False
        self.sends = 0
        self.edits = 0
        self.deletes = 0

    async def send(self, target: str, text: str) -> int:
        if self.fail_sends:
            raise SubstrateError("send failed")
        self.next_id += 1
        self.messages.setdefault(target, {})[self.next_id] = text
        self.sends += 1
        return self.next_id

    async def edit(self, target: str, handle: int, text: str) -> None:
        if self.fail_edits or handle not in self.messages.get(target, {}):
            raise SubstrateError("message to edit not found")
        self.messages[target][handle] = text
        self.edits += 1

    async def delete(self, target: str, handle: int) -> None:
        self.messages.get(target, {}).pop(handle, None)
        self.deletes += 1

    async def send_file(self, target: str, filename: str, text: str) -> int:
        if self.fail_sends:
            raise SubstrateError("send failed")
        self.next_id += 1
        self.files.setdefault(target, {})[self.next_id] = text
        return self.next_id

    async def edit_file(self, target: str, handle: int, filename: str, text: str) -> None:
        if self.fail_edits or handle not in self.files.get(target, {}):
            raise SubstrateError("message to edit not found")
        self.files[target][handle] = text

    async def read_anchor(self, target: str) -> tuple[int, str] | None:
        if self.fail_reads:
            raise SubstrateError("chat not reachable")
        handle = self.pinned.get(target)
        if handle is None:
            return None
        if handle in self.files.get(target, {}):
            return handle, self.files[target][handle]
        return handle, self.messages[target][handle]

    def directory(self, target: str = "-100index") -> dict:
        """Decode the pinned record directory in ``target``."""
        return json.loads(self.files[target][self.pinned[target]])

    async def pin(self, target: str, handle: int) -> None:
        self.pinned[target] = handle


def make_candle(ts: datetime, price: float, *, low: float | None = None, high: float | None = None) -> Candle:
    """Create a Candle around one price."""
    return Candle(
        timestamp=ts,
        open=price,
        high=high if high is not None else price,
        low=low if low is not None else price,
        close=price,
    )


def make_series(entry_time: datetime, before: list[float], after: list[float]) -> list[Candle]:
    """Hourly candles: ``before`` ends one hour before entry, ``after`` starts one hour after."""
    candles = [
        make_candle(entry_time - timedelta(hours=len(before) - i), price) for i, price in enumerate(before)
    ]
    candles += [make_candle(entry_time + timedelta(hours=i + 1), price) for i, price in enumerate(after)]
    return candles


def make_signal(
    *,
    batch_id: str = "1766000000001",
    batch_index: str = "0",
    activity_id: int = 1,
    chain_id: int = 501,
    token_address: str = SOL_TOKEN,
    price: float = 0.001,
    participant_count: int = 3,
    event_time: datetime | None = None,
) -> Signal:
    """Create a Signal for testing."""
    return Signal(
        chain_id=chain_id,
        token_address=token_address,
        batch_id=batch_id,
        batch_index=batch_index,
        event_time=event_time or datetime(2025, 1, 1, 12, 0, tzinfo=UTC),
        price_at_signal=price,
        mcap_at_signal=1_000_000.0,
        volume=25_000.0,
        participant_count=participant_count,
        activity_id=activity_id,
        token_symbol="TEST",
        token_name="Test Token",
    )


def make_participant(address: str, score: float | None = None) -> ParticipantEntry:
    """Create a ParticipantEntry for testing."""
    return ParticipantEntry(wallet_address=address, entry_score=score)


@pytest.fixture
def now() -> datetime:
    """Fixed reference time."""
    return datetime(2025, 1, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def substrate() -> FakeSubstrate:
    """Create an empty in-memory substrate."""
    return FakeSubstrate()


@pytest.fixture
def sample_signal() -> Signal:
    """Sample signal for testing."""
    return make_signal()

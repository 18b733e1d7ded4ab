"""Tests for the store maintenance jobs."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import SOL_TOKEN, FakeSubstrate

from smart_money_tracker.clients.prices import TokenPrice
from smart_money_tracker.config import Settings
from smart_money_tracker.maintenance import (
    LEADERBOARD_KEY,
    build_store,
    publish_leaderboard,
    refresh_prices,
    stage_index,
    sweep_chains,
    sweep_store,
)
from smart_money_tracker.models import to_epoch_ms
from smart_money_tracker.store.record_store import (
    INDEX_ANCHOR_KEY,
    Partition,
    RecordStore,
    RecordStoreConfig,
    RecordTooLarge,
)
from smart_money_tracker.store.ring import Ring
from smart_money_tracker.store.schemas import (
    SEEN_SIGNALS_FLOOR,
    SEEN_SIGNALS_MAX,
    TOP_PERFORMERS_MAX,
    TRACKED_TOKENS_MAX,
    IndexRecord,
    TokenAggregate,
    TopPerformer,
    TrackedToken,
    WalletAggregate,
)

T0 = datetime(2025, 1, 1, tzinfo=UTC)
TARGETS = {p: f"-100{p.value}" for p in Partition}


def tracked(address: str, *, last_signal: datetime, price: float = 0.001) -> TrackedToken:
    return TrackedToken(
        token_address=address,
        symbol="TEST",
        first_price=price,
        peak_price=price,
        low_price=price,
        current_price=price,
        last_signal_time=to_epoch_ms(last_signal),
    )


async def seed_index(substrate: FakeSubstrate, index: IndexRecord) -> None:
    store = RecordStore(substrate, TARGETS, config=RecordStoreConfig(namespace=str(index.chain_id)))
    store.stage(Partition.INDEX, INDEX_ANCHOR_KEY, index.to_dict())
    await store.flush()


def read_records(substrate: FakeSubstrate, target: str) -> dict[str, dict]:
    """Decode every record message in a target channel, keyed by header."""
    records = {}
    for text in substrate.messages.get(target, {}).values():
        header, _, body = text.partition("\n")
        records[header] = json.loads(body)
    return records


def read_index(substrate: FakeSubstrate) -> IndexRecord:
    return IndexRecord.from_dict(read_records(substrate, "-100index")["#main"])


def make_token(address: str, *, handle: int | None, first: float = 0.001, peak: float = 0.001) -> TokenAggregate:
    """Create a token aggregate seen twice, delivered when ``handle`` is set."""
    return TokenAggregate(
        chain_id=501,
        token_address=address,
        symbol="TEST",
        first_price=first,
        low_price=first,
        peak_price=peak,
        current_price=peak,
        first_seen=to_epoch_ms(T0),
        last_signal_time=to_epoch_ms(T0),
        signal_count=2,
        average_score=0.6,
        primary_handle=handle,
    )


def full_index() -> IndexRecord:
    """An EVM index with every bounded collection at capacity."""
    return IndexRecord(
        chain_id=1,
        seen=Ring(SEEN_SIGNALS_MAX, (f"1:{1766123456000 + i}:0" for i in range(SEEN_SIGNALS_MAX)), unique=True),
        total_signals=1234,
        total_tokens=567,
        total_wallets=8901,
        top_performers=[
            TopPerformer(wallet=f"0x{i:014x}", average_score=0.857, appearances=12) for i in range(TOP_PERFORMERS_MAX)
        ],
        tracked_tokens=[
            TrackedToken(
                token_address=f"0x{i:040x}",
                symbol=f"TOKEN{i}",
                first_price=1 / 3,
                peak_price=2 / 3,
                low_price=1 / 7,
                current_price=1 / 6,
                price_updated_at=1766123456789,
                last_signal_time=1766123456789,
            )
            for i in range(TRACKED_TOKENS_MAX)
        ],
    )


@pytest.fixture
def mock_settings():
    """Create mock settings for testing."""
    store = MagicMock()
    store.max_record_chars = 3800

    telegram = MagicMock()
    telegram.chat_id = "-100primary"
    telegram.public_chat_id = "-100public"

    settings = MagicMock(spec=Settings)
    settings.store = store
    settings.telegram = telegram
    settings.store_chat_id.side_effect = lambda partition, chain_id: f"-100{partition}"
    return settings


@pytest.fixture(autouse=True)
def no_chain_pause(monkeypatch):
    monkeypatch.setattr("smart_money_tracker.maintenance.CHAIN_PAUSE_SECONDS", 0)


class TestSweepStore:
    """Tests for sweeping one loaded store."""

    @pytest.mark.asyncio
    async def test_evicts_by_partition_policy(self, substrate):
        """Signals expire after a week, well-scored aggregates after a month."""
        now = {"value": T0}
        store = RecordStore(substrate, TARGETS, clock=lambda: now["value"])
        store.stage(Partition.SIGNAL, "s1", {"outcome": "delivered"})
        store.stage(Partition.TOKEN, "good", {"average_score": 0.8})
        store.stage(Partition.WALLET, "weak", {"average_score": 0.1})
        store.stage(Partition.INDEX, INDEX_ANCHOR_KEY, IndexRecord(chain_id=501).to_dict())
        await store.flush()

        now["value"] = T0 + timedelta(days=8)
        evicted = await sweep_store(store, now["value"])

        assert evicted == {"index": 0, "signal": 1, "token": 0, "wallet": 1, "tracked": 0}
        assert store.get(Partition.TOKEN, "good") is not None
        assert store.get(Partition.SIGNAL, "s1") is None
        assert substrate.deletes == 2

    @pytest.mark.asyncio
    async def test_prunes_quiet_tracked_tokens(self, substrate):
        """Tracked tokens without a signal for 30 days leave the index."""
        index = IndexRecord(
            chain_id=501,
            tracked_tokens=[
                tracked("old", last_signal=T0 - timedelta(days=40)),
                tracked("fresh", last_signal=T0 - timedelta(days=1)),
            ],
        )
        store = RecordStore(substrate, TARGETS, clock=lambda: T0)
        store.stage(Partition.INDEX, INDEX_ANCHOR_KEY, index.to_dict())

        evicted = await sweep_store(store, T0)

        assert evicted["tracked"] == 1
        assert [t.token_address for t in read_index(substrate).tracked_tokens] == ["fresh"]


class TestSweepChains:
    """Tests for the multi-chain sweep job."""

    @pytest.mark.asyncio
    async def test_sweeps_each_chain(self, mock_settings, substrate):
        """Every requested chain is reported by name."""
        await seed_index(substrate, IndexRecord(chain_id=501))
        result = await sweep_chains(mock_settings, [501, 1], substrate=substrate)

        assert result["ok"]
        assert set(result["chains"]) == {"Solana", "Ethereum"}
        assert result["chains"]["Solana"]["evicted"]["index"] == 0

    @pytest.mark.asyncio
    async def test_unreachable_store_reported(self, mock_settings, substrate):
        """A chain whose anchor cannot be read is reported and skipped."""
        substrate.fail_reads = True
        result = await sweep_chains(mock_settings, [501], substrate=substrate)

        assert not result["ok"]
        assert "anchor" in result["chains"]["Solana"]["error"]

    @pytest.mark.asyncio
    async def test_missing_channel_does_not_stop_other_chains(self, mock_settings, substrate):
        """An unconfigured chain fails alone."""
        mock_settings.store_chat_id.side_effect = lambda partition, chain_id: (
            None if chain_id == 56 else f"-100{partition}"
        )
        result = await sweep_chains(mock_settings, [56, 501], substrate=substrate)

        assert not result["ok"]
        assert not result["chains"]["BSC"]["ok"]
        assert result["chains"]["Solana"]["ok"]


class TestRefreshPrices:
    """Tests for the tracked-token price refresh."""

    @pytest.mark.asyncio
    async def test_updates_price_marks(self, mock_settings, substrate):
        """Fresh quotes move current, peak and low marks in the index."""
        await seed_index(
            substrate,
            IndexRecord(
                chain_id=501,
                tracked_tokens=[
                    tracked(SOL_TOKEN, last_signal=T0),
                    tracked("Unquoted111", last_signal=T0),
                ],
            ),
        )
        prices = AsyncMock()
        prices.get_token_prices.return_value = {SOL_TOKEN.lower(): TokenPrice(price_usd=0.003)}

        summary = await refresh_prices(
            mock_settings,
            501,
            substrate=substrate,
            prices=prices,
            clock=lambda: T0 + timedelta(hours=1),
        )

        assert summary.ok
        assert summary.tracked == 2
        assert summary.updated == 1
        assert summary.new_peaks == 1
        assert summary.new_lows == 0
        prices.get_token_prices.assert_awaited_once_with(501, [SOL_TOKEN, "Unquoted111"])

        refreshed = read_index(substrate).tracked_tokens[0]
        assert refreshed.current_price == pytest.approx(0.003)
        assert refreshed.peak_price == pytest.approx(0.003)
        assert refreshed.price_updated_at == to_epoch_ms(T0 + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_no_index_is_a_noop(self, mock_settings, substrate):
        """Without an index there is nothing to refresh."""
        prices = AsyncMock()
        summary = await refresh_prices(mock_settings, 501, substrate=substrate, prices=prices)

        assert summary.ok
        assert summary.tracked == 0
        prices.get_token_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_unavailable(self, mock_settings, substrate):
        """An unreadable store fails the refresh without calling the price API."""
        substrate.fail_reads = True
        prices = AsyncMock()
        summary = await refresh_prices(mock_settings, 501, substrate=substrate, prices=prices)

        assert not summary.ok
        assert summary.error
        prices.get_token_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_updates_token_aggregate(self, mock_settings, substrate):
        """The matching token record gets the fresh price too."""
        token = make_token(SOL_TOKEN, handle=11)
        store = build_store(mock_settings, 501, substrate, clock=lambda: T0)
        store.stage(Partition.TOKEN, token.key, token.to_dict())
        store.stage(
            Partition.INDEX,
            INDEX_ANCHOR_KEY,
            IndexRecord(chain_id=501, tracked_tokens=[tracked(SOL_TOKEN, last_signal=T0)]).to_dict(),
        )
        await store.flush()

        prices = AsyncMock()
        prices.get_token_prices.return_value = {SOL_TOKEN.lower(): TokenPrice(price_usd=0.004)}
        summary = await refresh_prices(mock_settings, 501, substrate=substrate, prices=prices, clock=lambda: T0)

        assert summary.updated == 1
        refreshed = TokenAggregate.from_dict(read_records(substrate, "-100token")[f"#{token.key}"])
        assert refreshed.current_price == pytest.approx(0.004)
        assert refreshed.peak_price == pytest.approx(0.004)
        assert refreshed.primary_handle == 11


class TestSweepAfterRestart:
    """Tests for sweeping records written by an earlier process."""

    async def seed(self, mock_settings, substrate) -> None:
        store = build_store(mock_settings, 501, substrate, clock=lambda: T0)
        store.stage(Partition.SIGNAL, "s1", {"outcome": "delivered"})
        store.stage(Partition.TOKEN, "good", {"average_score": 0.8})
        store.stage(Partition.TOKEN, "weak", {"average_score": 0.1})
        store.stage(Partition.WALLET, "w", {"average_score": 0.9})
        store.stage(Partition.INDEX, INDEX_ANCHOR_KEY, IndexRecord(chain_id=501).to_dict())
        await store.flush()

    @pytest.mark.asyncio
    async def test_fresh_store_sweeps_short_retention(self, mock_settings, substrate):
        """A new process evicts week-old signals and weak aggregates."""
        await self.seed(mock_settings, substrate)
        now = T0 + timedelta(days=8)

        store = build_store(mock_settings, 501, substrate, clock=lambda: now)
        assert await store.load(Partition.INDEX)
        evicted = await sweep_store(store, now)

        assert evicted == {"index": 0, "signal": 1, "token": 1, "wallet": 0, "tracked": 0}
        assert substrate.deletes == 2
        assert substrate.messages["-100signal"] == {}
        assert set(read_records(substrate, "-100token")) == {"#good"}
        assert set(substrate.directory()["stores"]["501"]["token"]) == {"good"}

    @pytest.mark.asyncio
    async def test_fresh_store_sweeps_long_retention(self, mock_settings, substrate):
        """After a month the well-scored aggregates go as well."""
        await self.seed(mock_settings, substrate)
        now = T0 + timedelta(days=31)

        store = build_store(mock_settings, 501, substrate, clock=lambda: now)
        await store.load(Partition.INDEX)
        evicted = await sweep_store(store, now)

        assert evicted == {"index": 0, "signal": 1, "token": 2, "wallet": 1, "tracked": 0}
        assert substrate.messages["-100token"] == {}
        assert substrate.messages["-100wallet"] == {}
        assert "main" in substrate.directory()["stores"]["501"]["index"]


class TestStageIndex:
    """Tests for fitting the chain index under the record ceiling."""

    def test_full_index_fits(self):
        """An index at capacity with long addresses fits without trimming."""
        store = RecordStore(substrate=FakeSubstrate(), targets=TARGETS)
        index = full_index()

        assert stage_index(store, index) == 0
        assert len(index.seen) == SEEN_SIGNALS_MAX
        assert len(index.tracked_tokens) == TRACKED_TOKENS_MAX

    def test_oldest_seen_keys_dropped_first(self):
        """A tighter ceiling costs the oldest dedup keys only."""
        store = RecordStore(FakeSubstrate(), TARGETS, config=RecordStoreConfig(max_record_chars=3000))
        index = full_index()

        dropped = stage_index(store, index)

        assert dropped > 0
        assert len(index.seen) == SEEN_SIGNALS_MAX - dropped
        assert "1:1766123456000:0" not in index.seen
        assert "1:1766123456099:0" in index.seen
        assert len(index.tracked_tokens) == TRACKED_TOKENS_MAX
        assert IndexRecord.from_dict(store.get(Partition.INDEX, INDEX_ANCHOR_KEY)).seen == index.seen

    def test_oldest_tracked_tokens_dropped_next(self):
        """Past the seen floor, the oldest tracked tokens go before top performers."""
        store = RecordStore(FakeSubstrate(), TARGETS, config=RecordStoreConfig(max_record_chars=1200))
        index = full_index()
        addresses = [t.token_address for t in index.tracked_tokens]

        stage_index(store, index)

        remaining = [t.token_address for t in index.tracked_tokens]
        assert len(index.seen) == SEEN_SIGNALS_FLOOR
        assert 0 < len(remaining) < TRACKED_TOKENS_MAX
        assert remaining == addresses[-len(remaining) :]
        assert len(index.top_performers) == TOP_PERFORMERS_MAX

    def test_unfittable_index_raises(self):
        """A ceiling below the empty index size is rejected."""
        store = RecordStore(FakeSubstrate(), TARGETS, config=RecordStoreConfig(max_record_chars=50))

        with pytest.raises(RecordTooLarge):
            stage_index(store, full_index())


class TestPublishLeaderboard:
    """Tests for the leaderboard job."""

    async def seed(self, mock_settings, substrate) -> WalletAggregate:
        wallet = WalletAggregate(
            wallet_address="WaLLet1111111111111111111111111111111111111",
            last_seen=to_epoch_ms(T0),
            appearance_count=3,
            average_score=0.9,
        )
        index = IndexRecord(
            chain_id=501,
            top_performers=[TopPerformer(wallet=wallet.key, average_score=0.9, appearances=3)],
        )
        store = build_store(mock_settings, 501, substrate, clock=lambda: T0)
        store.stage(Partition.INDEX, INDEX_ANCHOR_KEY, index.to_dict())
        store.stage(Partition.WALLET, wallet.key, wallet.to_dict())
        for token in (
            make_token(SOL_TOKEN, handle=11, first=0.001, peak=0.003),
            make_token("Undelivered1111111111111111111111111111111", handle=None),
        ):
            store.stage(Partition.TOKEN, token.key, token.to_dict())
        await store.flush()
        return wallet

    @pytest.mark.asyncio
    async def test_sends_then_edits_boards(self, mock_settings, substrate):
        """The first run posts both boards, later runs edit them in place."""
        wallet = await self.seed(mock_settings, substrate)
        telegram = AsyncMock()
        telegram.send_text.side_effect = [21, 22]

        summary = await publish_leaderboard(
            mock_settings, 501, substrate=substrate, telegram=telegram, clock=lambda: T0
        )

        assert summary.ok
        assert (summary.primary_handle, summary.public_handle) == (21, 22)
        assert summary.wallets == 1
        assert summary.tokens == 1
        (primary_chat, primary), (public_chat, public) = [c.args[:2] for c in telegram.send_text.await_args_list]
        assert (primary_chat, public_chat) == ("-100primary", "-100public")
        assert "3.0x" in primary
        assert f"https://solscan.io/account/{wallet.wallet_address}" in primary
        assert "solscan.io/account/" not in public
        assert read_records(substrate, "-100index")[f"#{LEADERBOARD_KEY}"]["primary"] == 21

        telegram.reset_mock()
        again = await publish_leaderboard(
            mock_settings, 501, substrate=substrate, telegram=telegram, clock=lambda: T0
        )

        assert (again.primary_handle, again.public_handle) == (21, 22)
        telegram.send_text.assert_not_awaited()
        primary_edit = telegram.edit_text.await_args_list[0]
        assert primary_edit.args[:2] == ("-100primary", 21)
        assert primary_edit.kwargs == {"parse_mode": "HTML"}

    @pytest.mark.asyncio
    async def test_store_unavailable(self, mock_settings, substrate):
        """Nothing is posted when the store cannot be read."""
        substrate.fail_reads = True
        telegram = AsyncMock()

        summary = await publish_leaderboard(mock_settings, 501, substrate=substrate, telegram=telegram)

        assert not summary.ok
        assert summary.error
        telegram.send_text.assert_not_awaited()

"""Tests for the token security client."""

from unittest.mock import AsyncMock, patch

import pytest

from smart_money_tracker.clients.http import UpstreamFetchError, UpstreamTransientError
from smart_money_tracker.clients.security import SecurityClient, evaluate_goplus, evaluate_rugcheck
from smart_money_tracker.models import SecurityStatus

EVM_TOKEN = "0xAbCdEf0000000000000000000000000000000001"
SOL_TOKEN = "So1TokenMint1111111111111111111111111111111"


def goplus_entry(**overrides) -> dict:
    """A clean GoPlus token_security entry."""
    entry = {
        "is_honeypot": "0",
        "is_open_source": "1",
        "is_proxy": "0",
        "is_mintable": "0",
        "can_take_back_ownership": "0",
        "owner_change_balance": "0",
        "buy_tax": "0",
        "sell_tax": "0",
    }
    entry.update(overrides)
    return entry


def rugcheck_report(*, score: int = 10, lp_locked: float = 100.0, **overrides) -> dict:
    """A clean RugCheck report."""
    report = {
        "rugged": False,
        "score_normalised": score,
        "token": {"mintAuthority": None, "freezeAuthority": None},
        "markets": [{"lp": {"lpLockedPct": lp_locked}}],
        "risks": [],
    }
    report.update(overrides)
    return report


class TestEvaluateGoPlus:
    """Tests for EVM risk scoring."""

    def test_clean_token_is_safe(self) -> None:
        report = evaluate_goplus(goplus_entry())
        assert report.status == SecurityStatus.SAFE
        assert report.risk_score == 0

    def test_honeypot_is_scam(self) -> None:
        """A honeypot is a scam regardless of the rest."""
        report = evaluate_goplus(goplus_entry(is_honeypot="1"))
        assert report.status == SecurityStatus.SCAM
        assert report.risk_score == 100
        assert "HONEYPOT" in report.flags

    def test_risk_band(self) -> None:
        """Closed source plus a proxy lands in the risk band."""
        report = evaluate_goplus(goplus_entry(is_open_source="0", is_proxy="1"))
        assert report.risk_score == 50
        assert report.status == SecurityStatus.RISK

    def test_scam_threshold(self) -> None:
        """Closed source plus high tax reaches the scam threshold."""
        report = evaluate_goplus(goplus_entry(is_open_source="0", sell_tax="25"))
        assert report.risk_score == 60
        assert report.status == SecurityStatus.SCAM

    def test_score_capped(self) -> None:
        """Scores never exceed 100."""
        report = evaluate_goplus(
            goplus_entry(is_open_source="0", can_take_back_ownership="1", owner_change_balance="1")
        )
        assert report.risk_score == 100


class TestEvaluateRugCheck:
    """Tests for Solana risk scoring."""

    def test_clean_token_is_safe(self) -> None:
        assert evaluate_rugcheck(rugcheck_report()).status == SecurityStatus.SAFE

    def test_rugged_is_scam(self) -> None:
        report = evaluate_rugcheck(rugcheck_report(rugged=True))
        assert report.status == SecurityStatus.SCAM
        assert "RUGGED" in report.flags

    def test_high_score_with_unlocked_lp_is_scam(self) -> None:
        """Above 50 with almost no locked liquidity is a scam."""
        assert evaluate_rugcheck(rugcheck_report(score=55, lp_locked=2.0)).status == SecurityStatus.SCAM

    def test_mint_authority_is_risk(self) -> None:
        report = evaluate_rugcheck(rugcheck_report(token={"mintAuthority": "abc", "freezeAuthority": None}))
        assert report.status == SecurityStatus.RISK
        assert "Mintable" in report.flags

    def test_low_lock_flag_and_danger_risks(self) -> None:
        """Partial LP locks and danger-level risks are reported as flags."""
        report = evaluate_rugcheck(
            rugcheck_report(
                lp_locked=50.0,
                risks=[{"name": "Top holder", "level": "danger"}, {"name": "Low volume", "level": "warn"}],
            )
        )
        assert "Low LP Lock (50.0%)" in report.flags
        assert "Top holder" in report.flags
        assert "Low volume" not in report.flags


class TestSecurityClient:
    """Tests for SecurityClient.fetch_security."""

    @pytest.mark.asyncio
    async def test_unsupported_chain_unknown_without_request(self) -> None:
        client = SecurityClient()
        with patch.object(client, "_request_json", new_callable=AsyncMock) as request:
            report = await client.fetch_security(999, EVM_TOKEN)

        assert report.status == SecurityStatus.UNKNOWN
        request.assert_not_called()

    @pytest.mark.asyncio
    async def test_goplus_lookup_by_lowercase_address(self) -> None:
        """GoPlus results are keyed by the lowercase address."""
        client = SecurityClient()
        payload = {"result": {EVM_TOKEN.lower(): goplus_entry(is_honeypot="1")}}
        with patch.object(client, "_request_json", new_callable=AsyncMock, return_value=payload) as request:
            report = await client.fetch_security(56, EVM_TOKEN)

        assert report.status == SecurityStatus.SCAM
        assert request.await_args.args[1].endswith("/api/v1/token_security/56")

    @pytest.mark.asyncio
    async def test_rate_limited_then_succeeds(self) -> None:
        """429 responses are retried with linear backoff."""
        client = SecurityClient(retry_delay_seconds=0)
        responses = [UpstreamTransientError("HTTP 429", status=429), rugcheck_report()]
        with patch.object(client, "_request_json", new_callable=AsyncMock, side_effect=responses) as request:
            report = await client.fetch_security(501, SOL_TOKEN)

        assert report.status == SecurityStatus.SAFE
        assert request.await_count == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self) -> None:
        """Non-retryable errors fail on the first attempt."""
        client = SecurityClient(retry_delay_seconds=0)
        with patch.object(
            client,
            "_request_json",
            new_callable=AsyncMock,
            side_effect=UpstreamFetchError("HTTP 404", status=404),
        ) as request:
            with pytest.raises(UpstreamFetchError):
                await client.fetch_security(501, SOL_TOKEN)

        assert request.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self) -> None:
        """Three transient failures raise UpstreamFetchError."""
        client = SecurityClient(retry_delay_seconds=0)
        with patch.object(
            client,
            "_request_json",
            new_callable=AsyncMock,
            side_effect=UpstreamTransientError("HTTP 429", status=429),
        ) as request:
            with pytest.raises(UpstreamFetchError, match="Max retries"):
                await client.fetch_security(501, SOL_TOKEN)

        assert request.await_count == 3

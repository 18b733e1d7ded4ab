"""Token security scan client.

EVM chains are scanned with GoPlus, Solana with RugCheck. Both reports are
normalized into a ``SecurityReport`` with a SAFE / RISK / SCAM verdict.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from smart_money_tracker.clients.http import (
    JsonHttpClient,
    UpstreamFetchError,
    UpstreamTransientError,
)
from smart_money_tracker.models import SecurityReport, SecurityStatus

logger = logging.getLogger(__name__)

DEFAULT_GOPLUS_URL = "https://api.gopluslabs.io"
DEFAULT_RUGCHECK_URL = "https://api.rugcheck.xyz"

SOLANA_CHAIN_ID = 501
EVM_CHAIN_IDS = frozenset({1, 56, 8453})

DEFAULT_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0

# GoPlus risk weights
HONEYPOT_SCORE = 100
NOT_OPEN_SOURCE_SCORE = 30
PROXY_SCORE = 20
MINTABLE_SCORE = 20
TAKE_BACK_OWNERSHIP_SCORE = 50
OWNER_CHANGE_BALANCE_SCORE = 40
HIGH_TAX_SCORE = 30
HIGH_TAX_PCT = 10.0

EVM_SCAM_SCORE = 60
EVM_RISK_SCORE = 40

# RugCheck thresholds (score_normalised, 0-100, higher is worse)
SVM_SCAM_SCORE = 60
SVM_SCAM_SCORE_LOW_LP = 50
SVM_SCAM_LP_LOCKED_PCT = 5.0
SVM_RISK_SCORE = 40
SVM_RISK_LP_LOCKED_PCT = 20.0
SVM_LOW_LP_FLAG_PCT = 90.0


def _flag(value: Any) -> bool:
    return str(value) == "1"


def _pct(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def evaluate_goplus(result: dict[str, Any]) -> SecurityReport:
    """Score a GoPlus token_security entry."""
    flags: list[str] = []
    risk_score = 0

    is_honeypot = _flag(result.get("is_honeypot"))
    if is_honeypot:
        risk_score = HONEYPOT_SCORE
        flags.append("HONEYPOT")
    if not _flag(result.get("is_open_source")):
        risk_score += NOT_OPEN_SOURCE_SCORE
        flags.append("Not Open Source")
    if _flag(result.get("is_proxy")):
        risk_score += PROXY_SCORE
        flags.append("Proxy")
    if _flag(result.get("is_mintable")):
        risk_score += MINTABLE_SCORE
        flags.append("Mintable")
    if _flag(result.get("can_take_back_ownership")):
        risk_score += TAKE_BACK_OWNERSHIP_SCORE
        flags.append("Can Take Back Ownership")
    if _flag(result.get("owner_change_balance")):
        risk_score += OWNER_CHANGE_BALANCE_SCORE
        flags.append("Owner Change Balance")

    buy_tax = _pct(result.get("buy_tax"))
    sell_tax = _pct(result.get("sell_tax"))
    if buy_tax > HIGH_TAX_PCT or sell_tax > HIGH_TAX_PCT:
        risk_score += HIGH_TAX_SCORE
        flags.append(f"High Tax (B:{buy_tax:g}% S:{sell_tax:g}%)")

    risk_score = min(100, risk_score)

    if is_honeypot or risk_score >= EVM_SCAM_SCORE:
        status = SecurityStatus.SCAM
    elif risk_score >= EVM_RISK_SCORE:
        status = SecurityStatus.RISK
    else:
        status = SecurityStatus.SAFE
    return SecurityReport(status=status, risk_score=risk_score, flags=tuple(flags), provider="goplus")


def evaluate_rugcheck(report: dict[str, Any]) -> SecurityReport:
    """Score a RugCheck token report."""
    flags: list[str] = []
    rugged = report.get("rugged") is True
    risk_score = int(_pct(report.get("score_normalised")))
    if rugged:
        flags.append("RUGGED")

    token = report.get("token") or {}
    is_mintable = token.get("mintAuthority") is not None
    is_freezable = token.get("freezeAuthority") is not None
    if is_mintable:
        flags.append("Mintable")
    if is_freezable:
        flags.append("Freezable")

    lp_locked_pct = 0.0
    markets = report.get("markets") or []
    if markets and isinstance(markets[0], dict):
        lp = markets[0].get("lp") or {}
        lp_locked_pct = _pct(lp.get("lpLockedPct"))
    if lp_locked_pct < SVM_LOW_LP_FLAG_PCT:
        flags.append(f"Low LP Lock ({lp_locked_pct:.1f}%)")

    for risk in report.get("risks") or []:
        if isinstance(risk, dict) and risk.get("level") == "danger" and risk.get("name"):
            flags.append(str(risk["name"]))

    if rugged:
        status = SecurityStatus.SCAM
    elif risk_score > SVM_SCAM_SCORE or (
        risk_score > SVM_SCAM_SCORE_LOW_LP and lp_locked_pct < SVM_SCAM_LP_LOCKED_PCT
    ):
        status = SecurityStatus.SCAM
    elif (
        risk_score > SVM_RISK_SCORE
        or is_mintable
        or is_freezable
        or lp_locked_pct < SVM_RISK_LP_LOCKED_PCT
    ):
        status = SecurityStatus.RISK
    else:
        status = SecurityStatus.SAFE
    return SecurityReport(status=status, risk_score=risk_score, flags=tuple(flags), provider="rugcheck")


class SecurityClient(JsonHttpClient):
    """Fetches and normalizes token security reports."""

    def __init__(
        self,
        *,
        goplus_url: str = DEFAULT_GOPLUS_URL,
        rugcheck_url: str = DEFAULT_RUGCHECK_URL,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float = 10.0,
        attempts: int = DEFAULT_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        super().__init__(session=session, timeout_seconds=timeout_seconds, headers={"Accept": "application/json"})
        self._goplus_url = goplus_url.rstrip("/")
        self._rugcheck_url = rugcheck_url.rstrip("/")
        self._attempts = attempts
        self._retry_delay = retry_delay_seconds

    async def _get_with_retry(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """GET with linear backoff on transient errors; 4xx other than 429 fail fast."""
        last_error: UpstreamFetchError | None = None
        for attempt in range(self._attempts):
            try:
                return await self._request_json("GET", url, params=params)
            except UpstreamTransientError as e:
                last_error = e
                if attempt < self._attempts - 1:
                    await asyncio.sleep(self._retry_delay * (attempt + 1))
        raise UpstreamFetchError(f"Max retries exceeded for {url}: {last_error}")

    async def fetch_security(self, chain_id: int, token_address: str) -> SecurityReport:
        """Fetch a normalized security report.

        Unsupported chains return an UNKNOWN report without a request.

        Raises:
            UpstreamFetchError: If the provider cannot be reached or answers
                with an unusable payload.
        """
        if chain_id == SOLANA_CHAIN_ID:
            data = await self._get_with_retry(f"{self._rugcheck_url}/v1/tokens/{token_address}/report")
            if not isinstance(data, dict):
                raise UpstreamFetchError("Unexpected RugCheck payload")
            return evaluate_rugcheck(data)

        if chain_id in EVM_CHAIN_IDS:
            data = await self._get_with_retry(
                f"{self._goplus_url}/api/v1/token_security/{chain_id}",
                params={"contract_addresses": token_address},
            )
            result = (data or {}).get("result") or {}
            entry = result.get(token_address.lower())
            if not isinstance(entry, dict):
                raise UpstreamFetchError(f"No GoPlus result for {token_address}")
            return evaluate_goplus(entry)

        logger.debug("No security provider for chain %s", chain_id)
        return SecurityReport.unknown()

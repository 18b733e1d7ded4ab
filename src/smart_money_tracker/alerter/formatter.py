"""Signal alert formatter for Telegram delivery.

This module turns a scored signal into HTML messages: a detailed variant
for the primary chat and a redacted variant (no wallet identities) for the
public chat. It also renders the per-chain leaderboard published by the
maintenance job.
"""

from __future__ import annotations

import statistics
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Literal

from smart_money_tracker.alerter.models import FormattedAlert, InlineButtons
from smart_money_tracker.config import CHAIN_NAMES
from smart_money_tracker.models import ParticipantEntry, SecurityReport, SecurityStatus, Signal
from smart_money_tracker.store.schemas import TokenAggregate, WalletAggregate

SIGNAL_LABELS = {
    "1": "Smart Money",
    "2": "Influencers",
    "3": "Whales",
}

CHAIN_EXPLORERS = {
    501: ("https://solscan.io/account/", "https://solscan.io/token/"),
    1: ("https://etherscan.io/address/", "https://etherscan.io/token/"),
    56: ("https://bscscan.com/address/", "https://bscscan.com/token/"),
    8453: ("https://basescan.org/address/", "https://basescan.org/token/"),
}

DEX_LINKS = {
    501: ("https://www.dextools.io/app/en/solana/pair-explorer/", "https://dexscreener.com/solana/"),
    1: ("https://www.dextools.io/app/en/ether/pair-explorer/", "https://dexscreener.com/ethereum/"),
    56: ("https://www.dextools.io/app/en/bnb/pair-explorer/", "https://dexscreener.com/bsc/"),
    8453: ("https://www.dextools.io/app/en/base/pair-explorer/", "https://dexscreener.com/base/"),
}

SIGNAL_LINK_URL = "https://t.me/#{batch_id}-{batch_index}"
TWITTER_URL = "https://twitter.com/{handle}"

# Rating thresholds on the -2..+2 entry score scale
EXCELLENT_THRESHOLD = 1.5
GOOD_THRESHOLD = 0.5
NEUTRAL_THRESHOLD = -0.5
WEAK_THRESHOLD = -1.5

STANDOUT_SCORE = 0.5
PRICE_CHANGE_DISPLAY_PCT = 10.0

LEADERBOARD_SIZE = 10
# A delivered token counts as a hit once its peak reaches this multiple
HIT_MULTIPLE = 2.0

SECURITY_BADGES = {
    SecurityStatus.SAFE: "🛡 Safe",
    SecurityStatus.RISK: "⚠️ Risk",
    SecurityStatus.SCAM: "☠️ Scam",
    SecurityStatus.UNKNOWN: "❔ Unchecked",
}

WalletRater = Callable[[str], int | None]


def truncate_address(address: str, head: int = 6, tail: int = 4) -> str:
    """Truncate an address to ``abcdef...wxyz`` format."""
    if len(address) <= head + tail + 3:
        return address
    return f"{address[:head]}...{address[-tail:]}"


def escape_html(text: str) -> str:
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def format_usd(amount: float) -> str:
    """Signed compact USD amount, e.g. ``+$1.2K`` or ``-$3.4M``."""
    sign = "-" if amount < 0 else "+"
    value = abs(amount)
    if value >= 1_000_000:
        return f"{sign}${value / 1_000_000:.1f}M"
    if value >= 1_000:
        return f"{sign}${value / 1_000:.1f}K"
    if value >= 1:
        return f"{sign}${value:.0f}"
    return f"{sign}${value:.2f}"


def _as_float(value: str | float | None) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def format_pct(value: float) -> str:
    return f"{'+' if value >= 0 else ''}{value:.1f}%"


def format_price(price: float) -> str:
    """Unsigned USD price with enough precision for micro-cap tokens."""
    if price <= 0:
        return "$0"
    if price >= 1:
        return f"${price:,.2f}"
    return f"${price:.4g}" if price >= 0.0001 else f"${price:.3e}"


def format_age(created_at: datetime | None, now: datetime) -> str:
    if created_at is None:
        return "?"
    hours = max(0.0, (now - created_at).total_seconds() / 3600)
    if hours < 1:
        return f"{int(hours * 60)}m"
    if hours < 24:
        return f"{hours:.1f}h"
    return f"{hours / 24:.1f}d"


def format_utc(now: datetime) -> str:
    return now.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_multiple(multiple: float) -> str:
    return f"{multiple:.1f}x"


def score_emoji(score: float) -> str:
    if score >= EXCELLENT_THRESHOLD:
        return "🔵"
    if score >= GOOD_THRESHOLD:
        return "🟢"
    if score >= NEUTRAL_THRESHOLD:
        return "⚪️"
    if score >= WEAK_THRESHOLD:
        return "🟠"
    return "🔴"


def signal_rating(score: float) -> str:
    """Human-readable rating of a mean entry score."""
    if score >= EXCELLENT_THRESHOLD:
        return "Excellent"
    if score >= GOOD_THRESHOLD:
        return "Good"
    if score >= NEUTRAL_THRESHOLD:
        return "Neutral"
    if score >= WEAK_THRESHOLD:
        return "Weak"
    return "Poor"


class AlertFormatter:
    """Formats scored signals into Telegram HTML alerts.

    Supports two verbosity levels:
    - compact: one line per wallet (address and entry score)
    - detailed: adds provider PnL / ROI / win rate per wallet

    ``wallet_rater`` optionally maps a wallet address to a 0-5 star rating
    shown next to the wallet.
    """

    def __init__(
        self,
        verbosity: Literal["compact", "detailed"] = "detailed",
        *,
        wallet_rater: WalletRater | None = None,
    ) -> None:
        self.verbosity = verbosity
        self._wallet_rater = wallet_rater

    def format(
        self,
        signal: Signal,
        participants: Sequence[ParticipantEntry],
        *,
        average_score: float,
        history: TokenAggregate | None = None,
        security: SecurityReport | None = None,
        now: datetime | None = None,
    ) -> FormattedAlert:
        """Render a signal.

        Args:
            signal: The candidate being delivered.
            participants: Wallets to display (new wallets only).
            average_score: Mean entry score of the scored participants.
            history: Token aggregate from before this signal, if any.
            security: Security scan result, if the token was scanned.
            now: Render time (defaults to the current UTC time).
        """
        now = now or datetime.now(UTC)
        header = self._header(signal, average_score)
        token = self._token_block(signal, history, now)
        stats = self._stats_block(signal, security)
        footer = self._footer(signal, now)

        wallets = "".join(self._wallet_block(signal.chain_id, p) for p in participants)
        detailed = f"{header}\n\n{token}\n\n{stats}\n{wallets}\n{footer}"

        hidden = len(participants)
        redacted_wallets = f"👀 {hidden} new wallet{'s' if hidden != 1 else ''} {score_emoji(average_score)} {signal_rating(average_score)}"
        redacted = f"{header}\n\n{token}\n\n{stats}\n{redacted_wallets}\n\n{footer}"

        caption = f"{header}\n\n{token}\n\n{stats}"

        return FormattedAlert(
            detailed=detailed,
            redacted=redacted,
            caption=caption,
            buttons=self._buttons(signal),
        )

    def format_leaderboard(
        self,
        chain_id: int,
        wallets: Sequence[WalletAggregate],
        tokens: Sequence[TokenAggregate],
        *,
        now: datetime | None = None,
        redacted: bool = False,
    ) -> str:
        """Render a chain's top wallets, top tokens and gains summary.

        Args:
            chain_id: Chain the board belongs to.
            wallets: Wallets in rank order; the first ``LEADERBOARD_SIZE`` are shown.
            tokens: Delivered tokens in rank order. Gains cover all of them.
            now: Render time (defaults to the current UTC time).
            redacted: Show truncated wallet addresses without links, for the
                public chat.
        """
        now = now or datetime.now(UTC)
        chain = CHAIN_NAMES.get(chain_id, str(chain_id))
        wallet_url, token_url = CHAIN_EXPLORERS.get(chain_id, CHAIN_EXPLORERS[501])

        lines = [f"#{chain} 🏆 <b>Leaderboard</b>", "", "👛 <b>Top Wallets</b>"]
        if not wallets:
            lines.append("<i>No wallets tracked yet</i>")
        for rank, wallet in enumerate(wallets[:LEADERBOARD_SIZE], start=1):
            score = wallet.average_score
            name = truncate_address(wallet.wallet_address)
            if not redacted:
                name = f'<a href="{wallet_url}{wallet.wallet_address}">{name}</a>'
            lines.append(
                f"<code>{rank}. │ {score_emoji(score)} {score:+.2f} ({wallet.appearance_count}) │ "
                f"{wallet.consistency}% │ </code>{name}"
            )

        lines += ["", "🔥 <b>Top Tokens</b>"]
        if not tokens:
            lines.append("<i>No tokens tracked yet</i>")
        for rank, token in enumerate(tokens[:LEADERBOARD_SIZE], start=1):
            lines.append(
                f"<code>{rank}. │ {format_multiple(token.peak_multiple)} │ 🚨 {token.signal_count} │ "
                f"{score_emoji(token.average_score)} {token.average_score:+.2f} │ </code>"
                f'<a href="{token_url}{token.token_address}">{escape_html(token.symbol)}</a>'
            )

        multiples = [t.peak_multiple for t in tokens]
        if multiples:
            hits = sum(1 for m in multiples if m >= HIT_MULTIPLE)
            lines += [
                "",
                "📊 <b>Gains</b>",
                f"├ Signals: <b>{len(multiples)}</b>",
                f"├ Hit Rate: <b>{hits}</b> ({hits / len(multiples) * 100:.0f}%)",
                f"├ Median: <b>{format_multiple(statistics.median(multiples))}</b>",
                f"└ Avg: <b>{format_multiple(statistics.fmean(multiples))}</b>",
            ]

        lines += ["", f"<i>{format_utc(now)}</i>"]
        return "\n".join(lines)

    def _header(self, signal: Signal, average_score: float) -> str:
        chain = CHAIN_NAMES.get(signal.chain_id, str(signal.chain_id))
        label = SIGNAL_LABELS.get(signal.signal_label, "Signal")
        return f"#{chain} 🚨 <b>{label}</b> {score_emoji(average_score)} {average_score:.2f}"

    def _token_block(self, signal: Signal, history: TokenAggregate | None, now: datetime) -> str:
        _, token_url = CHAIN_EXPLORERS.get(signal.chain_id, CHAIN_EXPLORERS[501])
        dextools, dexscreener = DEX_LINKS.get(signal.chain_id, DEX_LINKS[501])
        address = signal.token_address

        line = (
            f'🪙 <b><a href="{token_url}{address}">{escape_html(signal.token_name)}</a></b> '
            f"(<code>{escape_html(signal.token_symbol)}</code>)"
        )
        if history is not None and history.signal_count > 0:
            line += f" 🔄 <b>{history.signal_count + 1}x</b>"
            if history.first_price > 0:
                change = (signal.price_at_signal / history.first_price - 1) * 100
                if abs(change) >= PRICE_CHANGE_DISPLAY_PCT:
                    emoji = "🚀" if change >= 100 else "📈" if change >= 0 else "📉"
                    line += f" {emoji}{'+' if change >= 0 else ''}{change:.0f}%"

        return (
            f"{line}\n"
            f"<code>{address}</code>\n"
            f"Age: {format_age(signal.token_created_at, now)} - "
            f'<a href="{dextools}{address}">DexT</a> | '
            f'<a href="{dexscreener}{address}">DexS</a>'
        )

    def _stats_block(self, signal: Signal, security: SecurityReport | None) -> str:
        count = signal.participant_count
        lines = [
            f"MCap: {format_usd(signal.mcap_at_signal)} | Vol: {format_usd(signal.volume)} | "
            f"{format_price(signal.price_at_signal)}",
            f"{count} wallet{'s' if count != 1 else ''} {signal.max_multiplier}x "
            f"({format_pct(_as_float(signal.max_pct_gain))})",
        ]
        if security is not None:
            badge = SECURITY_BADGES[security.status]
            if security.flags and security.status != SecurityStatus.SAFE:
                badge += f": {escape_html(', '.join(security.flags[:3]))}"
            lines.append(badge)
        return "\n".join(lines)

    def _wallet_block(self, chain_id: int, participant: ParticipantEntry) -> str:
        wallet_url, _ = CHAIN_EXPLORERS.get(chain_id, CHAIN_EXPLORERS[501])
        address = participant.wallet_address
        line = f'\n<a href="{wallet_url}{address}">{truncate_address(address)}</a>'

        if participant.entry_score is not None:
            line += f" {score_emoji(participant.entry_score)} {participant.entry_score:.2f} avg"
            if participant.entry_score >= STANDOUT_SCORE:
                line += " ✨"
        if self._wallet_rater is not None:
            stars = self._wallet_rater(address)
            if stars:
                line += " " + "⭐" * min(stars, 5)
        if participant.kol_address and participant.twitter_handle:
            handle = participant.twitter_handle
            line += f' 🎤 <a href="{TWITTER_URL.format(handle=handle)}">@{escape_html(handle)}</a>'
        line += "\n"

        if self.verbosity == "detailed":
            line += (
                f"PnL {format_usd(participant.provider_pnl)} | "
                f"ROI {format_pct(participant.provider_roi)} | "
                f"WR {participant.provider_win_rate:.0f}%\n"
            )
        return line

    def _footer(self, signal: Signal, now: datetime) -> str:
        link = SIGNAL_LINK_URL.format(batch_id=signal.batch_id, batch_index=signal.batch_index)
        return f'<i><a href="{link}">{format_utc(now)}</a></i>'

    def _buttons(self, signal: Signal) -> InlineButtons:
        _, token_url = CHAIN_EXPLORERS.get(signal.chain_id, CHAIN_EXPLORERS[501])
        _, dexscreener = DEX_LINKS.get(signal.chain_id, DEX_LINKS[501])
        return [
            [
                {"text": "📊 Chart", "url": f"{dexscreener}{signal.token_address}"},
                {"text": "🔍 Explorer", "url": f"{token_url}{signal.token_address}"},
            ]
        ]

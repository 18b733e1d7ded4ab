"""Command line entry point.

Usage:
    python -m smart_money_tracker poll --chain 501
    python -m smart_money_tracker sweep --chain 501 --chain 1
    python -m smart_money_tracker refresh-prices --chain 501
    python -m smart_money_tracker leaderboard --chain 501
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from smart_money_tracker.config import CHAIN_NAMES, SUPPORTED_CHAINS, get_settings
from smart_money_tracker.maintenance import publish_leaderboard, refresh_prices, sweep_chains
from smart_money_tracker.pipeline import poll

logger = logging.getLogger(__name__)

CHAIN_HELP = ", ".join(f"{cid} {name}" for cid, name in CHAIN_NAMES.items())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smart_money_tracker",
        description="Poll smart-money signals, score wallet entries and deliver alerts",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    poll_parser = subparsers.add_parser("poll", help="Run one polling cycle for a chain")
    poll_parser.add_argument("--chain", type=int, required=True, choices=SUPPORTED_CHAINS, help=CHAIN_HELP)

    sweep_parser = subparsers.add_parser("sweep", help="Evict expired store records")
    sweep_parser.add_argument(
        "--chain",
        type=int,
        action="append",
        choices=SUPPORTED_CHAINS,
        help=f"Chain to sweep, repeatable (default: all). {CHAIN_HELP}",
    )

    refresh_parser = subparsers.add_parser("refresh-prices", help="Refresh tracked token prices")
    refresh_parser.add_argument("--chain", type=int, required=True, choices=SUPPORTED_CHAINS, help=CHAIN_HELP)

    board_parser = subparsers.add_parser("leaderboard", help="Publish the top wallets and tokens of a chain")
    board_parser.add_argument("--chain", type=int, required=True, choices=SUPPORTED_CHAINS, help=CHAIN_HELP)

    return parser


async def run(args: argparse.Namespace) -> dict[str, Any]:
    settings = get_settings()
    if args.command == "poll":
        return await poll(args.chain, settings)

    settings.validate_requirements(command=args.command)
    if args.command == "sweep":
        return await sweep_chains(settings, args.chain)
    if args.command == "leaderboard":
        return (await publish_leaderboard(settings, args.chain)).to_dict()
    summary = await refresh_prices(settings, args.chain)
    return summary.to_dict()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        result = asyncio.run(run(args))
    except ValueError as e:
        logger.error("%s", e)
        result = {"ok": False, "error": str(e)}

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    sys.exit(main())

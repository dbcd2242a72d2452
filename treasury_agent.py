"""
Treasury buyback-and-burn agent.

Usage:
    python treasury_agent.py            # one cycle
    python treasury_agent.py --watch    # a cycle every WATCH_INTERVAL_SECONDS
    python treasury_agent.py --check    # report balances and readiness only
    python treasury_agent.py --dry-run  # quote but never sign or send

Exit status: 0 done or below threshold, 1 cycle aborted, 2 bad configuration.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from core.config import TreasurySettings, load_treasury_settings
from core.errors import BuybackError, ConfigError, ExecutionError
from enrich.dexscreener import DexscreenerClient
from treasury.agent import TreasuryAgent

logger = logging.getLogger("treasury_agent")

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CONFIG = 2


def _setup_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for noisy in ("urllib3", "solana", "solders"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Treasury buyback-and-burn agent")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--watch", action="store_true", help="run a cycle every WATCH_INTERVAL_SECONDS")
    mode.add_argument("--check", action="store_true", help="report balances and readiness, submit nothing")
    p.add_argument("--dry-run", action="store_true", help="quote but do not sign or send")
    return p.parse_args(argv)


def run_once(agent: TreasuryAgent) -> int:
    try:
        report = agent.run_cycle()
    except ExecutionError as e:
        logger.error("Cycle aborted: %s%s", e, f" (tx {e.signature})" if e.signature else "")
        return EXIT_ABORTED
    except BuybackError as e:
        logger.error("Cycle aborted: %s", e)
        return EXIT_ABORTED
    logger.info("Cycle finished: %s", report.outcome.value)
    return EXIT_OK


def run_watch(agent: TreasuryAgent, interval: float, stop: threading.Event) -> int:
    logger.info("Watching every %.0fs", interval)
    while not stop.is_set():
        code = run_once(agent)
        if code != EXIT_OK:
            return code
        if stop.wait(interval):
            break
    logger.info("Stopped")
    return EXIT_OK


def run_check(agent: TreasuryAgent) -> int:
    price = DexscreenerClient().price_usd("solana", agent.settings.token_mint)
    try:
        report = agent.check(price_usd=price)
    except BuybackError as e:
        logger.error("Check failed: %s", e)
        return EXIT_ABORTED
    print(json.dumps(report, indent=2))
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    _setup_logging()
    args = _parse_args(argv)

    try:
        settings: TreasurySettings = load_treasury_settings()
        if args.dry_run:
            settings = dataclasses.replace(settings, dry_run=True)
        agent = TreasuryAgent.from_settings(settings)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG
    except BuybackError as e:
        logger.error("Startup failed: %s", e)
        return EXIT_ABORTED

    if args.check:
        return run_check(agent)
    if not args.watch:
        return run_once(agent)

    stop = threading.Event()

    def _on_signal(signum, frame):
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    return run_watch(agent, settings.watch_interval, stop)


if __name__ == "__main__":
    sys.exit(main())

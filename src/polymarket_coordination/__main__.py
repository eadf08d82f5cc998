"""Command-line entry point.

Loads trades from a JSON-lines file (one trade object per line) and prints
analysis results as JSON.

Examples:
    python -m polymarket_coordination analyze trades.jsonl 0xabc...
    python -m polymarket_coordination batch trades.jsonl 0xabc... 0xdef... --deadline 30
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

from polymarket_coordination.config import get_settings
from polymarket_coordination.detector.coordination import CoordinatedTradingDetector
from polymarket_coordination.detector.events import RedisStreamPublisher
from polymarket_coordination.ingestor.models import InvalidWalletAddressError

logger = logging.getLogger(__name__)


def _read_trades(path: Path) -> Iterator[dict[str, Any]]:
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed line %d in %s: %s", lineno, path, e)
                continue
            if isinstance(record, dict):
                yield record
            else:
                logger.warning("Skipping non-object line %d in %s", lineno, path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polymarket_coordination",
        description="Detect coordinated trading between prediction-market wallets",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Analyze one wallet against every related wallet")
    analyze.add_argument("trades", type=Path, metavar="FILE", help="JSON-lines trade file")
    analyze.add_argument("wallet", help="Wallet address to analyze")

    batch = sub.add_parser("batch", help="Analyze several wallets jointly")
    batch.add_argument("trades", type=Path, metavar="FILE", help="JSON-lines trade file")
    batch.add_argument("wallets", nargs="+", help="Wallet addresses to analyze")
    batch.add_argument("--deadline", type=float, default=None, help="Time budget in seconds")
    batch.add_argument("--workers", type=int, default=None, help="Worker threads (1 = inline)")
    batch.add_argument(
        "--within-inputs",
        action="store_true",
        help="Only pair the given wallets with each other",
    )

    parser.add_argument("--publish", action="store_true", help="Publish events to the configured Redis stream")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.debug("Effective settings: %s", settings.redacted_summary())

    detector = CoordinatedTradingDetector(settings.coordination)
    if args.publish:
        if not settings.events.enabled:
            logger.error("--publish requires EVENTS_REDIS_URL to be set")
            return 2
        detector.subscribe(
            RedisStreamPublisher.from_url(
                settings.events.redis_url,  # type: ignore[arg-type]
                stream_name=settings.events.stream_name,
                maxlen=settings.events.stream_maxlen,
            )
        )

    report = detector.add_trades(_read_trades(args.trades))
    logger.info("Loaded %d trades (%d rejected, %d duplicates)", report.accepted, report.rejected, report.duplicates)

    try:
        if args.command == "analyze":
            output = detector.analyze(args.wallet).to_dict()
        else:
            output = detector.batch_analyze(
                args.wallets,
                deadline_seconds=args.deadline,
                max_workers=args.workers,
                within_inputs=args.within_inputs,
            ).to_dict()
    except InvalidWalletAddressError as e:
        logger.error("%s", e)
        return 2

    json.dump(output, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())

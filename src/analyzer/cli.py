"""CLI entry-point for the POS Guardian analyzer.

Usage examples
--------------
# Replay a JSONL event export (in-memory store):
python -m src.analyzer --input data/events.jsonl

# Replay into a SQLite database:
python -m src.analyzer --input data/events.csv --db data/guardian.db

# Watch mode (tail a JSONL file written by the ingester):
python -m src.analyzer --input data/events_live.jsonl --watch
"""

from __future__ import annotations

import argparse
import sys

from src.analyzer.pipeline import run_pipeline, watch_pipeline
from src.shared.errors import ConfigError
from src.shared.logger import setup_logging


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pos-guardian",
        description="POS Guardian - evaluate store events, record alerts, notify owners",
    )
    p.add_argument(
        "--input",
        default="data/events.jsonl",
        help="Input file (CSV or JSONL). Format auto-detected by extension. "
             "Default: data/events.jsonl",
    )
    p.add_argument(
        "--config-dir",
        default="config",
        help="Directory with settings.yaml and rules.yaml. Default: config/",
    )
    p.add_argument(
        "--db",
        default=None,
        help="SQLite database path. If omitted, an in-memory store is used.",
    )
    p.add_argument(
        "--watch",
        action="store_true",
        default=False,
        help="Enable watch mode: tail the input JSONL and ingest new lines as they appear.",
    )
    p.add_argument(
        "--poll-interval-ms",
        type=int,
        default=1000,
        help="Poll interval for watch mode, ms (default: 1000).",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level. Default: INFO",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.watch:
            watch_pipeline(
                input_path=args.input,
                config_dir=args.config_dir,
                db_path=args.db,
                poll_interval_sec=args.poll_interval_ms / 1000.0,
            )
        else:
            out = run_pipeline(
                input_path=args.input,
                config_dir=args.config_dir,
                db_path=args.db,
            )
            s = out["summary"]
            print(
                f"events={s['events']} stored={s['stored']} matches={s['matches']} "
                f"alerts={s['alerts']} notifications={s['notifications']} failed={s['failed']}"
            )
            if s["failed"]:
                return 1
    except (ConfigError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())

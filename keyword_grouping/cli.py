"""Command-line entry points.

Usage
-----
Run a job in-process, printing NDJSON events to stdout::

    python -m keyword_grouping run --kind clustering --scope 3 \\
        --algorithm components --threshold 0.8 --config pipeline.yaml

Load keywords from a CSV file::

    python -m keyword_grouping import-csv --scope 3 --csv keywords.csv

Logs go to stderr; stdout carries only events. SIGTERM and SIGINT cancel a
running job cooperatively.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from .config import CLUSTERING_ALGORITHMS, TYPING_STRATEGIES, PipelineConfig
from .pipeline.events import NDJSONSink
from .pipeline.orchestrator import JobKind, PipelineOrchestrator
from .storage.keyword_store import SQLiteKeywordStore
from .utils.cancellation import CancellationToken

LOGGER = logging.getLogger("keyword_grouping")

EXIT_CODES = {"done": 0, "error": 1, "rejected": 2, "stopped": 130}


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def load_config(args: argparse.Namespace) -> PipelineConfig:
    config = PipelineConfig.from_file(args.config) if args.config else PipelineConfig()
    config = config.with_env_overrides()
    if args.db:
        config = config.with_overrides(db_path=args.db)
    return config


def install_signal_handlers(token: CancellationToken) -> None:
    """Turn SIGTERM/SIGINT into cancellation of ``token``."""

    def _handler(signum, _frame):
        LOGGER.info(f"Received {signal.Signals(signum).name}, cancelling")
        token.cancel(signal.Signals(signum).name)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyword_grouping",
        description="Embed, categorize, type and cluster keywords",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run one job and stream NDJSON events")
    run.add_argument("--kind", required=True, choices=[k.value for k in JobKind])
    run.add_argument("--scope", required=True, type=int, help="Project id")
    run.add_argument("--algorithm", choices=CLUSTERING_ALGORITHMS, default=None,
                     help="Clustering algorithm (overrides config)")
    run.add_argument("--threshold", type=float, default=None,
                     help="Similarity threshold for components clustering")
    run.add_argument("--eps", type=float, default=None,
                     help="Cosine distance radius for DBSCAN")
    run.add_argument("--min-pts", type=int, default=None, help="DBSCAN min points")
    run.add_argument("--strategy", choices=TYPING_STRATEGIES, default=None,
                     help="Typing strategy (overrides config)")
    run.add_argument("--config", default=None, help="Path to YAML or JSON config file")
    run.add_argument("--db", default=None, help="Keyword database (overrides config)")
    run.add_argument("--debug", action="store_true", help="Enable DEBUG logging")

    imp = subparsers.add_parser("import-csv", help="Load keywords from a CSV file")
    imp.add_argument("--scope", required=True, type=int, help="Project id")
    imp.add_argument("--csv", required=True, help="CSV file with a keyword column")
    imp.add_argument("--column", default="keyword", help="Keyword column name")
    imp.add_argument("--config", default=None, help="Path to YAML or JSON config file")
    imp.add_argument("--db", default=None, help="Keyword database (overrides config)")
    imp.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    imp.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    return parser


def cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args)
    token = CancellationToken()
    install_signal_handlers(token)
    params = {
        "algorithm": args.algorithm,
        "threshold": args.threshold,
        "eps": args.eps,
        "min_pts": args.min_pts,
        "strategy": args.strategy,
    }
    with SQLiteKeywordStore(config.db_path) as store:
        orchestrator = PipelineOrchestrator.from_config(config, store, sink=NDJSONSink())
        outcome = orchestrator.run(args.scope, args.kind, params, cancel_token=token)
        if orchestrator.embedder.cache is not None:
            orchestrator.embedder.cache.close()
    return EXIT_CODES[outcome.status]


def cmd_import_csv(args: argparse.Namespace) -> int:
    config = load_config(args)
    with SQLiteKeywordStore(config.db_path) as store:
        count = store.import_keywords_csv(
            args.scope, args.csv, column=args.column, show_progress=not args.no_progress
        )
    LOGGER.info(f"Imported {count} keywords")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.debug)
    if args.command == "run":
        return cmd_run(args)
    return cmd_import_csv(args)

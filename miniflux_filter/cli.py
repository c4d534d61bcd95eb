"""Command-line interface for the miniflux_filter application."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import pprint
import signal
import threading
from pathlib import Path
from typing import List, Optional

from .activity import ActivityLog, attach_activity_log, detach_activity_log
from .client import MinifluxClient
from .config import AppConfig, load_config
from .errors import FilterError
from .orchestrator import Scheduler, SyncOrchestrator
from .rules import example_rule_set
from .store import RuleStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="miniflux-filter",
        description="Mark Miniflux entries as read using per-feed filter rules.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional configuration XML file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run a single filtering cycle and exit.",
    )
    mode.add_argument(
        "--stats",
        action="store_true",
        help="Print rule statistics and exit.",
    )
    mode.add_argument(
        "--create-example",
        metavar="FEED_ID",
        type=int,
        help="Write an example rule file for FEED_ID and exit.",
    )
    parser.add_argument(
        "--feed-name",
        default=None,
        help="Feed name stored in the example rule file.",
    )
    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Initialise logging according to options."""
    log_level = getattr(logging, level_name.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        if log_path.parent and not log_path.parent.exists():
            log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logger.debug(
            "Logger initialised with level %s and file output to %s",
            level_name.upper(),
            log_path,
        )
    else:
        logger.debug(
            "Logger initialised with console output at level %s", level_name.upper()
        )


def build_orchestrator(config: AppConfig, store: RuleStore) -> SyncOrchestrator:
    client = MinifluxClient(
        config.miniflux.url,
        config.miniflux.token,
        timeout=config.miniflux.timeout,
        page_size=config.miniflux.page_size,
        max_pages=config.miniflux.max_pages,
    )
    return SyncOrchestrator(store, client, concurrency=config.sync.concurrency)


def _log_stats(store: RuleStore) -> None:
    stats = store.stats()
    logger.info("Filter Engine Statistics:")
    logger.info("  Total rule sets: %d", stats.total_rule_sets)
    logger.info("  Enabled rule sets: %d", stats.enabled_rule_sets)
    logger.info("  Total rules: %d", stats.total_rules)
    logger.info("  Feeds with rules: %s", list(stats.feeds_with_rules))
    if stats.total_rule_sets == 0:
        logger.info("No rule sets found in %s", store.directory)
        logger.info("Create TOML rule files in the rules directory to start filtering")


def _serve(config: AppConfig, orchestrator: SyncOrchestrator) -> None:
    orchestrator.client.test_connection()

    scheduler = Scheduler(orchestrator, interval=config.sync.poll_interval)
    stopped = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("Received signal %d, shutting down", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    try:
        stopped.wait()
    finally:
        scheduler.stop()


def _run(args: argparse.Namespace, config: AppConfig) -> int:
    store = RuleStore(config.rules_dir)
    store.reload_all()

    if args.create_example is not None:
        if args.create_example in store:
            logger.error("A rule set for feed %d already exists", args.create_example)
            return 1
        saved = store.upsert(example_rule_set(args.create_example, args.feed_name))
        logger.info("Created example rule file for feed %d", saved.feed_id)
        return 0

    if args.stats:
        _log_stats(store)
        return 0

    orchestrator = build_orchestrator(config, store)
    _log_stats(store)

    if args.once:
        try:
            results = orchestrator.run_tick()
        finally:
            orchestrator.shutdown()
        return 1 if any(result.error for result in results) else 0

    _serve(config, orchestrator)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        offline = args.stats or args.create_example is not None
        config = load_config(args.config, require_credentials=not offline)

        log_level = args.log_level or config.logging.level
        log_file = args.log_file or config.logging.file
        configure_logging(log_level, log_file)

        config_dict = dataclasses.asdict(config)
        if config_dict["miniflux"].get("token"):
            config_dict["miniflux"]["token"] = "***MASKED***"
        logger.info("Active Configuration:\n%s", pprint.pformat(config_dict))

        activity_handler = attach_activity_log(ActivityLog(config.activity_capacity))
        try:
            return _run(args, config)
        finally:
            detach_activity_log(activity_handler)
    except ValueError as exc:
        parser.error(str(exc))
    except (FilterError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1

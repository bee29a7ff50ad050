#!/usr/bin/env python3
"""
Run the cancellation scheduler.

Loads the active configuration, initialises the database engine and either
performs a single pass (``--once``) or polls every
``scheduler.interval_seconds`` until interrupted.

Usage:
    python3 scripts/run_cancellation_scheduler.py --once
    python3 scripts/run_cancellation_scheduler.py --config deploy.yaml
    python3 scripts/run_cancellation_scheduler.py --once --create-tables
"""

import argparse
import signal
import sys
import threading
from pathlib import Path

from membership_batch.services.cancellation_scheduler import CancellationScheduler
from membership_config import get_active_config
from membership_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from membership_kernel.domain.clock import SystemClock
from membership_kernel.logging_config import configure_logging, get_logger
from membership_kernel.services.member_lifecycle_service import MemberLifecycleService
from membership_kernel.services.sequence_service import SequenceService

logger = get_logger("scripts.run_cancellation_scheduler")


def build_scheduler(config, session_factory, clock=None) -> CancellationScheduler:
    """Wire a scheduler from configuration."""
    clock = clock or SystemClock()
    defaults = config.sequence_defaults

    def lifecycle_factory(session):
        sequences = SequenceService(
            session,
            clock,
            default_prefix=defaults.prefix,
            default_pad_length=defaults.pad_length,
            default_year_reset=defaults.year_reset,
        )
        return MemberLifecycleService(session, clock, sequence_service=sequences)

    return CancellationScheduler(
        session_factory,
        clock=clock,
        system_actor_id=config.system_actor_id,
        interval_seconds=config.scheduler.interval_seconds,
        item_timeout_seconds=config.scheduler.item_timeout_seconds,
        lifecycle_factory=lifecycle_factory,
        conflict_retry_attempts=config.conflict_retry_attempts,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Execute expired cancellation notices")
    parser.add_argument("--config", type=Path, help="Deployment YAML file")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    args = parser.parse_args(argv)

    try:
        config = get_active_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"ERROR: invalid configuration: {exc}", file=sys.stderr)
        return 1

    configure_logging(level=config.log_level)
    init_engine_from_url(config.database_url)
    if args.create_tables:
        create_tables()

    scheduler = build_scheduler(config, get_session_factory())

    if args.once:
        result = scheduler.run_once()
        print(
            f"{result.candidates} due, {len(result.executed)} executed, "
            f"{len(result.skipped)} skipped, {len(result.failures)} failed"
        )
        return 0 if not result.failures else 2

    if not config.scheduler.enabled:
        print("Scheduler disabled in configuration (scheduler.enabled: false)", file=sys.stderr)
        return 1

    stopped = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_requested", extra={"signal": signum})
        stopped.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    stopped.wait()
    scheduler.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())

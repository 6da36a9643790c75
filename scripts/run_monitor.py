#!/usr/bin/env python3
"""Campaign metrics monitor: evaluates every active alert rule on a fixed
cadence and delivers fired alerts to their webhooks.

Usage:
    python scripts/run_monitor.py                 # loop every CHECK_INTERVAL_MINUTES
    python scripts/run_monitor.py --once          # single cycle, then exit
    python scripts/run_monitor.py --interval 5    # loop every 5 minutes
    python scripts/run_monitor.py --demo --once   # in-memory sample data, no database
    python scripts/run_monitor.py --dry-run       # evaluate and log, never deliver
"""

import argparse
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.monitoring.orchestrator import CycleSummary, MonitoringOrchestrator
from src.monitoring.repair_queue import ConfigRepairQueue
from src.outreach.webhook_client import WebhookClient
from src.storage.memory_store import build_demo_store
from src.storage.postgres_store import PostgresStore
from src.utils.config import get_config
from src.utils.logger import setup_logger

logger = setup_logger("monitor", log_file=get_config().log_file)


def build_orchestrator(demo: bool = False, dry_run: bool = False):
    """Wire stores, delivery and the repair queue into an orchestrator."""
    config = get_config()
    if demo:
        store = build_demo_store(datetime.now(timezone.utc).date())
        delivery = store
        logger.info("Demo mode: using in-memory sample data.")
    else:
        store = PostgresStore(config=config)
        store.apply_migrations()
        delivery = WebhookClient(store, config)

    repair_queue = ConfigRepairQueue(store)
    orchestrator = MonitoringOrchestrator(
        store, delivery, config=config, repair_queue=repair_queue, dry_run=dry_run,
    )
    return orchestrator, repair_queue


def run_once(orchestrator: MonitoringOrchestrator) -> CycleSummary:
    summary = orchestrator.run_cycle()
    logger.info("=== Monitoring Cycle Complete ===")
    logger.info("  Configs checked:   %d", summary.configs_checked)
    logger.info("  Campaigns:         %d", summary.campaigns_evaluated)
    logger.info("  Alerts fired:      %d", summary.alerts_fired)
    logger.info("  Suppressed:        %d", summary.suppressed)
    logger.info("  Skipped configs:   %d", summary.skipped_configs)
    logger.info("  Failures:          %d", summary.failures)
    return summary


def run_forever(orchestrator: MonitoringOrchestrator, interval_minutes: float, stop: threading.Event):
    logger.info("Campaign metrics monitoring started (every %.1f minutes).", interval_minutes)
    while not stop.is_set():
        try:
            run_once(orchestrator)
        except Exception as e:
            # run_cycle never raises; anything here is a wiring problem
            logger.error("Monitoring cycle crashed: %s", e)
        stop.wait(interval_minutes * 60)
    logger.info("Campaign metrics monitoring stopped.")


def main():
    parser = argparse.ArgumentParser(
        description="Evaluate campaign alert rules and deliver webhook notifications."
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Run a single monitoring cycle and exit.",
    )
    parser.add_argument(
        "--interval", type=float, default=None,
        help="Minutes between cycles (default: CHECK_INTERVAL_MINUTES).",
    )
    parser.add_argument(
        "--demo", action="store_true",
        help="Use built-in sample data instead of the database.",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Evaluate rules and log payloads, but don't deliver or record triggers.",
    )
    args = parser.parse_args()

    orchestrator, repair_queue = build_orchestrator(demo=args.demo, dry_run=args.dry_run)
    stop = threading.Event()
    try:
        if args.once:
            run_once(orchestrator)
        else:
            interval = args.interval or get_config().check_interval_minutes
            run_forever(orchestrator, interval, stop)
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down.")
        stop.set()
    finally:
        repair_queue.drain(timeout=10)
        repair_queue.stop()
        orchestrator.close()


if __name__ == "__main__":
    main()

"""
Command line for operating a session cache node.

Usage:
    sessiond serve                  # run a node until SIGINT/SIGTERM
    sessiond counters               # print the cluster-wide counters as JSON
    sessiond expire                 # run one expiry and counters pass
    sessiond consistency --repair   # clean up (and repair) the indexes
    sessiond version-check          # purge data of an outdated schema
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from sessiond.factory import create_coordinator
from sessiond.jobs.consistency import ConsistencyCheck
from sessiond.jobs.expirer import SessionExpirer
from sessiond.jobs.version_check import check_version
from sessiond.logging_config import setup_logging
from sessiond.settings import settings

logger = logging.getLogger(__name__)


def _serve(args) -> int:
    coordinator = create_coordinator(start=True)
    stopped = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stopped.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    try:
        stopped.wait()
    finally:
        coordinator.shut_down()
    return 0


def _counters(args) -> int:
    coordinator = create_coordinator(start=False)
    try:
        counters = {
            "total": coordinator.query_counter_for_number_of_sessions(),
            "active": coordinator.query_counter_for_number_of_active_sessions(),
            "short": coordinator.query_counter_for_number_of_short_term_sessions(),
            "long": coordinator.query_counter_for_number_of_long_term_sessions(),
            "brands": {
                brand_id: {
                    "total": coordinator.query_counter_for_number_of_sessions_by_brand(brand_id),
                    "active": coordinator.query_counter_for_number_of_active_sessions_by_brand(brand_id),
                }
                for brand_id in coordinator.get_brand_ids_for_counters()
            },
        }
        print(json.dumps(counters, indent=2))
    finally:
        coordinator.shut_down()
    return 0


def _lock_timing(interval_minutes: int):
    lock_ttl = max(interval_minutes, 1) * 60 * 1000
    return lock_ttl, min(settings.jobs.lock_update_frequency, lock_ttl // 2)


def _expire(args) -> int:
    coordinator = create_coordinator(start=False)
    try:
        lock_ttl, renewal = _lock_timing(settings.jobs.expirer_interval_minutes)
        result = SessionExpirer(coordinator).expire_sessions_and_update_counters(
            lock_ttl, renewal, delete_lock=True
        )
        if result is None:
            print("Expiry job is running on another node")
            return 1
        print(f"Expired {len(result.expired_session_ids)} sessions")
        print(json.dumps(result.counters, indent=2))
    finally:
        coordinator.shut_down()
    return 0


def _consistency(args) -> int:
    coordinator = create_coordinator(start=False)
    try:
        lock_ttl, renewal = _lock_timing(settings.jobs.consistency_check_interval_minutes)
        report = ConsistencyCheck(coordinator).consistency_check(
            args.repair, lock_ttl, renewal, delete_lock=True
        )
        if report is None:
            print("Consistency check is running on another node")
            return 1
        print(report)
    finally:
        coordinator.shut_down()
    return 0


def _version_check(args) -> int:
    coordinator = create_coordinator(start=False)
    try:
        purged = check_version(
            coordinator.connector,
            lock_ttl_millis=settings.jobs.version_lock_timeout,
            renewal_millis=settings.jobs.version_lock_renewal,
        )
        print("Purged outdated session data" if purged else "Session data is up to date")
    finally:
        coordinator.shut_down()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sessiond", description="Distributed session cache node")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run a node").set_defaults(func=_serve)
    subparsers.add_parser("counters", help="Print session counters").set_defaults(func=_counters)
    subparsers.add_parser("expire", help="Run one expiry pass").set_defaults(func=_expire)

    consistency = subparsers.add_parser("consistency", help="Run one consistency check")
    consistency.add_argument(
        "--repair",
        action="store_true",
        help="Also re-create missing index entries of live sessions",
    )
    consistency.set_defaults(func=_consistency)

    subparsers.add_parser("version-check", help="Run the schema version check").set_defaults(
        func=_version_check
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

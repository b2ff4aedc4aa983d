#!/usr/bin/env python3
"""
Synchronization script for the wallabag offline cache.

This script pushes changes made offline and pulls changes from the server:
- Creates, edits and deletes staged in the local store are sent first
- Entries changed since the last sync are merged into the local store
- A full sync additionally removes entries the server no longer has

Designed to be run by hand or on a schedule (e.g., via cron).

Usage:
    python scripts/run_sync.py [--config CONFIG_PATH] [--full] [--init | --reset]
"""

import argparse
import sys
from typing import Any

import structlog

from wallabag_sync.remote.wallabag_client import WallabagClient
from wallabag_sync.storage.local_store import LocalStore, LocalStoreError
from wallabag_sync.sync.models import SyncMode
from wallabag_sync.sync.sync_engine import SyncEngine, SyncError
from wallabag_sync.utils.config_loader import ConfigLoader, ConfigurationError
from wallabag_sync.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()


def perform_sync(
    config_path: str | None = None,
    full_sync: bool = False,
    init: bool = False,
    reset: bool = False,
) -> dict[str, Any]:
    """
    Perform one synchronization run.

    Args:
        config_path: Optional path to configuration file
        full_sync: If True, perform full sync instead of incremental
        init: Create the local database first (fails if it exists)
        reset: Delete and recreate the local database first

    Returns:
        Dictionary with sync statistics
    """
    config = ConfigLoader().load_config(config_path)
    configure_logging(
        log_level=config.logging.log_level,
        json_logs=config.logging.json_logs,
        log_file=config.logging.log_file,
    )

    store = LocalStore(config.store.db_file)
    if init:
        store.init()
    elif reset:
        store.reset()

    engine = SyncEngine(store, WallabagClient(config.wallabag), config.sync)
    mode = SyncMode.FULL if full_sync else SyncMode.INCREMENTAL

    try:
        report = engine.run_sync(mode)
    except SyncError as e:
        return {
            "success": False,
            "error": str(e),
            "sync_type": mode.value,
            "pushed": e.report.pushed,
            "pulled": e.report.pulled,
            "deleted": e.report.deleted,
        }

    return {
        "success": report.success,
        "sync_type": mode.value,
        "pushed": report.pushed,
        "pulled": report.pulled,
        "deleted": report.deleted,
        "failures": [f.model_dump(mode="json") for f in report.failures],
        "cancelled": report.cancelled,
        "last_sync_advanced": report.last_sync_advanced,
        "start_time": report.start_time.isoformat(),
        "duration_seconds": report.duration_seconds,
    }


def print_summary(stats: dict[str, Any]) -> None:
    print("\n" + "=" * 60)
    print("WALLABAG SYNC SUMMARY")
    print("=" * 60)

    if "error" in stats:
        print("Status: FAILED")
        print(f"Error: {stats['error']}")
    else:
        print("Status: SUCCESS" if stats["success"] else "Status: PARTIAL")
        print(f"Sync Type: {stats['sync_type']}")
        print(f"Duration: {stats['duration_seconds']:.2f} seconds")

    print(f"Pushed: {stats.get('pushed', 0)}")
    print(f"Pulled: {stats.get('pulled', 0)}")
    print(f"Deleted: {stats.get('deleted', 0)}")

    for failure in stats.get("failures", []):
        target = failure["server_id"] or f"local {failure['local_id']}"
        print(
            f"  ! {failure['operation']} {failure['kind']} {target}: "
            f"{failure['error_type']} {failure['message']}"
        )
    print("=" * 60 + "\n")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Synchronize the local wallabag cache with the server"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file (default: config/default.yaml)",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Pull the complete listing and drop entries deleted on the server",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--init", action="store_true", help="Create the local database first")
    group.add_argument(
        "--reset", action="store_true", help="Delete and recreate the local database first"
    )

    args = parser.parse_args()

    try:
        stats = perform_sync(args.config, args.full, args.init, args.reset)
    except (ConfigurationError, LocalStoreError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print_summary(stats)
    return 0 if stats["success"] else 1


if __name__ == "__main__":
    sys.exit(main())

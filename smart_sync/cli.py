"""Operator command line for smart sync.

Usage:
    smart-sync status
    smart-sync reset [COLLECTION]
    smart-sync show COLLECTION
    smart-sync sync [COLLECTION ...] [--timeout SECONDS]

Settings come from --settings (YAML, `sync:` section) when given or when
~/.smart_sync/settings.yaml exists, otherwise from SMART_SYNC_* variables.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .config import DEFAULT_SETTINGS_PATH, SyncConfig
from .exceptions import SmartSyncError
from .local.file_store import FileCacheStore
from .logging_utils import configure_structured_logging
from .metadata import TimestampStore
from .orchestrator import create_orchestrator

logger = logging.getLogger(__name__)


def load_config(settings: Path | None) -> SyncConfig:
    """Load configuration for the CLI."""
    if settings is not None:
        return SyncConfig.from_yaml(settings)
    if DEFAULT_SETTINGS_PATH.exists():
        return SyncConfig.from_yaml(DEFAULT_SETTINGS_PATH)
    return SyncConfig.from_environment()


def _store(config: SyncConfig) -> FileCacheStore:
    return FileCacheStore(Path(config.local_path) if config.local_path else None)


async def cmd_status(config: SyncConfig, args: argparse.Namespace) -> int:
    timestamps = TimestampStore(_store(config), config.metadata_key)
    print(json.dumps(await timestamps.snapshot(), indent=2, sort_keys=True))
    return 0


async def cmd_reset(config: SyncConfig, args: argparse.Namespace) -> int:
    timestamps = TimestampStore(_store(config), config.metadata_key)
    removed = await timestamps.reset(args.collection)
    print(json.dumps({"reset": removed}))
    return 0


async def cmd_show(config: SyncConfig, args: argparse.Namespace) -> int:
    data = await _store(config).load(args.collection)
    print(json.dumps(data or [], indent=2, default=str))
    return 0


async def cmd_sync(config: SyncConfig, args: argparse.Namespace) -> int:
    collections = args.collections or config.collections
    if not collections:
        print("No collections given and none configured", file=sys.stderr)
        return 2

    orchestrator = create_orchestrator(config)
    try:
        results = await orchestrator.sync_many(collections, timeout=args.timeout)
    finally:
        await orchestrator.close()

    print(json.dumps([result.to_dict() for result in results.values()], indent=2))
    return 0 if all(result.success for result in results.values()) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smart-sync",
        description="Inspect and run incremental sync of cached collections",
    )
    parser.add_argument("--settings", type=Path, default=None, help="YAML settings file")
    parser.add_argument("--local-path", default=None, help="Override the local cache directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Print last sync instant per collection")

    reset = sub.add_parser("reset", help="Clear sync metadata to force a full resync")
    reset.add_argument("collection", nargs="?", default=None, help="Collection (default: all)")

    show = sub.add_parser("show", help="Print the cached records of a collection")
    show.add_argument("collection")

    sync = sub.add_parser("sync", help="Run a sync cycle")
    sync.add_argument("collections", nargs="*", help="Collections (default: configured list)")
    sync.add_argument("--timeout", type=float, default=None, help="Seconds per suspending step")

    return parser


COMMANDS = {
    "status": cmd_status,
    "reset": cmd_reset,
    "show": cmd_show,
    "sync": cmd_sync,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_structured_logging(
        logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr
    )
    # Suppress Azure SDK HTTP noise
    for noisy in ("azure", "azure.core", "azure.identity", "azure.cosmos"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    try:
        config = load_config(args.settings)
        if args.local_path:
            config.local_path = args.local_path
        return asyncio.run(COMMANDS[args.command](config, args))
    except SmartSyncError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Command-line entry point.

This allows running with: python -m inkdoodle <command>
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .DB.remote_store import RemoteStore
from .Sync.project_loader import count_local_projects, pull_projects
from .Sync.remote_reader import RemoteReader
from .Sync.sync_context import SyncContext
from .Sync.sync_orchestrator import SyncOrchestrator, SyncOutcome, SyncRefusal
from .config import load_settings
from .logging_config import configure_logging

LAST_ATTEMPT_PREF = "last_sync_attempt"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync inkdoodle projects with the remote store",
        prog="inkdoodle"
    )
    parser.add_argument("--config", type=Path, help="Path to config.toml")
    parser.add_argument("--root", type=Path, help="Projects root directory (overrides config)")
    parser.add_argument("--db", type=Path, help="Remote store database path (overrides config)")
    parser.add_argument("--log-level", type=str, help="Log level (default: from config)")

    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Push local projects to the remote store")
    sync.add_argument("--creator", type=int, required=True, help="Creator id")
    sync.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    sync.add_argument("--force", action="store_true", help="Ignore the minimum interval between syncs")
    sync.add_argument("--allow-empty-deletion", action="store_true",
                      help="Delete remote projects even when no local projects exist")
    sync.add_argument("--prune-children", action="store_true",
                      help="Delete remote children whose local file is gone")

    pull = sub.add_parser("pull", help="Download remote projects into the projects root")
    pull.add_argument("--creator", type=int, required=True, help="Creator id")
    pull.add_argument("--overwrite", action="store_true", help="Rewrite projects that already exist locally")

    sub.add_parser("status", help="Show sync configuration and local project count")
    return parser


def _print_summary(outcome: SyncOutcome) -> None:
    summary = outcome.summary
    if summary is None:
        return
    data = summary.as_dict()
    print(f"{'table':<10} {'inserted':>9} {'updated':>8} {'unchanged':>10} {'deleted':>8} {'errors':>7}")
    for table, counts in data["counts"].items():
        print(f"{table:<10} {counts['inserted']:>9} {counts['updated']:>8} {counts['unchanged']:>10} "
              f"{counts['deleted']:>8} {counts['errors']:>7}")
    print(f"conflicts={data['conflicts']} skipped={data['skipped']}"
          + (" (dry-run)" if data["dry_run"] else ""))
    for failure in data["collection_errors"]:
        print(f"collection error: {failure}")


async def _run_sync(args, settings, store: RemoteStore, root: Path) -> int:
    sync_cfg = settings.get("sync", {})
    min_interval = float(sync_cfg.get("min_interval_seconds", 300))
    if not args.force and sync_cfg.get("enabled", True):
        last = await store.get_pref(LAST_ATTEMPT_PREF)
        if last is not None and time.time() - float(last) < min_interval:
            print(SyncRefusal.TOO_SOON.value)
            return 1

    orchestrator = SyncOrchestrator.from_settings(
        store, settings,
        project_root=root,
        dry_run=args.dry_run or None,
        allow_empty_local_deletion=args.allow_empty_deletion or None,
        prune_orphaned_children=args.prune_children or None,
    )
    orchestrator.creator_id = args.creator
    outcome = await orchestrator.force_sync()
    if outcome.disabled:
        print("Sync is disabled (local-only mode)")
        return 0
    if not args.dry_run:
        await store.set_pref(LAST_ATTEMPT_PREF, time.time())
    _print_summary(outcome)
    if not outcome.ok:
        print(f"Sync failed: {outcome.error}")
        return 1
    return 0


async def _run_pull(args, settings, store: RemoteStore, root: Path) -> int:
    context = SyncContext.from_settings(args.creator, settings, project_root=root)
    result = await pull_projects(context, RemoteReader(store), overwrite=args.overwrite)
    for project in result.projects:
        print(f"wrote {project.code} -> {project.path}")
    for code in result.skipped:
        print(f"skipped {code} (already present)")
    for error in result.errors:
        print(f"error: {error}")
    if not result.ok:
        print(f"Pull failed: {result.error}")
        return 1
    return 0


def _run_status(settings, root: Path, db_path: Path) -> int:
    sync_cfg = settings.get("sync", {})
    print(f"sync enabled:   {sync_cfg.get('enabled', True)}")
    print(f"projects root:  {root}")
    print(f"local projects: {count_local_projects(root)}")
    print(f"remote store:   {db_path}")
    print(f"min interval:   {sync_cfg.get('min_interval_seconds')}s")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    log_cfg = settings.get("logging", {})
    configure_logging(
        level=args.log_level or log_cfg.get("level"),
        log_file=log_cfg.get("log_file"),
        console=bool(log_cfg.get("console", True)),
    )

    root = (args.root or Path(settings["sync"]["projects_root"])).expanduser()
    db_path = (args.db or Path(settings["remote"]["db_path"])).expanduser()
    if args.command == "status":
        return _run_status(settings, root, db_path)

    remote_cfg = settings.get("remote", {})
    store = RemoteStore(
        db_path,
        pool_size=int(remote_cfg.get("pool_size", 4)),
        busy_timeout_ms=int(remote_cfg.get("busy_timeout_ms", 5000)),
    )
    try:
        if args.command == "sync":
            return asyncio.run(_run_sync(args, settings, store, root))
        return asyncio.run(_run_pull(args, settings, store, root))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())

"""CLI entry point for Tourplan."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .errors import TourplanError
from .remote import RemoteGateway
from .store import LocalStore, SQLiteBackend, display_locations
from .sync import SyncEngine
from .week_clock import compute_week, week_start_date


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def build_engine(config: Config, offline: bool = False) -> SyncEngine:
    """Wire the local store, gateway and sync engine from config."""
    backend = SQLiteBackend(config.store.db_path, max_bytes=config.store.max_bytes)
    store = LocalStore(backend, seed_users=config.store.seed_users)
    gateway = RemoteGateway(
        base_url=config.remote.base_url,
        timeout=config.remote.timeout_seconds,
        max_retries=config.remote.max_retries,
        backoff_base=config.remote.backoff_base_seconds,
        online=config.sync.start_online and not offline,
    )
    return SyncEngine(store, gateway, max_attempts=config.sync.max_attempts)


async def _shutdown(engine: SyncEngine) -> None:
    await engine.gateway.close()
    engine.store.close()


def cmd_week(args: argparse.Namespace) -> int:
    """Print the planning week for now or a given date."""
    week = compute_week(override_iso=args.date)
    print(f"Week {week.week_id}")
    for header, day_date in zip(week.headers, week.day_dates):
        print(f"  {header}  {day_date}")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show connectivity, queue length and last sync."""
    config = load_config(args.config)
    engine = build_engine(config, offline=args.offline)

    try:
        if not args.offline:
            await engine.gateway.probe()
        status = engine.get_status()
    finally:
        await _shutdown(engine)

    if args.json_status:
        print(json.dumps(status, indent=2))
        return 0

    print(f"Client: {config.client.name}")
    print(f"Remote: {config.remote.base_url} ({'online' if status['online'] else 'offline'})")
    print(f"Pending items: {status['pending_items']}")
    print(f"Last sync: {status['last_sync'] or 'never'}")
    print(f"Storage used: {status['storage_used_kb']} KB")
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Replay the sync queue once."""
    config = load_config(args.config)
    engine = build_engine(config, offline=args.offline)

    try:
        result = await engine.replay()
    except TourplanError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await _shutdown(engine)

    print(f"Sync: {result.status.value}")
    print(f"  settled={result.settled} retried={result.retried}")
    print(f"  dropped={len(result.dropped)} rejected={len(result.rejected)}")
    return 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Keep replaying the queue on the configured interval."""
    config = load_config(args.config)
    if not config.sync.enabled:
        print("Sync is disabled in config", file=sys.stderr)
        return 1

    engine = build_engine(config, offline=args.offline)
    print(f"Starting Tourplan sync for {config.client.name}")
    print(f"Remote: {config.remote.base_url}, every {config.sync.interval_seconds}s")

    try:
        await engine.start()
        await engine.sync_loop(config.sync.interval_seconds, probe=True)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except TourplanError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await _shutdown(engine)

    return 0


async def cmd_set_plan(args: argparse.Namespace) -> int:
    """Save a user's seven locations for a week."""
    config = load_config(args.config)
    engine = build_engine(config, offline=args.offline)

    try:
        week_start_date(args.week)
        result = await engine.set_plan(args.week, args.user, args.locations)
    except (TourplanError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await _shutdown(engine)

    print(result.message)
    return 0


async def cmd_show_plans(args: argparse.Namespace) -> int:
    """Print every user's plan for a week."""
    config = load_config(args.config)
    engine = build_engine(config, offline=args.offline)
    week_id = args.week or compute_week().week_id

    try:
        plans = await engine.get_plans(week_id)
    finally:
        await _shutdown(engine)

    print(f"Week {week_id}")
    if not plans:
        print("  (no plans)")
    for user_name, locations in sorted(plans.items()):
        print(f"  {user_name}: {' | '.join(display_locations(locations))}")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Write the cache document to a backup file."""
    config = load_config(args.config)
    store = LocalStore(SQLiteBackend(config.store.db_path), seed_users=config.store.seed_users)

    try:
        backup = {
            "exportDate": datetime.now().isoformat(),
            "localStorage": store.export_data(),
        }
    finally:
        store.close()

    text = json.dumps(backup, indent=2)
    if args.output:
        Path(args.output).write_text(text)
        print(f"Exported cache to {args.output}")
    else:
        print(text)
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Restore the cache document from a backup file."""
    config = load_config(args.config)

    try:
        data = json.loads(Path(args.input).read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error reading backup: {e}", file=sys.stderr)
        return 1

    store = LocalStore(
        SQLiteBackend(config.store.db_path, max_bytes=config.store.max_bytes),
        seed_users=config.store.seed_users,
    )
    try:
        store.import_data(data.get("localStorage", data))
    except TourplanError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(f"Imported cache from {args.input}")
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Reset the cache to its defaults."""
    if not args.yes:
        print("Refusing to reset without --yes (pending changes would be lost)", file=sys.stderr)
        return 1

    config = load_config(args.config)
    store = LocalStore(SQLiteBackend(config.store.db_path), seed_users=config.store.seed_users)
    try:
        store.clear_all()
    finally:
        store.close()

    print("Cache reset")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="tourplan",
        description="Offline-first cache and sync for weekly tour plans",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Do not contact the remote store",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    week_parser = subparsers.add_parser("week", help="Show the planning week")
    week_parser.add_argument("--date", default=None, help="Any date in the week (YYYY-MM-DD)")
    week_parser.set_defaults(func=cmd_week)

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument(
        "--json",
        dest="json_status",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    sync_parser = subparsers.add_parser("sync", help="Replay queued changes once")
    sync_parser.set_defaults(func=cmd_sync)

    run_parser = subparsers.add_parser("run", help="Replay queued changes periodically")
    run_parser.set_defaults(func=cmd_run)

    set_plan_parser = subparsers.add_parser("set-plan", help="Save a weekly plan")
    set_plan_parser.add_argument("week", help="Week id (YYYYMMDD of the Monday)")
    set_plan_parser.add_argument("user", help="User name")
    set_plan_parser.add_argument("locations", nargs=7, help="Seven locations, Monday to Sunday")
    set_plan_parser.set_defaults(func=cmd_set_plan)

    show_parser = subparsers.add_parser("show-plans", help="Show plans for a week")
    show_parser.add_argument("week", nargs="?", default=None, help="Week id (default: current)")
    show_parser.set_defaults(func=cmd_show_plans)

    export_parser = subparsers.add_parser("export", help="Export the cache to JSON")
    export_parser.add_argument("-o", "--output", default=None, help="Output file (default: stdout)")
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import the cache from JSON")
    import_parser.add_argument("input", help="Backup file written by export")
    import_parser.set_defaults(func=cmd_import)

    reset_parser = subparsers.add_parser("reset", help="Reset the cache to defaults")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")
    reset_parser.set_defaults(func=cmd_reset)

    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())

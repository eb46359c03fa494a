"""Command line entry point."""

import argparse
import asyncio
import logging
import sys
from contextlib import contextmanager
from typing import Iterator, List, Optional

import httpx

from newapi_sync import __version__
from newapi_sync.config import settings
from newapi_sync.services.config_loader import AppConfig, apply_only_providers, load_config
from newapi_sync.services.exceptions import (
    ApiResponseError,
    ConfigError,
    SyncInProgressError,
    TargetUnavailableError,
)
from newapi_sync.services.output import (
    format_reset_summary,
    format_run_summary,
    reset_result_to_dict,
    run_result_to_dict,
    to_json,
)
from newapi_sync.services.sync_service import SyncService

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr so stdout only carries the summary."""
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="newapi-sync",
        description="Sync upstream pricing and credentials into a new-api instance",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", help="Path to the sync config file (YAML or JSON)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Sync providers into the target")
    run_parser.add_argument(
        "--only",
        action="append",
        default=[],
        metavar="NAME",
        help="Only sync the named provider(s); repeatable or comma-separated",
    )
    run_parser.add_argument("--dry-run", action="store_true", help="Compute the diff without applying it")
    run_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    run_parser.add_argument("--no-history", action="store_true", help="Do not record the run in the history database")

    reset_parser = subparsers.add_parser("reset", help="Remove everything managed for the configured providers")
    reset_parser.add_argument("--only", action="append", default=[], metavar="NAME", help="Only reset the named provider(s)")
    reset_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    reset_parser.add_argument("--no-history", action="store_true", help="Do not record the reset in the history database")

    history_parser = subparsers.add_parser("history", help="Show recorded runs")
    history_parser.add_argument("--limit", type=int, default=10, help="Number of runs to show")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default=settings.app_host, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=settings.app_port, help="Port to bind to")

    return parser


@contextmanager
def history_session(enabled: bool) -> Iterator:
    """Yield a history database session, or None when recording is off."""
    if not enabled:
        yield None
        return

    from newapi_sync.database.database import SessionLocal, init_db

    init_db()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _load(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config)
    return apply_only_providers(config, getattr(args, "only", None))


def _print_lines(lines: List[str]) -> None:
    for line in lines:
        print(line)


def cmd_run(args: argparse.Namespace) -> int:
    config = _load(args)
    with history_session(not args.no_history) as db:
        result = asyncio.run(SyncService(config).run_sync(db, dry_run=args.dry_run))
    if args.json:
        print(to_json(run_result_to_dict(result)))
    else:
        _print_lines(format_run_summary(result))
    return 0 if result.success else 1


def cmd_reset(args: argparse.Namespace) -> int:
    config = _load(args)
    with history_session(not args.no_history) as db:
        result = asyncio.run(SyncService(config).reset(db))
    if args.json:
        print(to_json(reset_result_to_dict(result)))
    else:
        _print_lines(format_reset_summary(result))
    return 0 if result.success else 1


def cmd_history(args: argparse.Namespace) -> int:
    from newapi_sync.models.sync_record import SyncRecord

    with history_session(True) as db:
        records = db.query(SyncRecord).order_by(
            SyncRecord.started_at.desc(), SyncRecord.id.desc()
        ).limit(args.limit).all()
        if not records:
            print("No runs recorded")
            return 0
        for record in records:
            completed = record.completed_at.isoformat(timespec="seconds") if record.completed_at else "-"
            print(
                f"#{record.id} {record.started_at.isoformat(timespec='seconds')} -> {completed} "
                f"[{record.mode}] {record.status} ({record.providers or 'no providers'})"
            )
            if record.changes_summary:
                print(f"    {record.changes_summary}")
            if record.error_message:
                print(f"    error: {record.error_message}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from newapi_sync.main import app

    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


COMMANDS = {
    "run": cmd_run,
    "reset": cmd_reset,
    "history": cmd_history,
    "serve": cmd_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and dispatch to a subcommand.

    Returns:
        Process exit code: 0 on success, 1 on any failure.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1
    configure_logging(args.verbose)

    try:
        return COMMANDS[args.command](args)
    except (ConfigError, TargetUnavailableError, SyncInProgressError) as e:
        logger.error(str(e))
        return 1
    except (httpx.HTTPError, ApiResponseError) as e:
        logger.error(f"Request failed: {str(e) or type(e).__name__}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())

"""Croupier - Entry Point

Usage:
    croupier [--config PATH] [--log-level LEVEL] [--json-logs] COMMAND

Commands:
    submit  - Create the settlement request for a resolved bet
    execute - Execute a pending settlement request
    status  - Show stats, balances and the recent backlog per pipeline
    sweep   - Submit and execute everything recent blocks still owe
    watch   - Run the watcher and retry loops until SIGINT/SIGTERM
    version - Show version

Examples:
    croupier submit 42
    croupier execute 42 --pipeline mining
    croupier sweep --pipeline payout
    croupier --config config/production.toml --json-logs watch

Exit codes for execute and sweep:
    0 completed, already processed or not yet due
    1 failed or expired (sweep: any request failed, expired, rejected or errored)
    2 ledger or configuration error
    3 request not found
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from croupier import __version__
from croupier.core.config import ConfigManager, find_config_file
from croupier.core.errors import ConfigurationError, CroupierError, RecordNotFoundError
from croupier.domain.settlement import ExecuteOutcome, PipelineKind, SubmitOutcome

EXIT_OK = 0
EXIT_ATTENTION = 1
EXIT_LEDGER_ERROR = 2
EXIT_NOT_FOUND = 3


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="croupier",
        description="Settlement and disbursement pipeline for on-chain dice bets",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Croupier {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit JSON logs",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    pipeline_choices = [kind.value for kind in PipelineKind]

    submit = subparsers.add_parser("submit", help="Create the request for a resolved bet")
    submit.add_argument("request_id", type=int, help="Bet request id")
    submit.add_argument("--pipeline", choices=pipeline_choices, default="payout")

    execute = subparsers.add_parser("execute", help="Execute a pending request")
    execute.add_argument("request_id", type=int, help="Bet request id")
    execute.add_argument("--pipeline", choices=pipeline_choices, default="payout")

    status = subparsers.add_parser("status", help="Show stats and balances")
    status.add_argument("--pipeline", choices=pipeline_choices, default=None)

    sweep = subparsers.add_parser("sweep", help="Submit and execute recent unsettled bets")
    sweep.add_argument("--pipeline", choices=pipeline_choices, default=None)

    subparsers.add_parser("watch", help="Run the watcher and retry loops")
    subparsers.add_parser("version", help="Show version")

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    return build_parser().parse_args(argv)


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Load config from --config or the default search paths.

    Raises:
        ConfigurationError: if --config names a file that does not exist.
    """
    if args.config is not None and not args.config.exists():
        raise ConfigurationError(f"Config file not found: {args.config}")

    overrides: dict[str, Any] = {}
    if args.log_level:
        overrides["croupier.log_level"] = args.log_level
    if args.json_logs:
        overrides["croupier.log_json"] = True
    return ConfigManager(find_config_file(args.config), overrides=overrides)


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, default=str))


def _print_error(error: Exception, request_id: Optional[int] = None) -> int:
    if isinstance(error, CroupierError):
        payload = error.to_dict()
        if payload.get("request_id") is None:
            payload["request_id"] = request_id
    else:
        payload = {
            "request_id": request_id,
            "error_kind": type(error).__name__,
            "reason": None,
            "message": str(error),
        }
    print(json.dumps(payload, default=str), file=sys.stderr)
    if isinstance(error, RecordNotFoundError):
        return EXIT_NOT_FOUND
    return EXIT_LEDGER_ERROR


def _make_app(config: ConfigManager) -> Any:
    from croupier.app import CroupierApp

    return CroupierApp(config)


async def run_submit(app: Any, kind: PipelineKind, request_id: int) -> int:
    """Submit one request and report the outcome."""
    try:
        pipeline = await app.get_pipeline(kind)
        outcome = await pipeline.submit(request_id)
    except CroupierError as e:
        return _print_error(e, request_id)
    finally:
        await app.close()

    _print({"request_id": request_id, "pipeline": kind.value, "outcome": outcome.value})
    return EXIT_ATTENTION if outcome is SubmitOutcome.REJECTED else EXIT_OK


async def run_execute(app: Any, kind: PipelineKind, request_id: int) -> int:
    """Execute one request and map the outcome to an exit code."""
    try:
        pipeline = await app.get_pipeline(kind)
        outcome = await pipeline.execute(request_id)
        record = await pipeline.store.find_record(request_id)
    except CroupierError as e:
        return _print_error(e, request_id)
    finally:
        await app.close()

    payload: dict[str, Any] = {
        "request_id": request_id,
        "pipeline": kind.value,
        "outcome": outcome.value,
    }
    if record is not None:
        payload["status"] = record.status.value
        payload["amount"] = str(record.amount)
        if record.failure_reason:
            payload["reason"] = record.failure_reason
    _print(payload)
    return EXIT_ATTENTION if outcome.requires_attention else EXIT_OK


async def run_status(app: Any, kind: Optional[PipelineKind]) -> int:
    try:
        report = await app.status_report([kind] if kind else None)
    except CroupierError as e:
        return _print_error(e)
    finally:
        await app.close()
    _print(report)
    return EXIT_OK


async def run_sweep(app: Any, kind: Optional[PipelineKind]) -> int:
    """One pass over recent blocks; exits 1 if any request needs attention."""
    try:
        report = await app.sweep([kind] if kind else None)
    except CroupierError as e:
        return _print_error(e)
    finally:
        await app.close()
    _print(report)
    attention = {
        ExecuteOutcome.FAILED.value,
        ExecuteOutcome.EXPIRED.value,
        SubmitOutcome.REJECTED.value,
        "error",
    }
    for counts in report["pipelines"].values():
        if any(counts.get(outcome) for outcome in attention):
            return EXIT_ATTENTION
    return EXIT_OK


async def run_watch(app: Any) -> int:
    """Run until SIGINT/SIGTERM, draining in-flight work before exit."""
    import structlog

    log = structlog.get_logger()
    try:
        await app.run_forever()
        return EXIT_OK
    except CroupierError as e:
        log.error("fatal_error", error=str(e), error_kind=e.kind)
        return _print_error(e)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Croupier {__version__}")
        return EXIT_OK

    if args.command is None:
        build_parser().print_help()
        return EXIT_OK

    from croupier.core.logging import setup_logging

    try:
        config = load_config(args)
        setup_logging(
            level=config.get("croupier.log_level", "INFO"),
            json_output=config.get_bool("croupier.log_json", False),
            log_file=config.get("croupier.log_file"),
        )
    except ConfigurationError as e:
        return _print_error(e)

    try:
        app = _make_app(config)
    except CroupierError as e:
        return _print_error(e)

    if args.command == "submit":
        return asyncio.run(run_submit(app, PipelineKind(args.pipeline), args.request_id))
    if args.command == "execute":
        return asyncio.run(run_execute(app, PipelineKind(args.pipeline), args.request_id))
    if args.command == "status":
        kind = PipelineKind(args.pipeline) if args.pipeline else None
        return asyncio.run(run_status(app, kind))
    if args.command == "sweep":
        kind = PipelineKind(args.pipeline) if args.pipeline else None
        return asyncio.run(run_sweep(app, kind))
    return asyncio.run(run_watch(app))


if __name__ == "__main__":
    sys.exit(main())

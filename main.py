"""Command-line interface for the game-server hosting backend."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from gamehost.config import ConfigurationError, Settings, load_settings
from gamehost.database import Database
from gamehost.orchestrator import DataIntegrityFailure, ProvisioningOrchestrator
from gamehost.service import build_provisioning_client, create_app

logger = logging.getLogger("gamehost.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Game-server hosting backend utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the hosting database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="Port for the HTTP API (default: 3000)",
    )

    failures_parser = subparsers.add_parser(
        "failures", help="List paid orders whose provisioning needs follow-up"
    )
    failures_parser.add_argument(
        "--all",
        action="store_true",
        help="Include failures that have already been resolved",
    )

    retry_parser = subparsers.add_parser(
        "retry-provisioning", help="Retry provisioning for a recorded failure"
    )
    retry_parser.add_argument("failure_id", type=int, help="Identifier shown by 'failures'")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "failures", "retry-provisioning"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, settings: Settings, database: Database, host: str, port: int) -> None:
    import uvicorn

    logger.info("Starting hosting API on http://%s:%s", host, port)
    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _list_failures(database: Database, *, include_resolved: bool) -> None:
    failures = database.list_provisioning_failures(include_resolved=include_resolved)
    if not failures:
        print("No provisioning failures need attention.")
        return

    print(f"{len(failures)} provisioning failure(s):")
    print(f"{'ID':>4}  {'Payment':>7}  {'User':>5}  {'Plan':<10}  {'Kind':<15}  Created")
    print("-" * 80)
    for failure in failures:
        created = failure.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")
        flags = []
        if failure.needs_audit:
            flags.append("AUDIT")
        if failure.resolved:
            flags.append("resolved")
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        print(
            f"{failure.id:>4}  {failure.payment_id:>7}  {failure.user_id:>5}  "
            f"{failure.plan:<10}  {failure.kind:<15}  {created}{suffix}"
        )
        print(f"      {failure.message}")


def _retry_provisioning(settings: Settings, database: Database, failure_id: int) -> int:
    client = build_provisioning_client(settings)
    if client is None:
        print("PTERODACTYL_URL and PTERODACTYL_ADMIN_KEY must be set to retry provisioning.")
        return 1

    with client:
        orchestrator = ProvisioningOrchestrator(database, client, settings.panel)
        try:
            outcome = orchestrator.retry(failure_id)
        except (KeyError, ValueError, DataIntegrityFailure) as exc:
            print(f"Cannot retry failure {failure_id}: {exc}")
            return 1

    if outcome.server is not None:
        print(
            f"Provisioned server {outcome.server.external_id} ({outcome.server.name}) "
            f"for payment {outcome.server.payment_id}."
        )
        return 0

    failure = outcome.failure
    detail = f"{failure.kind}: {failure.message}" if failure else "unknown error"
    print(f"Retry failed ({detail}). Failure {failure_id} remains open.")
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "init-db":
        print("Database initialisation complete.")
    elif args.command == "failures":
        _list_failures(database, include_resolved=args.all)
    elif args.command == "retry-provisioning":
        return _retry_provisioning(settings, database, args.failure_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

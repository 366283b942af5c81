from __future__ import annotations

import argparse
from collections.abc import Sequence

from pulse.app.dependencies import (
    get_database,
    get_fanout_service,
    get_poll_chain,
    get_poll_pass_service,
    get_settings,
    get_source_repository,
)
from pulse.app.logging_config import configure_application_logging
from pulse.app.models.domain import SourceKind
from pulse.app.repositories.fanout_repository import FanoutRepository
from pulse.app.repositories.source_repository import DuplicateSourceError


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Manage Pulse sources, run poll passes and control the poll chain.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sources_parser = subparsers.add_parser("sources", help="Manage subscribed sources.")
    sources_sub = sources_parser.add_subparsers(dest="action", required=True)
    add_parser = sources_sub.add_parser("add", help="Subscribe to a feed URL or timeline handle.")
    add_parser.add_argument("--name", required=True, help="Display name shown on notifications.")
    add_parser.add_argument(
        "--kind",
        choices=[kind.value for kind in SourceKind],
        default=SourceKind.FEED.value,
        help="Source kind (default: FEED).",
    )
    add_parser.add_argument("--locator", required=True, help="Feed URL or timeline handle.")
    sources_sub.add_parser("list", help="List subscribed sources.")
    remove_parser = sources_sub.add_parser("remove", help="Unsubscribe a source.")
    remove_parser.add_argument("--id", dest="source_id", required=True, help="Source id (src_...).")

    subparsers.add_parser("poll-once", help="Run one poll pass now.")

    fanout_parser = subparsers.add_parser("fanout", help="Server-variant fanout operations.")
    fanout_sub = fanout_parser.add_subparsers(dest="action", required=True)
    fanout_sub.add_parser("run", help="Run one fanout pass over all subscribed feeds.")
    subscribe_parser = fanout_sub.add_parser("subscribe", help="Subscribe a user to a feed URL.")
    subscribe_parser.add_argument("--user", required=True, help="User id.")
    subscribe_parser.add_argument("--url", required=True, help="Feed URL.")
    device_parser = fanout_sub.add_parser("register-device", help="Register a push device for a user.")
    device_parser.add_argument("--user", required=True, help="User id.")
    device_parser.add_argument("--device-token", required=True, help="Opaque push token.")

    scheduler_parser = subparsers.add_parser("scheduler", help="Control the poll chain.")
    scheduler_sub = scheduler_parser.add_subparsers(dest="action", required=True)
    start_parser = scheduler_sub.add_parser("start", help="Arm the chain with an immediate unit.")
    start_parser.add_argument(
        "--interval-minutes",
        type=int,
        default=None,
        help="Base interval between passes (default: PULSE_POLL_BASE_INTERVAL_MINUTES).",
    )
    scheduler_sub.add_parser("stop", help="Cancel the chain and its pending unit.")
    scheduler_sub.add_parser("status", help="Show chain state.")

    return parser.parse_args(argv)


def _sources_command(args: argparse.Namespace) -> int:
    repository = get_source_repository()
    if args.action == "add":
        try:
            source = repository.add_source(
                display_name=args.name,
                kind=SourceKind(args.kind),
                locator=args.locator,
            )
        except (DuplicateSourceError, ValueError) as exc:
            print(f"Could not add source: {exc}")
            return 1
        print(f"Added source: {source.source_id}\t{source.kind.value}\t{source.locator}")
        return 0

    if args.action == "list":
        sources = repository.list_sources()
        if not sources:
            print("No sources subscribed.")
            return 0
        print("source_id\tkind\tdisplay_name\tlocator")
        for source in sources:
            print("\t".join([source.source_id, source.kind.value, source.display_name, source.locator]))
        return 0

    if args.action == "remove":
        removed = repository.remove_source(args.source_id)
        if removed is None:
            print(f"No source found for: {args.source_id}")
            return 1
        print(f"Removed source: {removed.source_id}")
        return 0

    raise RuntimeError(f"Unhandled sources action: {args.action}")


def _fanout_command(args: argparse.Namespace) -> int:
    if args.action == "run":
        stats = get_fanout_service().run_pass()
        for key, value in stats.to_payload().items():
            print(f"{key}: {value}")
        return 0

    repository = FanoutRepository(get_database())
    if args.action == "subscribe":
        repository.add_subscription(user_id=args.user, source_url=args.url)
        print(f"Subscribed {args.user} to {args.url}")
        return 0

    if args.action == "register-device":
        repository.add_push_token(user_id=args.user, token=args.device_token)
        print(f"Registered push device for {args.user}")
        return 0

    raise RuntimeError(f"Unhandled fanout action: {args.action}")


def _scheduler_command(args: argparse.Namespace) -> int:
    chain = get_poll_chain()
    if args.action == "start":
        try:
            status = chain.start(args.interval_minutes)
        except ValueError as exc:
            print(f"Could not start scheduler: {exc}")
            return 1
    elif args.action == "stop":
        chain.stop()
        status = chain.status()
    elif args.action == "status":
        status = chain.status()
    else:
        raise RuntimeError(f"Unhandled scheduler action: {args.action}")

    for key, value in status.to_payload().items():
        print(f"{key}: {value if value is not None else '-'}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_application_logging(get_settings())

    if args.command == "sources":
        return _sources_command(args)

    if args.command == "poll-once":
        report = get_poll_pass_service().run_pass()
        for key, value in report.to_payload().items():
            print(f"{key}: {value}")
        return 0 if report.succeeded else 1

    if args.command == "fanout":
        return _fanout_command(args)

    if args.command == "scheduler":
        return _scheduler_command(args)

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())

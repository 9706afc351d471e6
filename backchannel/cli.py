from __future__ import annotations

import argparse
import logging
import sys

import uvicorn

from backchannel.config.settings import get_settings


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _make_help_handler(parser: argparse.ArgumentParser):
    def _handler(_args: argparse.Namespace) -> int:
        parser.print_help()
        return 0

    return _handler


def cmd_serve(args: argparse.Namespace) -> int:
    from backchannel.api.app import app

    settings = get_settings()
    uvicorn.run(
        app,
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    from backchannel.api.dependencies import get_authorization_store
    from backchannel.worker.sweeper import SweepWorker

    grace = args.grace
    if grace is None:
        grace = get_settings().authorization.sweep_grace_seconds
    worker = SweepWorker(get_authorization_store(), grace_seconds=grace)
    deleted = worker.sweep()
    print(f"Purged {deleted} expired authorization request(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="backchannel", description="Backchannel CLI")

    # Default behavior: start the API server
    parser.add_argument("--host", default=None, help="API server host (default: settings)")
    parser.add_argument(
        "--port", type=int, default=None, help="API server port (default: settings)"
    )
    parser.set_defaults(func=cmd_serve)

    sub = parser.add_subparsers(dest="command", required=False)

    help_cmd = sub.add_parser("help", help="Show help")
    help_cmd.set_defaults(func=_make_help_handler(parser))

    serve = sub.add_parser("serve", help="Serve the API (default behavior)")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    sweep = sub.add_parser("sweep", help="Purge expired authorization requests once")
    sweep.add_argument(
        "--grace", type=float, default=None, help="Seconds past expiry before purging"
    )
    sweep.set_defaults(func=cmd_sweep)

    return parser


def main(argv: list[str] | None = None) -> int:
    _configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

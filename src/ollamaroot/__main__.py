"""Module entrypoint for `python -m ollamaroot`."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .context import AppContext
from .config import RuntimeConfig
from .errors import FetchError
from .preflight import check_runtime, describe_missing
from .runtime_paths import STRATEGIES
from .supervisor import ServerState


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m ollamaroot", description="Run the sandboxed Ollama server.")
    parser.add_argument("--app-dir", help="Override ollamaroot app directory.")
    parser.add_argument("--strategy", choices=STRATEGIES, help="Provisioning variant.")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr.")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("status", help="Show server status and missing prerequisites.")
    commands.add_parser("serve", help="Start the server and keep it in the foreground.")
    commands.add_parser("models", help="List installed models.")
    pull = commands.add_parser("pull", help="Download a model.")
    pull.add_argument("name")
    remove = commands.add_parser("rm", help="Delete a model.")
    remove.add_argument("name")
    return parser.parse_args(argv)


def _status(ctx: AppContext) -> int:
    status = ctx.supervisor.get_status()
    print(f"server: {status.value}")
    runtime = check_runtime(ctx.provisioner.layout)
    if not runtime.ok:
        print("")
        print(describe_missing(runtime))
    return 0


def _serve(ctx: AppContext) -> int:
    state = ctx.supervisor.serve()
    if state is not ServerState.READY:
        record = ctx.errors.last
        print(f"server not ready: {state.value}", file=sys.stderr)
        if record is not None:
            print(str(record), file=sys.stderr)
        print("", file=sys.stderr)
        print("Manual install:", file=sys.stderr)
        print(ctx.provisioner.manual_install_hint(), file=sys.stderr)
        return 1

    print(f"Ollama server ready at {ctx.config.base_url} (Ctrl+C to stop)")
    handle = ctx.supervisor.handle
    if handle is None:
        return 0
    try:
        exit_code = handle.process.wait()
    except KeyboardInterrupt:
        print("stopping server")
        return 0
    print(f"server exited with code {exit_code}", file=sys.stderr)
    return 1


def _models(ctx: AppContext) -> int:
    for name in ctx.client().list_models():
        print(name)
    return 0


def _pull(ctx: AppContext, name: str) -> int:
    last = None
    for progress in ctx.client().pull(name):
        print(progress.describe())
        last = progress
    if last is None or last.error is not None:
        return 1
    return 0


def _remove(ctx: AppContext, name: str) -> int:
    if ctx.client().delete(name):
        print(f"deleted {name}")
        return 0
    print(f"model not found: {name}", file=sys.stderr)
    return 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = RuntimeConfig.from_env(
            app_dir=Path(args.app_dir) if args.app_dir else None,
            strategy=args.strategy,
        )
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    command = args.command or "status"
    with AppContext.create(config) as ctx:
        try:
            if command == "status":
                return _status(ctx)
            if command == "serve":
                return _serve(ctx)
            if command == "models":
                return _models(ctx)
            if command == "pull":
                return _pull(ctx, args.name)
            if command == "rm":
                return _remove(ctx, args.name)
        except FetchError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main())

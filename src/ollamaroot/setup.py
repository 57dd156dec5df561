"""Initialize the ollamaroot sandbox and server binary.

Usage:
    python -m ollamaroot.setup
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import DEFAULT_SERVER_VERSION, RuntimeConfig
from .provision import Phase, ProgressEvent, Provisioner, create_provisioner, drain
from .runtime_paths import STRATEGIES


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Set up the local ollamaroot sandbox.")
    parser.add_argument(
        "--app-dir",
        help="Override ollamaroot app directory (defaults to platform app data location).",
    )
    parser.add_argument(
        "--strategy",
        choices=STRATEGIES,
        help="Provisioning variant (default: $OLLAMAROOT_STRATEGY or interposition).",
    )
    parser.add_argument(
        "--server-version",
        help=f"Ollama release to install (default: {DEFAULT_SERVER_VERSION}).",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete the existing sandbox tree before setting up again.",
    )
    parser.add_argument(
        "--skip-server",
        action="store_true",
        help="Only build the sandbox; do not download the server binary.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr.")
    return parser.parse_args(argv)


def _print_event(event: ProgressEvent) -> None:
    if event.phase is Phase.FAILED:
        return
    print(f"[{event.percent:3d}%] {event.message}")


def _report_failure(event: ProgressEvent, provisioner: Provisioner) -> None:
    record = event.error
    print("", file=sys.stderr)
    if record is None:
        print(f"setup failed: {event.message}", file=sys.stderr)
    else:
        print(f"setup failed during {record.phase}: {record}", file=sys.stderr)
        print(f"suggested action: {record.remediation.value}", file=sys.stderr)
    print("", file=sys.stderr)
    print("Manual install:", file=sys.stderr)
    print(provisioner.manual_install_hint(), file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    try:
        config = RuntimeConfig.from_env(
            app_dir=Path(args.app_dir) if args.app_dir else None,
            strategy=args.strategy,
            server_version=args.server_version,
        )
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    provisioner = create_provisioner(config)
    print(f"ollamaroot app dir: {config.resolved_app_dir}")
    print(f"strategy: {config.strategy} ({provisioner.arch.value})")

    if args.reset:
        print("removing existing sandbox")
        provisioner.reset()

    final = drain(provisioner.setup(), _print_event)
    if final.phase is Phase.FAILED:
        _report_failure(final, provisioner)
        return 1

    if not args.skip_server:
        final = drain(provisioner.install_server(), _print_event)
        if final.phase is Phase.FAILED:
            _report_failure(final, provisioner)
            return 1

    print("")
    print("ollamaroot runtime setup complete.")
    print("Start the server with `python -m ollamaroot serve`.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

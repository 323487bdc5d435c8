"""Entry point for `python -m lazy` / `lazy`.

Subcommands:
    lazy            Run the service (default)
    lazy engines    List configured engines without starting anything
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys


def _run() -> None:
    from lazy.app import LazyApp

    app = LazyApp()
    asyncio.run(app.run())


def _engines() -> None:
    from lazy.config import get_settings

    s = get_settings()
    if not s.engines and s.ui is None:
        print("No engines configured", file=sys.stderr)
        sys.exit(1)
    for name, engine in sorted(s.engines.items()):
        print(f"{name}\t{engine.image}")
    if s.ui is not None:
        print(f"ui\t{s.ui.image}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="lazy",
        description="Run and route lazy's analysis engines",
    )
    parser.add_argument(
        "--config",
        help="Path to the TOML config file (default: $LAZY_CONFIG_FILE or lazy.toml)",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("engines", help="List configured engines")

    args = parser.parse_args()
    if args.config:
        os.environ["LAZY_CONFIG_FILE"] = args.config

    match args.command:
        case "engines":
            _engines()
        case _:
            _run()


if __name__ == "__main__":
    main()

"""Command-line interface for convoflow."""

from __future__ import annotations

from collections.abc import Sequence

from .commands import SAMPLE_FLOW, cmd_init, cmd_serve, cmd_sweep, cmd_validate
from .parser import build_parser, print_banner


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point.

    Args:
        argv: Optional sequence of CLI arguments (without the program name).

    Returns:
        Process exit code. 0 for success.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        raise SystemExit(0)

    handlers = {
        "init": cmd_init,
        "validate": cmd_validate,
        "serve": cmd_serve,
        "sweep": cmd_sweep,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)

    parser.print_help()
    return 1


__all__ = [
    "main",
    "build_parser",
    "print_banner",
    "SAMPLE_FLOW",
    "cmd_init",
    "cmd_serve",
    "cmd_sweep",
    "cmd_validate",
]

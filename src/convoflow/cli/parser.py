"""CLI argument parser and banner display."""

from __future__ import annotations

import argparse

from rich.console import Console
from rich.panel import Panel

from .. import __version__
from ..core.config import ConvoflowConfig


def print_banner(config: ConvoflowConfig, args: argparse.Namespace) -> None:
    """Print a startup banner with configuration info."""
    console = Console()

    api = config.api
    gateway = config.gateway.base_url or "recording only (no gateway.base_url)"
    info = f"""
[bold]convoflow[/bold] [green]v{__version__}[/]
Conversational automation runtime.

[dim]----------------------------------------------------[/]
[bold]Config:[/bold]    [yellow]{args.config or "environment"}[/]
[bold]Database:[/bold]  [yellow]{config.database.url}[/]
[bold]Gateway:[/bold]   [yellow]{gateway}[/]
[bold]API:[/bold]       [yellow]{"http://%s:%s" % (api.host, api.port) if api.enabled else "off"}[/]
[bold]Poll:[/bold]      [yellow]every {config.scheduler.poll_interval_seconds}s[/]
"""

    console.print(
        Panel(info, title="[bold white]Startup[/]", border_style="blue", expand=False)
    )


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to a YAML/JSON configuration file (default: environment variables)",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Returns:
        ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="convoflow",
        description="convoflow - run conversational automations against a messaging channel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Generate a configuration and a sample flow
  convoflow init -o convoflow.yaml --flow welcome.yaml

  # Check a flow definition before uploading it
  convoflow validate welcome.yaml

  # Run the API and the timer poll loop
  convoflow serve -c convoflow.yaml

  # Fire due timers once (e.g. from cron)
  convoflow sweep -c convoflow.yaml
        """,
    )

    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s v{__version__}",
        help="Show program's version number and exit",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init
    init_parser = subparsers.add_parser("init", help="Generate a default configuration")
    init_parser.add_argument(
        "-o",
        "--output",
        default="convoflow.yaml",
        help="Output config file path (default: convoflow.yaml)",
    )
    init_parser.add_argument("--flow", default=None, help="Also write a sample flow file here")
    init_parser.add_argument(
        "-f", "--force", action="store_true", help="Overwrite existing files without asking"
    )

    # validate
    validate_parser = subparsers.add_parser(
        "validate", help="Validate a flow file or a configuration file"
    )
    validate_parser.add_argument("path", nargs="?", help="Flow definition (YAML or JSON)")
    validate_parser.add_argument(
        "-c", "--config", default=None, help="Validate this configuration file instead"
    )

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the API and the timer poll loop")
    _add_config_argument(serve_parser)
    serve_parser.add_argument("--host", default=None, help="Override api.host")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Override api.port")
    serve_parser.add_argument(
        "--no-api", action="store_true", help="Only run the scheduler, without the HTTP API"
    )
    serve_parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug/verbose logging mode"
    )

    # sweep
    sweep_parser = subparsers.add_parser(
        "sweep", help="Fire due timers, reconcile stuck runs and expire stale waits once"
    )
    _add_config_argument(sweep_parser)

    return parser

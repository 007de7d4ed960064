"""CLI commands: init, validate, serve, sweep."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

from ..app import AutomationRuntime
from ..core.config import ConvoflowConfig, TemplateConfig
from ..core.logger import get_logger, setup_logging
from ..flows.validation import validate_flow_file
from .parser import print_banner

logger = get_logger("cli")

console = Console()

SAMPLE_FLOW: dict[str, Any] = {
    "id": "welcome",
    "name": "Welcome new contacts",
    "description": "Greets the contact, asks for a name and follows up with a template.",
    "trigger": "new_conversation",
    "status": "active",
    "steps": [
        {
            "id": "greet",
            "type": "custom_reply",
            "position": 0,
            "isStart": True,
            "config": {"message": "Welcome!"},
            "nextStepId": "ask_name",
        },
        {
            "id": "ask_name",
            "type": "user_reply",
            "position": 1,
            "config": {"question": "What's your name?", "saveAs": "name"},
            "nextStepId": "pause",
        },
        {
            "id": "pause",
            "type": "time_gap",
            "position": 2,
            "config": {"delaySeconds": 60},
            "nextStepId": "welcome_back",
        },
        {
            "id": "welcome_back",
            "type": "send_template",
            "position": 3,
            "config": {"templateId": "tpl_welcome_back", "variables": {"name": "{{name}}"}},
        },
    ],
}


def _confirm_overwrite(path: Path, force: bool) -> bool:
    if not path.exists() or force:
        return True
    response = input(f"{path} already exists. Overwrite? (y/N): ")
    return response.lower() == "y"


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, default_flow_style=False, allow_unicode=True, sort_keys=False)


def cmd_init(args: argparse.Namespace) -> int:
    """Handle init command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    output_path = Path(args.output)
    if not _confirm_overwrite(output_path, args.force):
        print("Cancelled.")
        return 0

    config = ConvoflowConfig(
        templates=[
            TemplateConfig(
                id="tpl_welcome_back",
                name="welcome_back",
                body="Welcome back, {{name}}!",
            )
        ]
    )
    _write_yaml(output_path, config.model_dump(mode="json"))
    print(f"✓ Configuration file created: {output_path}")

    if args.flow:
        flow_path = Path(args.flow)
        if _confirm_overwrite(flow_path, args.force):
            _write_yaml(flow_path, SAMPLE_FLOW)
            print(f"✓ Sample flow created: {flow_path}")

    print("\nNext steps:")
    print(f"1. Edit {output_path} and set gateway.base_url")
    print(f"2. Start the runtime: convoflow serve --config {output_path}")
    print("3. POST your flow to /automations")
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Handle validate command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    if args.config:
        try:
            config = ConvoflowConfig.load(args.config)
        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]✗ Invalid configuration:[/] {e}")
            return 1
        console.print(
            f"[green]✓ Configuration is valid[/] ({len(config.templates)} template(s))"
        )
        return 0

    if not args.path:
        console.print("[red]✗ Nothing to validate:[/] pass a flow file or --config")
        return 1

    is_valid, errors = validate_flow_file(args.path)
    if is_valid:
        console.print(f"[green]✓ Flow is valid:[/] {args.path}")
        return 0

    table = Table(title=f"Problems in {args.path}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Problem", style="red")
    for index, error in enumerate(errors, start=1):
        table.add_row(str(index), error)
    console.print(table)
    return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Handle serve command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    try:
        config = ConvoflowConfig.load(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        print("Run 'convoflow init' to create a default configuration.")
        return 1

    if args.debug:
        config.logging.level = "DEBUG"
    if args.host:
        config.api.host = args.host
    if args.port:
        config.api.port = args.port

    setup_logging(config.logging)
    print_banner(config, args)

    try:
        runtime = AutomationRuntime(config)
        runtime.start(serve_api=not args.no_api)
        runtime.wait()
        return 0
    except KeyboardInterrupt:
        logger.info("Runtime interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Error running convoflow: {e}", exc_info=True)
        return 1


def cmd_sweep(args: argparse.Namespace) -> int:
    """Handle sweep command.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    try:
        config = ConvoflowConfig.load(args.config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    setup_logging(config.logging)
    runtime = AutomationRuntime(config)
    try:
        report = runtime.timers.poll()
    finally:
        runtime.db.dispose()

    table = Table(title="Timer sweep")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Fired", str(len(report.fired)))
    table.add_row("Redelivered", str(len(report.redelivered)))
    table.add_row("Skipped (claimed elsewhere)", str(report.skipped))
    table.add_row("Late", str(len(report.missed_windows)))
    table.add_row("Errors", str(len(report.errors)))
    console.print(table)

    for run_id, error in report.errors.items():
        console.print(f"[red]✗ {run_id}:[/] {error}")
    return 1 if report.errors else 0

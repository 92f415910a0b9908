"""droid-acp CLI.

Default mode runs the ACP agent over stdio (for editor integration).

Usage:
    droid-acp                               # Stdio ACP agent (default)
    droid-acp -r high                       # Pass a reasoning effort to droid
    droid-acp --experiment-sessions         # Enable session load/list/resume
    droid-acp --websearch-proxy             # Route droid API calls through the proxy

    droid-acp sessions [--cwd DIR] [--all]  # List local droid session history
    droid-acp config [--json]               # Show effective configuration
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import os
from datetime import datetime
from pathlib import Path

import click

from .config import BridgeConfig

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"


def format_datetime(dt: datetime | str | None) -> str:
    """Format datetime for display."""
    if dt is None:
        return "N/A"
    if isinstance(dt, str):
        try:
            dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))
        except ValueError:
            return dt
    return dt.strftime("%Y-%m-%d %H:%M")


def truncate(text: str | None, max_len: int = 50) -> str:
    """Truncate text for display."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def build_config(
    reasoning_effort: str | None,
    experiment_sessions: bool,
    websearch_proxy: bool,
    debug: bool,
    droid: str | None,
) -> BridgeConfig:
    """Environment configuration with the command-line options on top."""
    config = BridgeConfig.from_env()
    if reasoning_effort:
        config.reasoning_effort = reasoning_effort
    if experiment_sessions:
        config.experiment_sessions = True
    if websearch_proxy:
        config.websearch_enabled = True
    if debug:
        config.debug = True
    if droid:
        config.droid_executable = droid
    return config


@click.group(invoke_without_command=True)
@click.option(
    "--reasoning-effort", "-r", default=None, help="Reasoning effort passed to droid (-r)"
)
@click.option(
    "--experiment-sessions", is_flag=True, help="Enable session load/list/resume and /sessions"
)
@click.option(
    "--websearch-proxy", is_flag=True, help="Run the local web-search proxy for droid API calls"
)
@click.option("--debug", is_flag=True, help="Verbose logging and raw tool input")
@click.option("--droid", "droid", default=None, help="Path to the droid executable")
@click.pass_context
def main(
    ctx: click.Context,
    reasoning_effort: str | None,
    experiment_sessions: bool,
    websearch_proxy: bool,
    debug: bool,
    droid: str | None,
) -> None:
    """droid-acp - Agent Client Protocol bridge for the Factory droid CLI.

    By default, runs the ACP agent over stdio.
    """
    config = build_config(reasoning_effort, experiment_sessions, websearch_proxy, debug, droid)
    ctx.obj = config

    # If a subcommand is invoked, let it handle everything
    if ctx.invoked_subcommand is not None:
        return

    _run_stdio_agent(config)


def _run_stdio_agent(config: BridgeConfig) -> None:
    """Run the ACP agent over stdio."""
    from .stdio import install_stdio_guards

    install_stdio_guards(debug=config.debug)

    from .acp import run_stdio_agent

    click.echo("Starting droid-acp in stdio mode", err=True)
    try:
        asyncio.run(run_stdio_agent(config))
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


# =============================================================================
# Session Commands
# =============================================================================


@main.command("sessions")
@click.option("--cwd", default=None, help="Working directory (default: current directory)")
@click.option("--all", "show_all", is_flag=True, help="List sessions of every directory")
@click.option("--limit", "-n", default=20, help="Maximum sessions to show")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_obj
def sessions_list(
    config: BridgeConfig, cwd: str | None, show_all: bool, limit: int, output_format: str
) -> None:
    """List droid sessions from local history.

    Examples:

        # Sessions of the current directory
        droid-acp sessions

        # Every directory, as JSON
        droid-acp sessions --all --format json
    """
    from .acp.session_discovery import list_sessions

    cwd = cwd or os.getcwd()
    records, _ = list_sessions(
        config.sessions_dir,
        cwd=None if show_all else cwd,
        preferred_cwd=cwd,
        page_size=limit,
    )

    if not records:
        click.echo("No sessions found.")
        return

    if output_format == FORMAT_JSON:
        click.echo(
            json.dumps(
                [
                    {
                        "session_id": r.session_id,
                        "cwd": r.cwd,
                        "title": r.title,
                        "updated_at": r.updated_at,
                    }
                    for r in records
                ],
                indent=2,
                ensure_ascii=False,
            )
        )
        return

    click.echo(f"{'ID':<38} {'Updated':<17} {'Title':<40}")
    click.echo("-" * 97)
    for r in records:
        click.echo(f"{r.session_id:<38} {format_datetime(r.updated_at):<17} {truncate(r.title, 40)}")
        if show_all:
            click.echo(f"{'':<38} {r.cwd}")

    click.echo(f"\nTotal: {len(records)} session(s)")


# =============================================================================
# Config Commands
# =============================================================================


@main.command("config")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def show_config(config: BridgeConfig, output_json: bool) -> None:
    """Show the effective configuration.

    Examples:

        droid-acp config
        droid-acp --experiment-sessions config --json
    """
    values = {
        k: str(v) if isinstance(v, Path) else v for k, v in dataclasses.asdict(config).items()
    }
    values["sessions_dir"] = str(config.sessions_dir)
    values["factory_api_key"] = "set" if os.environ.get("FACTORY_API_KEY") else "not set"

    if output_json:
        click.echo(json.dumps(values, indent=2))
        return

    click.echo("droid-acp Configuration")
    click.echo("-" * 40)
    for key, value in values.items():
        click.echo(f"{key + ':':<26}{value}")


if __name__ == "__main__":
    main()

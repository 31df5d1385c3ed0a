"""CLI application — Click-based command hierarchy for clawbridge.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

import click


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Log gateway traffic")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.option("--url", envvar="OPENCLAW_GATEWAY_URL", default=None, help="Gateway WebSocket URL")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool, no_color: bool, url: str | None) -> None:
    """clawbridge - OpenClaw gateway client and channel bridge."""
    from clawbridge.main import configure_logging

    configure_logging(logging.INFO if verbose else logging.WARNING)
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color
    ctx.obj["url"] = url


def _register_subcommands() -> None:
    from clawbridge.cli.gateway_cmds import (
        ask_agent_cmd,
        channels_cmd,
        delegate_cmd,
        send_cmd,
        sessions_cmd,
        start_daemon_cmd,
        status_cmd,
    )
    from clawbridge.cli.watch import watch_cmd

    cli.add_command(status_cmd)
    cli.add_command(channels_cmd)
    cli.add_command(send_cmd)
    cli.add_command(delegate_cmd)
    cli.add_command(ask_agent_cmd)
    cli.add_command(start_daemon_cmd)
    cli.add_command(sessions_cmd)
    cli.add_command(watch_cmd)


_register_subcommands()

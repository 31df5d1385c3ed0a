"""Gateway commands — status, channels, send, delegate, ask-agent, start-daemon, sessions."""

from __future__ import annotations

import contextlib
import json as json_mod
import sys
from dataclasses import asdict
from typing import AsyncIterator, Optional

import click

from clawbridge.cli.app import async_cmd
from clawbridge.cli.formatters import (
    channels_table,
    format_duration,
    format_timestamp_ms,
    get_console,
    sessions_table,
    state_line,
)
from clawbridge.config import ClawBridgeConfig
from clawbridge.controller import GatewayController


def load_config(ctx: click.Context, *, fetch_skills: bool = False) -> ClawBridgeConfig:
    config = ClawBridgeConfig()
    url = ctx.obj.get("url")
    if url:
        config.gateway.url = url
    config.controller.fetch_skills = fetch_skills
    return config


@contextlib.asynccontextmanager
async def open_controller(ctx: click.Context) -> AsyncIterator[GatewayController]:
    """Initialize a controller for one command and dispose it afterwards."""
    controller = GatewayController(load_config(ctx))
    try:
        await controller.initialize()
        if not controller.is_installed:
            # A reachable gateway is still usable without the local CLI.
            await controller.refresh_status()
        yield controller
    finally:
        await controller.dispose()


def _not_connected(ctx: click.Context, controller: GatewayController) -> bool:
    if controller.is_connected:
        return False
    if ctx.obj.get("json"):
        click.echo(json_mod.dumps({"state": controller.state}))
    else:
        click.echo(f"OpenClaw gateway is not reachable at {controller.client.url}.")
        if controller.is_installed:
            click.echo("Start it with: clawbridge start-daemon")
        else:
            click.echo("The openclaw CLI was not found on this machine.")
    return True


@click.command("status")
@click.pass_context
@async_cmd
async def status_cmd(ctx: click.Context) -> None:
    """Show daemon state, version and channel count."""
    async with open_controller(ctx) as controller:
        status = controller.status
        if ctx.obj.get("json"):
            click.echo(json_mod.dumps({
                "state": controller.state,
                "status": asdict(status) if status else None,
                "channels": [asdict(c) for c in controller.channels],
            }, indent=2))
            return

        console = get_console(no_color=ctx.obj.get("no_color", False))
        console.print("[bold]OpenClaw Gateway[/bold]")
        console.print(state_line(controller.state))
        console.print(f"  URL: {controller.client.url}")
        if status is not None:
            console.print(f"  Version: {status.version}")
            if status.uptime:
                console.print(f"  Uptime: {format_duration(status.uptime)}")
            console.print(f"  Channels: {len(controller.connected_channels)} connected")


@click.command("channels")
@click.pass_context
@async_cmd
async def channels_cmd(ctx: click.Context) -> None:
    """List channels known to the gateway."""
    async with open_controller(ctx) as controller:
        if _not_connected(ctx, controller):
            return
        if ctx.obj.get("json"):
            click.echo(json_mod.dumps([asdict(c) for c in controller.channels], indent=2))
            return
        console = get_console(no_color=ctx.obj.get("no_color", False))
        console.print(channels_table(controller.channels))


@click.command("send")
@click.argument("channel")
@click.argument("message")
@click.option("--to", "to", default=None, help="Recipient (+E.164); defaults to your own account")
@click.pass_context
@async_cmd
async def send_cmd(ctx: click.Context, channel: str, message: str, to: Optional[str]) -> None:
    """Send MESSAGE directly through CHANNEL."""
    async with open_controller(ctx) as controller:
        if _not_connected(ctx, controller):
            sys.exit(1)
        ok = await controller.send_to_channel(channel, message, to)
        click.echo("Sent." if ok else "Send failed.")
        if not ok:
            sys.exit(1)


@click.command("delegate")
@click.argument("prompt")
@click.option("--session", "session_key", default=None, help="Gateway session key")
@click.pass_context
@async_cmd
async def delegate_cmd(ctx: click.Context, prompt: str, session_key: Optional[str]) -> None:
    """Hand PROMPT to the OpenClaw agent as a task."""
    async with open_controller(ctx) as controller:
        if _not_connected(ctx, controller):
            sys.exit(1)
        ok = await controller.send_agent_task(prompt, session_key)
        click.echo("Task accepted." if ok else "Task rejected.")
        if not ok:
            sys.exit(1)


@click.command("ask-agent")
@click.argument("message")
@click.option("--session", "session_key", default=None, help="Gateway session key")
@click.option("--thinking", default=None, help="Thinking level (e.g. low, high)")
@click.option("--model", default=None, help="Model override")
@click.option("--timeout", type=float, default=None, help="Overall timeout in seconds")
@click.pass_context
@async_cmd
async def ask_agent_cmd(
    ctx: click.Context,
    message: str,
    session_key: Optional[str],
    thinking: Optional[str],
    model: Optional[str],
    timeout: Optional[float],
) -> None:
    """Run the OpenClaw agent on MESSAGE and stream its answer."""
    async with open_controller(ctx) as controller:
        if _not_connected(ctx, controller):
            sys.exit(1)
        console = get_console(no_color=ctx.obj.get("no_color", False))
        failed = False
        stream = controller.client.send_agent_message(
            message,
            session_key=session_key,
            thinking=thinking,
            model=model,
            timeout=timeout,
        )
        async for chunk in stream:
            if ctx.obj.get("json"):
                click.echo(json_mod.dumps(asdict(chunk)))
            elif chunk.type == "text":
                console.print(chunk.content, end="", markup=False, highlight=False)
            elif chunk.type == "thinking" and ctx.obj.get("verbose"):
                console.print(chunk.content, style="dim italic", end="", markup=False)
            elif chunk.type in ("tool_use", "tool_result") and chunk.tool_call is not None:
                console.print(f"\n[dim]\\[{chunk.type}] {chunk.tool_call.name}[/dim]")
            elif chunk.type == "error":
                failed = True
                console.print(f"\n[red]Error:[/red] {chunk.content}")
        if not ctx.obj.get("json"):
            console.print()
        if failed:
            sys.exit(1)


@click.command("start-daemon")
@click.pass_context
@async_cmd
async def start_daemon_cmd(ctx: click.Context) -> None:
    """Start the OpenClaw daemon in the background and connect to it."""
    async with open_controller(ctx) as controller:
        if controller.is_connected:
            click.echo("OpenClaw gateway is already running.")
            return
        ok = await controller.start_daemon()
        click.echo("OpenClaw gateway started." if ok else "Could not start the OpenClaw gateway.")
        if not ok:
            sys.exit(1)


@click.command("sessions")
@click.argument("session_key", required=False)
@click.option("--limit", type=int, default=20, help="Maximum rows")
@click.pass_context
@async_cmd
async def sessions_cmd(ctx: click.Context, session_key: Optional[str], limit: int) -> None:
    """List gateway sessions, or show the history of SESSION_KEY."""
    async with open_controller(ctx) as controller:
        if _not_connected(ctx, controller):
            return
        console = get_console(no_color=ctx.obj.get("no_color", False))
        if session_key:
            messages = await controller.get_session_history(session_key, limit=limit)
            if ctx.obj.get("json"):
                click.echo(json_mod.dumps([asdict(m) for m in messages], indent=2))
                return
            for m in messages:
                console.print(f"[bold]{m.role}[/bold] [dim]{format_timestamp_ms(m.timestamp)}[/dim]")
                console.print(m.content, markup=False)
                console.print()
            return

        sessions = await controller.list_sessions(limit=limit)
        if ctx.obj.get("json"):
            click.echo(json_mod.dumps([asdict(s) for s in sessions], indent=2))
            return
        console.print(sessions_table(sessions))

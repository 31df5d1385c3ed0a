"""Watch command — run the bridge in the foreground and print channel traffic."""

from __future__ import annotations

import asyncio
import json as json_mod
from typing import Optional

import click
from rich.markup import escape

from clawbridge.cli.app import async_cmd
from clawbridge.cli.formatters import format_timestamp_ms, get_console, state_line
from clawbridge.cli.gateway_cmds import load_config
from clawbridge.events import ActivityAppendedEvent, BridgeEvent, GatewayStatusChangedEvent
from clawbridge.main import build_runtime
from clawbridge.routing import BridgeDelegate

CONSOLE_CONVERSATION = "console"


class ConsoleDelegate(BridgeDelegate):
    """A single always-idle conversation that prints what reaches it."""

    def __init__(self, console, json_output: bool = False) -> None:
        self._console = console
        self._json = json_output
        self.injected: list[tuple[str, str, Optional[str]]] = []

    def get_active_conversation_id(self) -> Optional[str]:
        return CONSOLE_CONVERSATION

    def is_running(self, conversation_id: str) -> bool:
        return False

    def has_pending_question(self, conversation_id: str) -> bool:
        return False

    def get_pending_question_id(self, conversation_id: str) -> Optional[str]:
        return None

    def answer_pending_question(self, conversation_id: str, question_id: str, answer: str) -> None:
        pass

    def cancel_request(self, conversation_id: str) -> None:
        pass

    def inject_channel_message(
        self,
        conversation_id: str,
        channel_name: str,
        content: str,
        sender: Optional[str] = None,
    ) -> None:
        self.injected.append((channel_name, content, sender))
        if self._json:
            click.echo(json_mod.dumps({
                "type": "inbound",
                "channel": channel_name,
                "sender": sender,
                "content": content,
            }))
            return
        who = f" {sender}" if sender else ""
        self._console.print(f"[bold cyan]<< {channel_name}{who}[/bold cyan]")
        self._console.print(content, markup=False)


@click.command("watch")
@click.option("--track", "tracked", multiple=True, help="Accept inbound messages from this contact")
@click.pass_context
@async_cmd
async def watch_cmd(ctx: click.Context, tracked: tuple[str, ...]) -> None:
    """Run the routing bridge and print inbound messages and activity."""
    json_output = ctx.obj.get("json", False)
    console = get_console(no_color=ctx.obj.get("no_color", False))
    delegate = ConsoleDelegate(console, json_output)
    controller, bridge = build_runtime(load_config(ctx, fetch_skills=True), delegate)

    def _on_status(event: BridgeEvent) -> None:
        if not isinstance(event, GatewayStatusChangedEvent):
            return
        if json_output:
            click.echo(event.model_dump_json())
            return
        console.print(state_line(event.state, f"gateway {event.state}"))

    def _on_activity(event: BridgeEvent) -> None:
        if not isinstance(event, ActivityAppendedEvent):
            return
        if json_output:
            click.echo(event.model_dump_json())
            return
        details = f": {event.details}" if event.details else ""
        console.print(
            f"[dim]{format_timestamp_ms(event.timestamp)}[/dim] "
            + escape(f"[{event.source}] {event.action}{details}")
        )

    controller.on_status_changed(_on_status)
    controller.on_activity(_on_activity)

    try:
        await controller.start()
        bridge.start()
        for contact in tracked:
            bridge.contacts.track(contact, "any")
        if not json_output:
            console.print("[dim]Watching OpenClaw channels (press Ctrl+C to stop)...[/dim]")
        await asyncio.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        bridge.dispose()
        await controller.dispose()

"""Slash command for inspecting the server's dependency retry queue."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..api.auth import validate_device_id
from ..errors import SyncError
from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_rich,
)
from .server import get_server


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Inspect and drive the retry queue."""

    if not args:
        return _show_summary(context)

    if args[0].lower() == "help":
        return _show_help()
    if args[0].lower() == "purge":
        return _purge(context, args[1:])

    try:
        device_id = validate_device_id(args[0])
    except SyncError as e:
        return f"[queue] {e.message}"

    action = args[1].lower() if len(args) > 1 else "show"
    if action == "show":
        return _show_device(context, device_id)
    elif action == "process":
        return _process(context, device_id)
    elif action == "reset":
        return _reset(context, device_id, args[2:])
    else:
        return f"[queue] Unknown action '{action}'. Use /queue help for usage."


def _show_summary(context: SlashCommandContext) -> str:
    counts = get_server(context).coordinator.store.queue_counts()

    def _render(console: Console) -> None:
        table = Table(title="Retry Queue (all devices)", show_header=True, header_style="bold cyan")
        table.add_column("Table", style="green")
        table.add_column("Queued", justify="right")
        table.add_column("Exhausted", justify="right")
        for name, by_status in counts.items():
            table.add_row(
                name,
                str(by_status.get("QUEUED", 0)),
                str(by_status.get("EXHAUSTED", 0)),
            )
        if not counts:
            table.add_row("(empty)", "0", "0")
        console.print(table)

    return render_rich(_render)


def _show_device(context: SlashCommandContext, device_id: str) -> str:
    status = get_server(context).coordinator.queue_status(device_id)

    def _render(console: Console) -> None:
        table = Table(title=f"Retry Queue for {device_id}", show_header=True, header_style="bold cyan")
        table.add_column("Table", style="green")
        table.add_column("Record")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Missing")
        for entry in status["entries"]:
            missing = ", ".join(
                f"{name}:{','.join(str(rid) for rid in ids)}"
                for name, ids in entry["missingDependencies"].items()
            )
            table.add_row(
                entry["tableName"],
                entry["recordId"],
                entry["status"],
                f"{entry['attempts']}/{entry['maxAttempts']}",
                missing or "-",
            )
        console.print(table)
        console.print(
            f"Queued: {status['byStatus'].get('QUEUED', 0)}  "
            f"Exhausted: {status['byStatus'].get('EXHAUSTED', 0)}"
        )

    return render_rich(_render)


def _process(context: SlashCommandContext, device_id: str) -> str:
    result = get_server(context).coordinator.process_queue(device_id)
    if result.skipped:
        return f"[queue] {result.message}"
    return f"[queue] Processed {result.processed} entr{'y' if result.processed == 1 else 'ies'}: {result.message}"


def _reset(context: SlashCommandContext, device_id: str, args: List[str]) -> str:
    table = args[0] if args else None
    try:
        count = get_server(context).coordinator.reset_queue(device_id, table)
    except SyncError as e:
        return f"[queue] {e.message}"
    return f"[queue] {count} exhausted entr{'y' if count == 1 else 'ies'} re-queued."


def _purge(context: SlashCommandContext, args: List[str]) -> str:
    try:
        days = int(args[0]) if args else 7
    except ValueError:
        return "[queue] Usage: /queue purge [days]"
    count = get_server(context).coordinator.queue.purge_exhausted(days)
    return f"[queue] Purged {count} exhausted entr{'y' if count == 1 else 'ies'} older than {days} day(s)."


def _show_help() -> str:
    return """[queue] Usage:
  /queue                          Queue counts by table across devices
  /queue <device-id>              Entries held for one device
  /queue <device-id> process      Retry that device's queued entries now
  /queue <device-id> reset [table]  Give exhausted entries a fresh set of attempts
  /queue purge [days]             Delete exhausted entries older than N days (default 7)
  /queue help                     Show this help"""


COMMAND = SlashCommand(
    name="queue",
    description="Inspect records waiting on dependencies.",
    usage="/queue [device-id] [process|reset] | /queue purge [days]",
    handler=_handler,
)

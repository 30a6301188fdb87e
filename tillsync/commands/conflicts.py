"""Slash command for listing discarded record versions."""

from __future__ import annotations

from typing import List, Optional

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
    device_id: Optional[str] = None
    limit = "20"
    for arg in args:
        if arg.isdigit():
            limit = arg
        elif arg.lower() != "all":
            try:
                device_id = validate_device_id(arg)
            except SyncError as e:
                return f"[conflicts] {e.message}"

    try:
        conflicts = get_server(context).coordinator.conflicts(device_id, limit=limit)
    except SyncError as e:
        return f"[conflicts] {e.message}"

    if not conflicts:
        return "[conflicts] No conflicts recorded."

    def _render(console: Console) -> None:
        title = f"Conflicts for {device_id}" if device_id else "Recent Conflicts"
        table = Table(title=title, show_header=True, header_style="bold cyan")
        table.add_column("When", no_wrap=True)
        table.add_column("Table", style="green")
        table.add_column("Record")
        table.add_column("Type", style="yellow", no_wrap=True)
        table.add_column("Incoming")
        table.add_column("Stored")
        for conflict in conflicts:
            table.add_row(
                conflict["created_at"][:19],
                conflict["table_name"],
                conflict["record_id"],
                conflict["conflict_type"],
                conflict["incoming_updated_at"][:19],
                conflict["existing_updated_at"][:19],
            )
        console.print(table)

    return render_rich(_render)


COMMAND = SlashCommand(
    name="conflicts",
    description="List versions discarded by last-write-wins.",
    usage="/conflicts [device-id|all] [limit]",
    handler=_handler,
)

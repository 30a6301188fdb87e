"""Slash command for the device-side sync pass."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..api.auth import DeviceIdentity, validate_device_id
from ..errors import SyncError
from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_rich,
)
from ..sync.client import ClientSettings, SyncClient, SyncResult
from ..sync.store import RecordStore


def get_client(context: SlashCommandContext) -> SyncClient:
    """Get or create the sync client for this console."""
    client = context.metadata.get("sync_client")
    if client is None:
        settings = ClientSettings.from_config(context.config.merged)
        if settings.device_id:
            device_id = validate_device_id(settings.device_id)
        else:
            device_id = DeviceIdentity(context.config.home_dir).get_or_create()
        store = RecordStore(context.config.resolve_path(settings.database)).initialize()
        client = SyncClient(store, device_id, settings)
        context.metadata["sync_client"] = client
    return client


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Manage device synchronization."""

    if not args:
        return _show_status(context)

    subcommand = args[0].lower()

    if subcommand == "status":
        return _show_status(context)
    elif subcommand == "push":
        return _run_sync(context, "push")
    elif subcommand == "pull":
        return _run_sync(context, "pull")
    elif subcommand in ("full", "now"):
        return _run_sync(context, "full")
    elif subcommand == "reset":
        return _reset_failed(context, args[1:])
    elif subcommand == "help":
        return _show_help()
    else:
        return f"[sync] Unknown subcommand '{subcommand}'. Use /sync help for usage."


def _show_status(context: SlashCommandContext) -> str:
    try:
        status = get_client(context).get_status()
    except SyncError as e:
        return f"[sync] {e.message}"

    def _render(console: Console) -> None:
        table = Table(title="Device Sync Status", show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")
        table.add_row("Enabled", str(status["enabled"]))
        table.add_row("Device ID", status["device_id"])
        table.add_row("Server URL", status["server_url"])
        table.add_row("Last Sync", status["last_sync"] or "(never)")
        table.add_row("In Progress", str(status["in_progress"]))
        table.add_row("Pending", str(status["pending"]))
        table.add_row("Failed", str(status["failed"]))
        table.add_row("Held (dependencies)", str(status["held"]))
        console.print(table)

        per_table = Table(title="Records by Table", show_header=True, header_style="bold cyan")
        per_table.add_column("Table", style="green")
        for column in ("PENDING", "SYNCED", "FAILED", "TOTAL"):
            per_table.add_column(column, justify="right")
        for name, counts in status["statistics"].items():
            per_table.add_row(
                name,
                str(counts["PENDING"]),
                str(counts["SYNCED"]),
                str(counts["FAILED"]),
                str(counts["TOTAL"]),
            )
        console.print(per_table)

    return render_rich(_render)


def _run_sync(context: SlashCommandContext, sync_type: str) -> str:
    client_config = context.config.merged.get("client", {}) if context.config.merged else {}

    if not client_config.get("enabled", False):
        return "[sync] Sync is disabled. Set client.enabled in configuration first."

    if not client_config.get("server_url"):
        return "[sync] No server URL configured. Set client.server_url in configuration."

    client = get_client(context)
    if sync_type == "push":
        result = client.upload_pending()
    elif sync_type == "pull":
        result = client.download_new()
    else:
        result = client.full_sync()
    return _format_result(result)


def _format_result(result: SyncResult) -> str:
    if not result.success and not result.errors:
        return f"[sync] {result.message}"

    heading = "Sync completed" if result.success else "Sync finished with errors"
    lines = [f"[sync] {heading}: {result.message}"]
    for error in result.errors:
        lines.append(f"  ! {error}")
    return "\n".join(lines)


def _reset_failed(context: SlashCommandContext, args: List[str]) -> str:
    table = args[0] if args else None
    try:
        count = get_client(context).reset_failed(table)
    except SyncError as e:
        return f"[sync] {e.message}"
    scope = f" in {table}" if table else ""
    return f"[sync] Reset {count} failed record(s){scope} to PENDING."


def _show_help() -> str:
    return """[sync] Usage:
  /sync                 Show device sync status
  /sync status          Show device sync status
  /sync push            Upload PENDING records in tier order
  /sync pull            Download other devices' changes in tier order
  /sync full            Upload, then download
  /sync reset [table]   Move FAILED records back to PENDING
  /sync help            Show this help"""


COMMAND = SlashCommand(
    name="sync",
    description="Synchronize this device.",
    usage="/sync [status|push|pull|full|reset|help]",
    handler=_handler,
)

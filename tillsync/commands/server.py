"""Slash command for running the sync API server."""

from __future__ import annotations

from typing import List

from rich.console import Console
from rich.table import Table

from ..api import APIServerState, SyncAPIServer
from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_rich,
)


def get_server(context: SlashCommandContext) -> SyncAPIServer:
    """Get or create the API server instance for this console."""
    server = context.metadata.get("api_server")
    if server is None:
        server = SyncAPIServer(config_bundle=context.config)
        context.metadata["api_server"] = server
    return server


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    """Manage the sync API server."""

    if not args:
        return _show_status(context)

    subcommand = args[0].lower()

    if subcommand == "start":
        return _start_server(context)
    elif subcommand == "stop":
        return _stop_server(context)
    elif subcommand == "status":
        return _show_status(context)
    elif subcommand == "help":
        return _show_help()
    else:
        return f"[serve] Unknown subcommand '{subcommand}'. Use /serve help for usage."


def _start_server(context: SlashCommandContext) -> str:
    server = get_server(context)

    if server.state is APIServerState.RUNNING:
        return f"[serve] Server is already running at http://{server.host}:{server.port}"

    try:
        success = server.start(blocking=False)
    except Exception as e:
        return f"[serve] Error starting server: {e}"

    if success:
        return (
            f"[serve] Server started at http://{server.host}:{server.port}\n"
            "Use /serve status to check server state"
        )
    return f"[serve] Failed to start server (state: {server.state.value})"


def _stop_server(context: SlashCommandContext) -> str:
    server = context.metadata.get("api_server")
    if server is None or server.state is not APIServerState.RUNNING:
        return "[serve] Server is not running"

    if server.stop():
        return "[serve] Server stopped"
    return f"[serve] Failed to stop server (state: {server.state.value})"


def _show_status(context: SlashCommandContext) -> str:
    server = context.metadata.get("api_server")
    server_config = context.config.merged.get("server", {}) if context.config.merged else {}

    def _render(console: Console) -> None:
        table = Table(title="Sync Server Status", show_header=False)
        table.add_column("Property", style="bold")
        table.add_column("Value")

        if server is None:
            table.add_row("State", "not initialized")
            table.add_row("URL", "-")
        else:
            status = server.status()
            table.add_row("State", status["state"])
            table.add_row("Host", status["host"])
            table.add_row("Port", str(status["port"]))
            if status["url"]:
                table.add_row("URL", status["url"])

        table.add_row("", "")
        table.add_row("Config: host", str(server_config.get("host", "127.0.0.1")))
        table.add_row("Config: port", str(server_config.get("port", 8080)))
        table.add_row("Config: database", str(server_config.get("database", "state/server.db")))

        console.print(table)

    return render_rich(_render)


def _show_help() -> str:
    return """[serve] Usage:
  /serve            Show server status
  /serve start      Start the sync server in the background
  /serve stop       Stop the sync server
  /serve status     Show server status
  /serve help       Show this help

Endpoints (also under /api):
  POST /sync/upload              Upload records for one table
  GET  /sync/download            Records from other devices after a cursor
  POST /sync/batch-upload        Upload several tables in tier order
  GET  /sync/batch-download      Download several tables in tier order
  GET  /sync/status              Device registry, cursors and recent operations
  GET  /sync/queue               Records waiting on dependencies
  POST /sync/queue/process       Retry queued records
  GET  /sync/conflicts           Discarded versions
  POST /dependencies/fetch       Records a set of records depends on
  GET  /dependencies/check       Report missing dependencies
  GET  /dependencies/info/{table}
  GET  /health, /health/stats

Every endpoint except /health requires an X-Device-ID header (UUID)."""


COMMAND = SlashCommand(
    name="serve",
    description="Run the sync API server.",
    usage="/serve [start|stop|status|help]",
    handler=_handler,
)

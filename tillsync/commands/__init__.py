"""Slash command registry."""

from __future__ import annotations

from .conflicts import COMMAND as CONFLICTS_COMMAND
from .help import COMMAND as HELP_COMMAND
from .queue import COMMAND as QUEUE_COMMAND
from .server import COMMAND as SERVE_COMMAND
from .sync import COMMAND as SYNC_COMMAND

COMMANDS = [
    HELP_COMMAND,
    SERVE_COMMAND,
    SYNC_COMMAND,
    QUEUE_COMMAND,
    CONFLICTS_COMMAND,
]

__all__ = ["COMMANDS"]

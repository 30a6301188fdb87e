"""``/help``: list console commands or describe one of them."""

from __future__ import annotations

from typing import List

from ..slash_commands import (
    SlashCommand,
    SlashCommandContext,
    render_help_table,
)


def _handler(context: SlashCommandContext, args: List[str]) -> str:
    if not args:
        return render_help_table(context.router.commands())
    command = context.router.get(args[0])
    if command is None:
        return f"[help] No command named '/{args[0].lstrip('/')}'."
    return f"/{command.name}: {command.description}\n  Usage: {command.usage}"


COMMAND = SlashCommand(
    name="help",
    description="List available slash commands.",
    usage="/help [command]",
    handler=_handler,
)

"""Slash command registry used by the operator console."""

from __future__ import annotations

from dataclasses import dataclass, field
from io import StringIO
import shutil
from typing import Any, Callable, Dict, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .configuration import ConfigurationBundle

SlashCommandHandler = Callable[["SlashCommandContext", List[str]], str]


@dataclass
class SlashCommandContext:
    """State handed to a handler: config, router and shared console metadata."""

    config: ConfigurationBundle
    router: "CommandRouter"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SlashCommand:
    name: str
    description: str
    handler: SlashCommandHandler
    usage: str = ""
    requires_ready: bool = False

    def __post_init__(self) -> None:
        self.name = self.name.strip().lstrip("/").lower()
        if not self.name:
            raise ValueError("slash command name must not be empty")
        if not self.usage:
            self.usage = f"/{self.name}"


class CommandRouter:
    """Registry + dispatcher for console commands.

    ``metadata`` is shared by every invocation so commands can keep
    long-lived objects (the API server, the device client) between calls.
    """

    def __init__(
        self,
        config: ConfigurationBundle,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self._commands: Dict[str, SlashCommand] = {}
        self.metadata = metadata if metadata is not None else {}

    def register(self, command: SlashCommand) -> None:
        if command.name in self._commands:
            raise ValueError(f"slash command '/{command.name}' is already registered")
        self._commands[command.name] = command

    def handle(self, command_name: str, args: List[str]) -> str:
        command = self.get(command_name)
        if command is None:
            return f"[router] Unknown command '/{command_name}'. Use /help to list commands."
        if command.requires_ready and self.config.status != "ready":
            return (
                f"[router] '/{command.name}' requires a ready configuration "
                f"(current status: {self.config.status})."
            )
        context = SlashCommandContext(config=self.config, router=self, metadata=self.metadata)
        return command.handler(context, args)

    @property
    def command_names(self) -> Sequence[str]:
        return sorted(self._commands)

    def commands(self) -> Sequence[SlashCommand]:
        return [self._commands[name] for name in self.command_names]

    def get(self, command_name: str) -> Optional[SlashCommand]:
        return self._commands.get(command_name.strip().lstrip("/").lower())


def render_help_table(commands: Sequence[SlashCommand]) -> str:
    """Render the command list with descriptions and usage lines."""

    def _render(console: Console) -> None:
        table = Table(title="Slash Commands", show_header=True, header_style="bold cyan")
        table.add_column("Command", style="green", no_wrap=True)
        table.add_column("Description")
        table.add_column("Usage", style="dim")
        for cmd in commands:
            table.add_row(f"/{cmd.name}", cmd.description, cmd.usage)
        console.print(table)

    return render_rich(_render)


def render_rich(render_fn: Callable[[Console], None]) -> str:
    """Render a Rich layout to an ANSI string without printing live."""

    terminal_size = shutil.get_terminal_size(fallback=(100, 24))
    # Rich misbehaves below these sizes.
    width = max(40, terminal_size.columns)
    height = max(10, terminal_size.lines)

    console = Console(
        record=True,
        force_terminal=True,
        color_system="auto",
        width=width,
        height=height,
        file=StringIO(),
    )
    render_fn(console)
    return console.export_text(clear=False, styles=True)


__all__ = [
    "SlashCommand",
    "SlashCommandContext",
    "CommandRouter",
    "render_help_table",
    "render_rich",
]

# tillsync/app.py
"""
Operator console for the tillsync server and device client.

``tillsync serve`` runs the sync API in the foreground; with no arguments the
module starts a slash-command REPL (``/serve``, ``/sync``, ``/queue``, ...).
"""

from __future__ import annotations

import logging
from pathlib import Path
try:
    import readline
except ImportError:  # pragma: no cover
    readline = None
from shutil import get_terminal_size
import sys
from typing import List, Optional, Sequence

from .api import APIServerState, SyncAPIServer
from .commands import COMMANDS
from .configuration import (
    ConfigurationBundle,
    Diagnostic,
    apply_environment_overrides,
    load_runtime_configuration,
    resolve_home_dir,
)
from .logging_utils import setup_logging
from .slash_commands import CommandRouter

REPO_ROOT = Path(__file__).resolve().parent.parent
logger = logging.getLogger("tillsync")


def _log_path_within_home(log_path: Path, home_dir: Path) -> bool:
    try:
        log_path.relative_to(home_dir)
        return True
    except ValueError:
        return False


def print_banner() -> None:
    """Print the runtime header so operators know where tillsync is pointed."""

    terminal_width = get_terminal_size(fallback=(80, 24)).columns
    title = "TILLSYNC :: multi-device sync"
    if terminal_width >= 60:
        inner_width = 58
        print("╔" + "═" * inner_width + "╗")
        print(f"║{title.center(inner_width)}║")
        print("╚" + "═" * inner_width + "╝")
    else:
        print(title)
    print()


def build_router(config: ConfigurationBundle) -> CommandRouter:
    """Register every slash command."""

    router = CommandRouter(config, metadata={"repo_root": str(REPO_ROOT)})
    for command in COMMANDS:
        router.register(command)
    return router


def emit_configuration_report(config: ConfigurationBundle) -> None:
    """Print diagnostics so operators can correct issues quickly."""

    problems = [diag for diag in config.diagnostics if diag.level != "info"]
    if not problems:
        print(
            f"[config] Loaded {len(config.files_loaded)} file(s) "
            f"from repo and home config directories."
        )
        return

    print("[config] Diagnostics:")
    for diag in problems:
        prefix = diag.source or config.home_dir
        print(f"  - ({diag.level.upper()}) {diag.message} [{prefix}]")


def configure_autocomplete(router: CommandRouter) -> None:
    """Enable readline tab completion for slash commands."""

    if readline is None:
        return

    commands = list(router.command_names)

    def completer(text: str, state: int):
        buffer = readline.get_line_buffer()
        if not buffer.startswith("/"):
            return None
        fragment = text[1:] if text.startswith("/") else text
        matches = [f"/{cmd}" for cmd in commands if cmd.startswith(fragment)]
        if state < len(matches):
            return matches[state]
        return None

    readline.set_completer(completer)
    readline.parse_and_bind("tab: complete")
    readline.set_completer_delims(" \t")


def execute_cli_command(
    command_line: str,
    router: CommandRouter,
    history: List[str],
    *,
    suppress_output: bool = False,
) -> str:
    """Execute one console command and record it."""

    stripped = command_line.strip()
    if not stripped:
        return ""

    parts = stripped.split()
    command, args = parts[0], parts[1:]
    result = router.handle(command, args)
    if not suppress_output:
        print(result)

    history.append(stripped)
    logger.info("Executed CLI command: %s", stripped)
    return result


def prepare_runtime(home_dir: Optional[Path] = None, console_logging: bool = True) -> ConfigurationBundle:
    """Load configuration and configure logging for this process."""

    resolved_home = home_dir or resolve_home_dir()
    try:
        resolved_home.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"[config] Cannot create home directory '{resolved_home}': {exc}", file=sys.stderr)

    config_bundle = apply_environment_overrides(load_runtime_configuration(resolved_home))
    logging_cfg = config_bundle.section("logging")
    log_path = setup_logging(
        config_bundle.home_dir,
        str(logging_cfg.get("level", "INFO")),
        structured=bool(logging_cfg.get("structured", True)),
        console=console_logging,
    )
    config_bundle.log_path = log_path
    if not _log_path_within_home(log_path, config_bundle.home_dir):
        config_bundle.diagnostics.append(
            Diagnostic(
                level="warning",
                message=(
                    "Home log directory is not writable; "
                    f"logging to fallback path '{log_path}'."
                ),
                source=log_path,
            )
        )
    logger.info("Logging initialized at %s", log_path)
    return config_bundle


def serve(config_bundle: ConfigurationBundle) -> int:
    """Run the sync API server in the foreground until interrupted."""

    server = SyncAPIServer(config_bundle=config_bundle)
    logger.info(
        "Serving sync API on http://%s:%s (environment: %s)",
        server.host, server.port, server.environment,
    )
    try:
        ok = server.start(blocking=True)
    finally:
        server.close()
    return 0 if ok else 1


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point for the ``tillsync`` console script."""

    args = list(sys.argv[1:] if argv is None else argv)

    if args and args[0] == "serve":
        config_bundle = prepare_runtime()
        emit_configuration_report(config_bundle)
        raise SystemExit(serve(config_bundle))

    if args:
        print(f"[tillsync] Unknown command '{args[0]}'. Usage: tillsync [serve]")
        raise SystemExit(2)

    print_banner()
    config_bundle = prepare_runtime(console_logging=False)
    emit_configuration_report(config_bundle)
    router = build_router(config_bundle)
    configure_autocomplete(router)
    history: List[str] = []
    print("Type /help for commands, 'exit' to quit.")

    while True:
        try:
            raw_line = input("> ")
        except (EOFError, KeyboardInterrupt):
            print("\n[Exiting tillsync]")
            break

        line = raw_line.strip()

        if line.lower() in {"quit", "exit", "/quit", "/exit"}:
            print("[Goodbye]")
            break

        if not line:
            continue

        if not line.startswith("/"):
            print("[tillsync] Commands start with '/'. Type /help for the list.")
            continue

        execute_cli_command(line[1:], router, history)

    server = router.metadata.get("api_server")
    if server is not None:
        if server.state is APIServerState.RUNNING:
            server.stop()
        server.close()
    client = router.metadata.get("sync_client")
    if client is not None:
        client.store.close()


if __name__ == "__main__":
    main()

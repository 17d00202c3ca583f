"""Interactive prompt loop for the VaultLift CLI."""

import os
import sys
from typing import List

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory

from cli.commands import (
    get_config,
    handle_abandon,
    handle_nodes,
    handle_resume,
    handle_sessions,
    handle_upload,
)
from cli.completer import VaultLiftCompleter
from cli.constants import HELP_TEXT, LOGO, PROMPT_TEXT, STYLE, WELCOME_HELP, WELCOME_TITLE
from cli.models import (
    AbandonCommand,
    CommandRequest,
    NodesCommand,
    ResumeCommand,
    SessionsCommand,
    UploadCommand,
)
from cli.parser import ParseError, parse_command
from common.logging_config import get_logger
from uploader.state_store import JsonFileStateStore

logger = get_logger(__name__)


def clear_screen() -> None:
    os.system("cls" if sys.platform == "win32" else "clear")


def show_welcome() -> None:
    print(LOGO)
    print(WELCOME_TITLE)
    print(WELCOME_HELP)


def saved_session_ids() -> List[str]:
    """Upload ids offered by the completer, oldest first."""
    sessions = JsonFileStateStore(get_config().get_state_file()).list_all()
    return [s.upload_id for s in sorted(sessions, key=lambda s: s.created_at)]


def dispatch_command(cmd: CommandRequest) -> str:
    """Route a parsed command to its handler."""
    if isinstance(cmd, UploadCommand):
        return handle_upload(cmd)
    if isinstance(cmd, ResumeCommand):
        return handle_resume(cmd)
    if isinstance(cmd, SessionsCommand):
        return handle_sessions(cmd)
    if isinstance(cmd, AbandonCommand):
        return handle_abandon(cmd)
    if isinstance(cmd, NodesCommand):
        return handle_nodes(cmd)
    return f"Unknown command type: {type(cmd).__name__}"


def run_builtin(line: str) -> bool:
    """
    Handle REPL-only commands (help, clear).

    Returns:
        True if the line was a builtin and has been handled
    """
    if line == "help":
        print(HELP_TEXT)
        return True
    if line == "clear":
        clear_screen()
        show_welcome()
        return True
    return False


def repl_loop() -> None:
    """Read commands until 'exit' or Ctrl+D."""
    prompt: PromptSession = PromptSession(
        completer=VaultLiftCompleter(session_ids=saved_session_ids),
        history=InMemoryHistory(),
        style=STYLE,
    )

    clear_screen()
    show_welcome()

    while True:
        try:
            line = prompt.prompt([("class:prompt", PROMPT_TEXT)]).strip()
        except KeyboardInterrupt:
            continue
        except EOFError:
            print("\nGoodbye!")
            return

        if not line:
            continue
        if line == "exit":
            print("Goodbye!")
            return
        if run_builtin(line):
            continue

        try:
            print(dispatch_command(parse_command(line)))
        except ParseError as e:
            print(f"Error: {e}")
        except KeyboardInterrupt:
            logger.debug(f"Command interrupted: {line}")
            print("\nInterrupted.")

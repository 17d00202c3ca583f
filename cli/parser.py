"""Command parser for CLI input."""

import shlex
from typing import Optional

from cli.constants import NODE_ACTIONS
from cli.models import (
    AbandonCommand,
    CommandRequest,
    NodesCommand,
    ResumeCommand,
    SessionsCommand,
    UploadCommand,
)


class ParseError(Exception):
    """Raised when command parsing fails."""

    pass


def parse_command(input_line: str) -> CommandRequest:
    """Parse user input into a CommandRequest object.

    Args:
        input_line: Raw user input from REPL

    Returns:
        CommandRequest object (one of Upload/Resume/Sessions/Abandon/Nodes)

    Raises:
        ParseError: If command syntax is invalid
    """
    if not input_line.strip():
        raise ParseError("Empty command")

    try:
        tokens = shlex.split(input_line)
    except ValueError as e:
        raise ParseError(f"Invalid syntax: {e}")

    if not tokens:
        raise ParseError("Empty command")

    command_name = tokens[0]

    if command_name == "upload":
        return _parse_upload(tokens[1:])
    elif command_name == "resume":
        return _parse_resume(tokens[1:])
    elif command_name == "sessions":
        return _parse_sessions(tokens[1:])
    elif command_name == "abandon":
        return _parse_abandon(tokens[1:])
    elif command_name == "nodes":
        return _parse_nodes(tokens[1:])
    else:
        raise ParseError(f"Unknown command: {command_name}")


def _pop_option(args: list[str], name: str) -> Optional[str]:
    """Remove '--name value' from args and return value (None if absent)."""
    if name not in args:
        return None
    index = args.index(name)
    if index + 1 >= len(args):
        raise ParseError(f"{name} requires a value")
    value = args[index + 1]
    del args[index:index + 2]
    return value


def _parse_upload(args: list[str]) -> UploadCommand:
    """Parse 'upload <file...> [--folder ID]' command."""
    args = list(args)
    folder_id = _pop_option(args, "--folder")

    if not args:
        raise ParseError("upload requires at least one file")

    return UploadCommand(file_list=tuple(args), folder_id=folder_id)


def _parse_resume(args: list[str]) -> ResumeCommand:
    """Parse 'resume <upload-id> <file>' command."""
    if len(args) != 2:
        raise ParseError("resume requires exactly 2 arguments: <upload-id> <file>")

    upload_id, file_path = args
    return ResumeCommand(upload_id=upload_id, file_path=file_path)


def _parse_sessions(args: list[str]) -> SessionsCommand:
    """Parse 'sessions' command."""
    if args:
        raise ParseError("sessions takes no arguments")
    return SessionsCommand()


def _parse_abandon(args: list[str]) -> AbandonCommand:
    """Parse 'abandon <upload-id>' command."""
    if len(args) != 1:
        raise ParseError("abandon requires exactly 1 argument: <upload-id>")
    return AbandonCommand(upload_id=args[0])


def _parse_nodes(args: list[str]) -> NodesCommand:
    """Parse 'nodes [list|check|add|remove] ...' command."""
    args = list(args)
    if not args:
        return NodesCommand(action="list")

    action = args.pop(0)
    if action not in NODE_ACTIONS:
        raise ParseError(f"Unknown nodes action: {action} (expected one of {', '.join(NODE_ACTIONS)})")

    if action in ("list", "check"):
        if args:
            raise ParseError(f"nodes {action} takes no arguments")
        return NodesCommand(action=action)

    if action == "remove":
        if len(args) != 1:
            raise ParseError("nodes remove requires exactly 1 argument: <id>")
        return NodesCommand(action="remove", node_id=args[0])

    priority_value = _pop_option(args, "--priority")
    try:
        priority = int(priority_value) if priority_value is not None else 1
    except ValueError:
        raise ParseError(f"--priority must be an integer, got {priority_value!r}")

    if len(args) not in (2, 3):
        raise ParseError("nodes add requires: <id> <endpoint> [key] [--priority N]")

    node_id, endpoint = args[0], args[1]
    if not endpoint.startswith(("http://", "https://")):
        raise ParseError(f"Endpoint must start with http:// or https://, got {endpoint!r}")

    key = args[2] if len(args) == 3 else ''
    return NodesCommand(action="add", node_id=node_id, endpoint=endpoint, key=key, priority=priority)

"""Command request data types for CLI."""

from dataclasses import dataclass
from typing import Literal, Optional


@dataclass(frozen=True)
class UploadCommand:
    """Upload one or more files."""

    file_list: tuple[str, ...]
    folder_id: Optional[str] = None
    command: Literal["upload"] = "upload"


@dataclass(frozen=True)
class ResumeCommand:
    """Resume an interrupted chunked upload."""

    upload_id: str
    file_path: str
    command: Literal["resume"] = "resume"


@dataclass(frozen=True)
class SessionsCommand:
    """List resumable sessions."""

    command: Literal["sessions"] = "sessions"


@dataclass(frozen=True)
class AbandonCommand:
    """Forget a saved session."""

    upload_id: str
    command: Literal["abandon"] = "abandon"


@dataclass(frozen=True)
class NodesCommand:
    """Inspect or edit the storage node registry."""

    action: Literal["list", "check", "add", "remove"] = "list"
    node_id: Optional[str] = None
    endpoint: Optional[str] = None
    key: str = ''
    priority: int = 1
    command: Literal["nodes"] = "nodes"


CommandRequest = (
    UploadCommand
    | ResumeCommand
    | SessionsCommand
    | AbandonCommand
    | NodesCommand
)

"""Utility functions for CLI output."""

import sys
from typing import Dict, Optional, TextIO

from cli.constants import GREEN, RED, RESET, YELLOW
from uploader.progress import UploadProgress


def format_file_size(size_bytes: int) -> str:
    """
    Format file size in bytes to human-readable format with appropriate unit.

    Uses binary units (1024-based) and automatically selects the most
    appropriate unit (B, KiB, MiB, GiB, TiB).

    Args:
        size_bytes: File size in bytes

    Returns:
        Formatted string with size and unit (e.g., "1.50 MiB", "512 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"

    units = ['KiB', 'MiB', 'GiB', 'TiB']
    size = size_bytes / 1024.0

    for unit in units:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0

    return f"{size:.2f} PiB"


def format_duration(seconds: float) -> str:
    """Format a duration as '1h02m', '3m05s' or '42s'."""
    seconds = int(round(seconds))
    if seconds >= 3600:
        return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"
    if seconds >= 60:
        return f"{seconds // 60}m{seconds % 60:02d}s"
    return f"{seconds}s"


def format_progress(event: UploadProgress) -> str:
    """One status line for a progress event."""
    name = event.file_name
    if event.status == "uploading":
        line = (
            f"Uploading {name}: {format_file_size(event.loaded)} / {format_file_size(event.total)} "
            f"({GREEN}{event.percentage}%{RESET})"
        )
        if event.speed > 0:
            line += f" {format_file_size(int(event.speed))}/s, {format_duration(event.remaining_time)} left"
        if event.chunked:
            line += f" [{len(event.uploaded_chunk_indices)}/{event.total_chunks} chunks, x{event.parallelism}]"
        return line
    if event.status == "processing":
        phase = event.finalization.phase if event.finalization else "processing"
        return f"Processing {name}: {phase}..."
    if event.status == "complete":
        return f"Uploaded {name} ({GREEN}100%{RESET})"
    if event.status == "paused":
        return f"{YELLOW}Paused {name}{RESET}"
    if event.status == "error":
        return f"{RED}Failed {name}: {event.message}{RESET}"
    return f"Preparing {name}..."


class ProgressPrinter:
    """Progress observer that redraws one status line per file on stdout."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout
        self._last_line: Dict[str, str] = {}

    def __call__(self, event: UploadProgress) -> None:
        line = format_progress(event)
        if self._last_line.get(event.file_name) == line:
            return
        self._last_line[event.file_name] = line
        terminal = event.status in ("complete", "error", "paused")
        self.stream.write('\r' + line + ('\n' if terminal else ''))
        self.stream.flush()

    def for_batch(self, index: int, event: UploadProgress) -> None:
        self(event)

"""Byte sources for uploads: files on disk and in-memory buffers."""

import mimetypes
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Union

from common.constants import DEFAULT_MIME_TYPE


class UploadSource(ABC):
    """
    A named, sized, randomly readable byte source.

    Subclasses implement read_range(); slicing is synchronous and cheap.
    """

    def __init__(self, name: str, size: int, mime_type: Optional[str] = None):
        self.name = name
        self.size = size
        self.mime_type = mime_type or mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE

    @abstractmethod
    def read_range(self, offset: int, length: int) -> bytes:
        """Return up to length bytes starting at offset."""

    def open_reader(self, on_read: Optional[Callable[[int], None]] = None) -> 'ProgressReader':
        """File-like reader over the whole source, reporting bytes read so far."""
        return ProgressReader(self, on_read)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, size={self.size})"


class FileSource(UploadSource):
    """Upload source backed by a file on disk."""

    def __init__(self, path: Union[str, Path], mime_type: Optional[str] = None):
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"Not a file: {self.path}")
        super().__init__(self.path.name, os.path.getsize(self.path), mime_type)

    def read_range(self, offset: int, length: int) -> bytes:
        with open(self.path, 'rb') as f:
            f.seek(offset)
            return f.read(length)


class BytesSource(UploadSource):
    """Upload source backed by an in-memory buffer."""

    def __init__(self, name: str, data: bytes, mime_type: Optional[str] = None):
        super().__init__(name, len(data), mime_type)
        self._data = memoryview(data)

    def read_range(self, offset: int, length: int) -> bytes:
        return bytes(self._data[offset:offset + length])


class ProgressReader:
    """File-like reader that reports transport-level progress as bytes are consumed."""

    PIECE_SIZE = 64 * 1024

    def __init__(self, source: UploadSource, on_read: Optional[Callable[[int], None]] = None):
        self.source = source
        self.on_read = on_read
        self._position = 0

    def read(self, size: int = -1) -> bytes:
        """
        Read the next piece of the source.

        Args:
            size: Number of bytes to read (-1 or 0 for the default piece size)
        """
        remaining = self.source.size - self._position
        if remaining <= 0:
            return b''
        length = min(size if size > 0 else self.PIECE_SIZE, remaining)
        data = self.source.read_range(self._position, length)
        self._position += len(data)
        if self.on_read and data:
            self.on_read(self._position)
        return data

    @property
    def bytes_read(self) -> int:
        return self._position

"""Custom exception classes for the storage node."""

from typing import Iterable


class NodeError(Exception):
    """
    Base exception class for all storage-node errors.
    """
    pass


class InvalidNodeKeyError(NodeError):
    """
    Raised when the X-Node-Key header does not match the node's API key.
    """
    pass


class InvalidPathError(NodeError):
    """
    Raised when a requested path escapes the node's data directory.
    """
    pass


class UploadNotFoundError(NodeError):
    """
    Raised when finalize is called for an upload id the node never saw.
    """
    pass


class StorageFullError(NodeError):
    """
    Raised when accepting the bytes would exceed the node's capacity.
    """
    pass


class ChunkAssemblyError(NodeError):
    """
    Raised when finalize cannot assemble the file from its chunks.

    missing_chunks: indices the node never recorded.
    failed_chunks: indices recorded but whose temp file is gone or empty.
    """

    def __init__(self, message: str, missing_chunks: Iterable[int] = (), failed_chunks: Iterable[int] = ()):
        super().__init__(message)
        self.missing_chunks = sorted(missing_chunks)
        self.failed_chunks = sorted(failed_chunks)

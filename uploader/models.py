"""Data types for the upload engine (chunks, sessions, speed profiles, storage nodes)."""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Set, Tuple

from common.constants import DEFAULT_MIME_TYPE, PRIMARY_NODE_ID
from uploader.exceptions import LocalStateError

NodeStatus = Literal["online", "offline", "checking"]


def utc_now_iso() -> str:
    """Current UTC time as an ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_utc_timestamp(value: str) -> datetime:
    """Parse an ISO8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def chunk_count(total_size: int, chunk_size: int) -> int:
    """
    Number of chunks needed to cover total_size bytes.

    Args:
        total_size: File size in bytes
        chunk_size: Fixed chunk size in bytes (> 0)

    Returns:
        ceil(total_size / chunk_size); 0 for an empty file
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if total_size < 0:
        raise ValueError(f"total_size must not be negative, got {total_size}")
    return math.ceil(total_size / chunk_size)


def chunk_range(chunk_index: int, chunk_size: int, total_size: int) -> Tuple[int, int]:
    """
    Byte range of one chunk.

    Offsets are always chunk_index * chunk_size; only the last chunk may be short.

    Returns:
        Tuple of (offset, length)
    """
    total_chunks = chunk_count(total_size, chunk_size)
    if not 0 <= chunk_index < total_chunks:
        raise IndexError(f"chunk index {chunk_index} outside [0, {total_chunks})")
    offset = chunk_index * chunk_size
    return offset, min(chunk_size, total_size - offset)


@dataclass(frozen=True)
class TransferUnit:
    """One contiguous byte range [offset, offset + length) of a source file."""
    upload_id: str
    chunk_index: int
    offset: int
    length: int


@dataclass
class UploadSession:
    """
    Durable record of one resumable multi-chunk transfer.

    chunk_size is fixed for the lifetime of the session so offsets stay
    derivable from chunk indices.
    """
    upload_id: str
    file_name: str
    total_size: int
    chunk_size: int
    total_chunks: int
    mime_type: str = DEFAULT_MIME_TYPE
    destination_folder_id: Optional[str] = None
    acknowledged_chunks: Set[int] = field(default_factory=set)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    storage_file_name: Optional[str] = None
    node_id: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        file_name: str,
        total_size: int,
        chunk_size: int,
        mime_type: str = DEFAULT_MIME_TYPE,
        destination_folder_id: Optional[str] = None,
        node_id: Optional[str] = None,
        user_id: Optional[str] = None,
        upload_id: Optional[str] = None
    ) -> 'UploadSession':
        """Create a new session with a freshly minted upload id."""
        return cls(
            upload_id=upload_id or str(uuid.uuid4()),
            file_name=file_name,
            total_size=total_size,
            chunk_size=chunk_size,
            total_chunks=chunk_count(total_size, chunk_size),
            mime_type=mime_type,
            destination_folder_id=destination_folder_id,
            node_id=node_id,
            user_id=user_id,
        )

    def transfer_unit(self, chunk_index: int) -> TransferUnit:
        offset, length = chunk_range(chunk_index, self.chunk_size, self.total_size)
        return TransferUnit(self.upload_id, chunk_index, offset, length)

    def pending_chunks(self) -> List[int]:
        """Unacknowledged chunk indices in ascending order."""
        return [i for i in range(self.total_chunks) if i not in self.acknowledged_chunks]

    def acknowledge(self, chunk_index: int) -> bool:
        """
        Mark a chunk as acknowledged.

        Returns:
            True if the chunk was newly acknowledged, False if it already was
        """
        if not 0 <= chunk_index < self.total_chunks:
            raise IndexError(f"chunk index {chunk_index} outside [0, {self.total_chunks})")
        if chunk_index in self.acknowledged_chunks:
            return False
        self.acknowledged_chunks.add(chunk_index)
        return True

    def replace_acknowledged(self, chunk_indices) -> None:
        """Overwrite the acknowledged set with an authoritative view, dropping out-of-range indices."""
        self.acknowledged_chunks = {i for i in chunk_indices if 0 <= i < self.total_chunks}

    def acknowledged_bytes(self) -> int:
        return sum(self.transfer_unit(i).length for i in self.acknowledged_chunks)

    @property
    def is_complete(self) -> bool:
        return len(self.acknowledged_chunks) == self.total_chunks

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - parse_utc_timestamp(self.created_at)).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'upload_id': self.upload_id,
            'file_name': self.file_name,
            'total_size': self.total_size,
            'chunk_size': self.chunk_size,
            'total_chunks': self.total_chunks,
            'mime_type': self.mime_type,
            'destination_folder_id': self.destination_folder_id,
            'acknowledged_chunks': sorted(self.acknowledged_chunks),
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'storage_file_name': self.storage_file_name,
            'node_id': self.node_id,
            'user_id': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UploadSession':
        """
        Rebuild a session from its persisted form.

        Raises:
            LocalStateError: If fields are missing or the invariants do not hold
        """
        try:
            session = cls(
                upload_id=str(data['upload_id']),
                file_name=str(data['file_name']),
                total_size=int(data['total_size']),
                chunk_size=int(data['chunk_size']),
                total_chunks=int(data['total_chunks']),
                mime_type=data.get('mime_type') or DEFAULT_MIME_TYPE,
                destination_folder_id=data.get('destination_folder_id'),
                acknowledged_chunks={int(i) for i in data.get('acknowledged_chunks', [])},
                created_at=str(data['created_at']),
                updated_at=str(data.get('updated_at') or data['created_at']),
                storage_file_name=data.get('storage_file_name'),
                node_id=data.get('node_id'),
                user_id=data.get('user_id'),
            )
            session.created_at = parse_utc_timestamp(session.created_at).isoformat()
            session.updated_at = parse_utc_timestamp(session.updated_at).isoformat()
            expected_chunks = chunk_count(session.total_size, session.chunk_size)
        except (KeyError, TypeError, ValueError) as e:
            raise LocalStateError(f"Corrupt upload session record: {e}") from e

        if session.total_chunks != expected_chunks:
            raise LocalStateError(
                f"Corrupt upload session {session.upload_id}: total_chunks={session.total_chunks}, "
                f"expected {expected_chunks}",
                upload_id=session.upload_id
            )
        if any(not 0 <= i < session.total_chunks for i in session.acknowledged_chunks):
            raise LocalStateError(
                f"Corrupt upload session {session.upload_id}: acknowledged chunk out of range",
                upload_id=session.upload_id
            )
        return session


@dataclass(frozen=True)
class SpeedProfile:
    """Current throughput estimate and the chunk size / parallelism derived from it."""
    bytes_per_second: float
    chunk_size: int
    parallelism: int
    measured_at: float


@dataclass(frozen=True)
class SpeedDataPoint:
    """One point of speed history, kept for graphing."""
    timestamp: float
    speed: float
    chunk_size: int
    parallelism: int


@dataclass
class StorageNode:
    """
    Descriptor of a storage backend.

    Attributes:
        id: Node identifier ('primary' for the built-in node)
        endpoint: Base URL, e.g. "https://storage.example.com/api"
        credential: Node API key, sent as X-Node-Key
        capacity: Total bytes
        used: Used bytes
        priority: Lower is preferred
        status: online, offline or checking
    """
    id: str
    endpoint: str
    credential: str = ''
    capacity: int = 0
    used: int = 0
    priority: int = 1
    status: NodeStatus = "online"
    name: str = ''

    @property
    def free(self) -> int:
        return self.capacity - self.used

    @property
    def is_primary(self) -> bool:
        return self.id == PRIMARY_NODE_ID

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'endpoint': self.endpoint,
            'credential': self.credential,
            'capacity': self.capacity,
            'used': self.used,
            'priority': self.priority,
            'status': self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageNode':
        return cls(
            id=str(data['id']),
            name=data.get('name', ''),
            endpoint=str(data['endpoint']).rstrip('/'),
            credential=data.get('credential', ''),
            capacity=int(data.get('capacity', 0)),
            used=int(data.get('used', 0)),
            priority=int(data.get('priority', 1)),
            status=data.get('status', 'checking'),
        )


@dataclass(frozen=True)
class FinalizeResult:
    """Path of the assembled object on the storage node."""
    path: str
    size: int = 0


@dataclass(frozen=True)
class FileRecordRequest:
    """Arguments of the catalog collaborator's createFileRecord call."""
    user_id: Optional[str]
    folder_id: Optional[str]
    name: str
    mime_type: str
    size_bytes: int
    storage_path: str


@dataclass(frozen=True)
class FileRecord:
    """Catalog entry, created only after bytes are durably accepted."""
    id: str
    user_id: Optional[str]
    folder_id: Optional[str]
    name: str
    mime_type: str
    size_bytes: int
    storage_path: str

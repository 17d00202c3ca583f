"""Narrow contracts for the external collaborators the engine consumes."""

import uuid
from typing import List, Optional, Protocol, runtime_checkable

from common.logging_config import get_logger
from uploader.models import FileRecord, FileRecordRequest

logger = get_logger(__name__)


@runtime_checkable
class TokenProvider(Protocol):
    """Supplies the short-lived bearer credential attached to every remote call."""

    def get_token(self) -> Optional[str]:
        ...


@runtime_checkable
class CatalogClient(Protocol):
    """Creates the file record once bytes are durably stored."""

    async def create_file_record(self, request: FileRecordRequest) -> FileRecord:
        ...


@runtime_checkable
class UsageAccountant(Protocol):
    """Receives (user_id, bytes_transferred) after each completed upload."""

    async def record_transfer(self, user_id: Optional[str], bytes_transferred: int) -> None:
        ...


class StaticTokenProvider:
    """Token provider returning a fixed credential (CLI config, tests)."""

    def __init__(self, token: Optional[str]):
        self._token = token

    def get_token(self) -> Optional[str]:
        return self._token


class InMemoryCatalog:
    """Catalog that keeps records in a list; used by the CLI's offline mode and tests."""

    def __init__(self):
        self.records: List[FileRecord] = []

    async def create_file_record(self, request: FileRecordRequest) -> FileRecord:
        record = FileRecord(
            id=str(uuid.uuid4()),
            user_id=request.user_id,
            folder_id=request.folder_id,
            name=request.name,
            mime_type=request.mime_type,
            size_bytes=request.size_bytes,
            storage_path=request.storage_path,
        )
        self.records.append(record)
        logger.debug(f"Catalog record created: {record.name} -> {record.storage_path}")
        return record

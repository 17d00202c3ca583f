"""Shared pytest fixtures for all tests."""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set

import httpx
import pytest

from cli.config import Config
from common.constants import MIB
from common.schemas import ChunkStatusResponse, ChunkUploadResponse, DirectUploadResponse
from uploader.collaborators import InMemoryCatalog
from uploader.config import UploadSettings
from uploader.exceptions import IntegrityError, TransientNetworkError
from uploader.models import FinalizeResult, StorageNode
from uploader.orchestrator import UploadOrchestrator
from uploader.sources import BytesSource
from uploader.state_store import MemoryStateStore
from uploader.storage_router import StorageRouter


def make_bytes(size: int) -> bytes:
    """Deterministic test content of the given size."""
    return bytes(i % 251 for i in range(size))


class FakeStorageRouter(StorageRouter):
    """
    StorageRouter whose remote side is an in-memory node.

    Failures are scripted per chunk index or per call so orchestration
    logic can be exercised without HTTP.

    Attributes:
        chunk_failures: chunk index -> number of times the next uploads of it fail
        lost_acks: chunk indices acknowledged once without being stored
        finalize_script: exceptions raised by the next finalize calls, in order
        status_failures: number of chunk_status calls that fail before succeeding
    """

    def __init__(self, settings: UploadSettings, nodes: Optional[List[StorageNode]] = None):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(599)))
        super().__init__(
            nodes or [StorageNode(id='primary', endpoint='http://primary.test', capacity=MIB, priority=0)],
            settings=settings,
            client=client,
        )
        self.stored: Dict[str, Dict[int, bytes]] = {}
        self.names: Dict[str, str] = {}
        self.totals: Dict[str, int] = {}
        self.objects: Dict[str, bytes] = {}
        self.chunk_failures: Dict[int, int] = {}
        self.lost_acks: Set[int] = set()
        self.finalize_script: List[Exception] = []
        self.status_failures = 0
        self.direct_failures: Dict[str, int] = {}
        self.on_chunk: Optional[Callable[[int], Awaitable[None]]] = None

        self.chunk_calls: List[int] = []
        self.direct_calls: List[str] = []
        self.finalize_calls: List[int] = []
        self.deleted: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def upload_chunk(self, node, upload_id, chunk_index, data, total_chunks, file_name,
                           storage_file_name=None):
        self.chunk_calls.append(chunk_index)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.on_chunk is not None:
                await self.on_chunk(chunk_index)
            if self.chunk_failures.get(chunk_index, 0) > 0:
                self.chunk_failures[chunk_index] -= 1
                raise TransientNetworkError(f"Chunk {chunk_index} rejected", status_code=500)

            name = self.names.setdefault(upload_id, storage_file_name or f"{upload_id}.bin")
            self.totals[upload_id] = total_chunks
            if chunk_index in self.lost_acks:
                self.lost_acks.discard(chunk_index)
            else:
                self.stored.setdefault(upload_id, {})[chunk_index] = data
            return ChunkUploadResponse(
                upload_id=upload_id, chunk_index=chunk_index, storage_file_name=name, size=len(data)
            )
        finally:
            self.in_flight -= 1

    async def chunk_status(self, node, upload_id):
        if self.status_failures > 0:
            self.status_failures -= 1
            raise TransientNetworkError("Chunk status unavailable")
        chunks = self.stored.get(upload_id)
        if chunks is None:
            return ChunkStatusResponse(upload_id=upload_id)
        first = chunks.get(0)
        return ChunkStatusResponse(
            upload_id=upload_id,
            storage_file_name=self.names.get(upload_id),
            total_chunks=self.totals.get(upload_id),
            chunk_size=len(first) if first is not None else None,
            uploaded_chunks=sorted(chunks),
        )

    async def finalize(self, node, upload_id, storage_file_name, total_chunks, mime_type, user_id=None):
        self.finalize_calls.append(total_chunks)
        if self.finalize_script:
            raise self.finalize_script.pop(0)
        chunks = self.stored.get(upload_id, {})
        missing = [i for i in range(total_chunks) if i not in chunks]
        if missing:
            raise IntegrityError("Missing chunks", upload_id=upload_id, missing_chunks=missing)
        data = b''.join(chunks[i] for i in range(total_chunks))
        path = f"{user_id or 'anonymous'}/{storage_file_name}"
        self.objects[path] = data
        del self.stored[upload_id]
        return FinalizeResult(path=path, size=len(data))

    async def upload_direct(self, node, source, user_id=None, on_bytes_sent=None):
        self.direct_calls.append(node.id)
        if self.direct_failures.get(node.id, 0) > 0:
            self.direct_failures[node.id] -= 1
            raise TransientNetworkError(f"Node {node.id} unavailable", status_code=503)
        reader = source.open_reader(on_bytes_sent)
        data = b''
        piece = reader.read()
        while piece:
            data += piece
            piece = reader.read()
        path = f"{user_id or 'anonymous'}/{source.name}"
        self.objects[path] = data
        return DirectUploadResponse(path=path, file_name=source.name, size=len(data), mime_type=source.mime_type)

    async def delete(self, node, path):
        self.deleted.append(path)
        return self.objects.pop(path, None) is not None


@pytest.fixture
def fast_settings():
    """
    Engine settings scaled down to bytes: threshold 20 B, 10 B chunks, no backoff.
    """
    return UploadSettings(
        chunk_threshold=20,
        chunk_size=10,
        min_chunk_size=4,
        max_chunk_size=64,
        min_parallel=2,
        max_parallel=4,
        chunks_per_worker=2,
        verify_rounds=3,
        finalize_attempts=3,
        chunk_retries=0,
        retry_base_delay=0,
    )


@pytest.fixture
def fake_router(fast_settings):
    return FakeStorageRouter(fast_settings)


@pytest.fixture
def memory_store():
    return MemoryStateStore()


@pytest.fixture
def catalog():
    return InMemoryCatalog()


@pytest.fixture
def orchestrator(fake_router, memory_store, catalog, fast_settings):
    return UploadOrchestrator(fake_router, memory_store, catalog, settings=fast_settings)


@pytest.fixture
def source_factory():
    """Build in-memory sources: source_factory(size, name='file.bin')."""
    def build(size: int, name: str = 'file.bin') -> BytesSource:
        return BytesSource(name, make_bytes(size))
    return build


@pytest.fixture
def temp_config_dir(tmp_path):
    """
    Create temporary config directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to temporary .vaultlift directory
    """
    config_dir = tmp_path / '.vaultlift'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def temp_config(temp_config_dir):
    """
    Create temporary config instance whose upload state also lives in the temp directory.

    Args:
        temp_config_dir: Temporary config directory fixture

    Returns:
        Config instance with temp config file
    """
    config = Config(temp_config_dir / 'config.json')
    config.data['state_file'] = str(temp_config_dir / 'uploads.json')
    config.save()
    return config


@pytest.fixture
def sample_file(tmp_path):
    """
    Create a sample file for testing file uploads.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to sample text file
    """
    file_path = tmp_path / 'test.txt'
    file_path.write_text('Sample content for testing')
    return file_path


@pytest.fixture
def multiple_sample_files(tmp_path):
    """
    Create multiple sample files for testing bulk operations.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        List of Paths to sample files
    """
    files = []
    for i in range(3):
        file_path = tmp_path / f'test{i}.txt'
        file_path.write_text(f'Sample content {i}')
        files.append(file_path)
    return files

"""On-disk storage for stored objects and per-upload chunk temp files."""

import json
import shutil
import threading
import uuid
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Tuple

from common.logging_config import get_logger
from storage_node.config import CHUNKS_DIR_NAME
from storage_node.exceptions import (
    ChunkAssemblyError,
    InvalidPathError,
    StorageFullError,
    UploadNotFoundError,
)

logger = get_logger(__name__)

ANONYMOUS_USER = "anonymous"
COPY_PIECE_SIZE = 64 * 1024


def _safe_component(value: str) -> str:
    """Reduce a client-supplied name to a single path component."""
    name = Path(value.replace('\\', '/')).name
    if name in ('', '.', '..'):
        raise InvalidPathError(f"Invalid name: {value!r}")
    return name


class ChunkStore:
    """
    Stores finished objects under <root>/<userId>/<storageFileName> and
    in-progress uploads under <root>/.chunks/<uploadId>/.

    Each upload directory holds one file per chunk (chunk_<index>) plus a
    meta.json recording the assigned storage name, total chunk count and
    the indices received. Re-uploading a chunk overwrites its file.
    """

    def __init__(self, root: Path, capacity_bytes: int = 0):
        self.root = Path(root)
        self.capacity_bytes = capacity_bytes
        self._lock = threading.Lock()
        self.chunks_root.mkdir(parents=True, exist_ok=True)

    @property
    def chunks_root(self) -> Path:
        return self.root / CHUNKS_DIR_NAME

    def _upload_dir(self, upload_id: str) -> Path:
        return self.chunks_root / _safe_component(upload_id)

    def _chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self._upload_dir(upload_id) / f"chunk_{chunk_index}"

    def _read_meta(self, upload_id: str) -> Optional[Dict]:
        meta_path = self._upload_dir(upload_id) / "meta.json"
        if not meta_path.exists():
            return None
        with open(meta_path, 'r') as f:
            return json.load(f)

    def _write_meta(self, upload_id: str, meta: Dict) -> None:
        meta_path = self._upload_dir(upload_id) / "meta.json"
        tmp_path = meta_path.with_suffix('.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(meta, f)
        tmp_path.replace(meta_path)

    def resolve(self, relative_path: str) -> Path:
        """
        Map a stored-object path to a file under the root.

        Raises:
            InvalidPathError: If the path escapes the root or points into chunk storage
        """
        root = self.root.resolve()
        full_path = (root / relative_path).resolve()
        if root not in full_path.parents or CHUNKS_DIR_NAME in full_path.relative_to(root).parts:
            raise InvalidPathError(f"Invalid path: {relative_path!r}")
        return full_path

    def _check_capacity(self, incoming_bytes: int) -> None:
        if self.capacity_bytes and self.used_bytes() + incoming_bytes > self.capacity_bytes:
            raise StorageFullError(
                f"Storage full: {incoming_bytes} more bytes would exceed {self.capacity_bytes}"
            )

    def write_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        data: bytes,
        total_chunks: int,
        file_name: str,
        storage_file_name: Optional[str] = None
    ) -> str:
        """
        Store one chunk.

        The storage file name is fixed by the first chunk received for the
        upload: the client's storageFileName if given, else a fresh uuid
        keeping the original extension.

        Returns:
            The storage file name assigned to the upload
        """
        if chunk_index < 0 or chunk_index >= total_chunks:
            raise ValueError(f"chunkIndex {chunk_index} outside [0, {total_chunks})")
        self._check_capacity(len(data))

        with self._lock:
            upload_dir = self._upload_dir(upload_id)
            upload_dir.mkdir(parents=True, exist_ok=True)
            meta = self._read_meta(upload_id)
            if meta is None:
                if storage_file_name:
                    assigned = _safe_component(storage_file_name)
                else:
                    assigned = f"{uuid.uuid4()}{Path(file_name).suffix}"
                meta = {
                    'storageFileName': assigned,
                    'fileName': file_name,
                    'totalChunks': total_chunks,
                    'received': [],
                }

            self._chunk_path(upload_id, chunk_index).write_bytes(data)
            received = set(meta['received'])
            received.add(chunk_index)
            meta['received'] = sorted(received)
            meta['totalChunks'] = total_chunks
            self._write_meta(upload_id, meta)

        logger.debug(f"Stored chunk {chunk_index + 1}/{total_chunks} ({len(data)} B) [upload_id={upload_id}]")
        return meta['storageFileName']

    def chunk_status(self, upload_id: str) -> Optional[Dict]:
        """
        Chunks currently held for an upload.

        Returns:
            Dict with storageFileName, totalChunks, chunkSize and uploadedChunks,
            or None if the upload is unknown
        """
        meta = self._read_meta(upload_id)
        if meta is None:
            return None
        uploaded = [
            i for i in meta['received']
            if self._chunk_path(upload_id, i).is_file()
        ]
        first_chunk = self._chunk_path(upload_id, 0)
        return {
            'uploadId': upload_id,
            'storageFileName': meta['storageFileName'],
            'totalChunks': meta['totalChunks'],
            'chunkSize': first_chunk.stat().st_size if first_chunk.is_file() else None,
            'uploadedChunks': uploaded,
        }

    def assemble(
        self,
        upload_id: str,
        storage_file_name: str,
        total_chunks: int,
        user_id: Optional[str] = None
    ) -> Tuple[str, int]:
        """
        Concatenate chunks 0..total_chunks-1 into the final object and drop the temp files.

        Returns:
            Tuple of (relative path, size in bytes)

        Raises:
            UploadNotFoundError: If the upload id is unknown
            ChunkAssemblyError: With missing/failed chunk indices
        """
        with self._lock:
            meta = self._read_meta(upload_id)
            if meta is None:
                raise UploadNotFoundError(f"Unknown upload: {upload_id}")

            received = set(meta['received'])
            missing = [i for i in range(total_chunks) if i not in received]
            if missing:
                raise ChunkAssemblyError(
                    f"{len(missing)} chunk(s) were never received",
                    missing_chunks=missing
                )

            failed = []
            for i in range(total_chunks):
                path = self._chunk_path(upload_id, i)
                if not path.is_file() or path.stat().st_size == 0:
                    failed.append(i)
            if failed:
                raise ChunkAssemblyError(
                    f"{len(failed)} chunk(s) are missing or empty in temp storage",
                    failed_chunks=failed
                )

            user_dir = self.root / _safe_component(user_id or ANONYMOUS_USER)
            user_dir.mkdir(parents=True, exist_ok=True)
            final_name = _safe_component(storage_file_name)
            final_path = user_dir / final_name
            size = 0
            with open(final_path, 'wb') as out:
                for i in range(total_chunks):
                    with open(self._chunk_path(upload_id, i), 'rb') as chunk:
                        shutil.copyfileobj(chunk, out, COPY_PIECE_SIZE)
                    size = out.tell()

            shutil.rmtree(self._upload_dir(upload_id), ignore_errors=True)

        relative = f"{user_dir.name}/{final_name}"
        logger.info(f"Assembled {relative} from {total_chunks} chunk(s) ({size} B) [upload_id={upload_id}]")
        return relative, size

    def save_file(self, user_id: Optional[str], original_name: str, stream: BinaryIO) -> Tuple[str, str, int]:
        """
        Store a whole file received in one request.

        Returns:
            Tuple of (relative path, storage file name, size in bytes)
        """
        user_dir = self.root / _safe_component(user_id or ANONYMOUS_USER)
        user_dir.mkdir(parents=True, exist_ok=True)
        storage_name = f"{uuid.uuid4()}{Path(original_name).suffix}"
        final_path = user_dir / storage_name
        with open(final_path, 'wb') as out:
            shutil.copyfileobj(stream, out, COPY_PIECE_SIZE)
            size = out.tell()

        if self.capacity_bytes and self.used_bytes() > self.capacity_bytes:
            final_path.unlink()
            raise StorageFullError(f"Storage full: {original_name} ({size} B) does not fit")

        return f"{user_dir.name}/{storage_name}", storage_name, size

    def delete(self, relative_path: str) -> bool:
        full_path = self.resolve(relative_path)
        if full_path.is_file():
            full_path.unlink()
            logger.info(f"Deleted {relative_path}")
            return True
        return False

    def list_uploads(self) -> List[str]:
        if not self.chunks_root.exists():
            return []
        return [p.name for p in self.chunks_root.iterdir() if p.is_dir()]

    def used_bytes(self) -> int:
        return sum(p.stat().st_size for p in self.root.rglob('*') if p.is_file())

    def stats(self) -> Dict[str, int]:
        """Storage usage in the shape of the health endpoint's storage block."""
        files = [p for p in self.root.rglob('*') if p.is_file() and CHUNKS_DIR_NAME not in p.parts]
        used = sum(p.stat().st_size for p in self.root.rglob('*') if p.is_file())
        if self.capacity_bytes:
            total = self.capacity_bytes
            free = max(total - used, 0)
        else:
            disk = shutil.disk_usage(self.root)
            total, free = disk.total, disk.free
        return {
            'totalBytes': total,
            'usedBytes': used,
            'freeBytes': free,
            'fileCount': len(files),
        }

"""Upload-session protocol routes."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status

from common.logging_config import get_logger
from common.schemas import (
    ChunkStatusResponse,
    ChunkUploadResponse,
    DeleteRequest,
    DirectUploadResponse,
    FinalizeRequest,
    FinalizeResponse,
    HealthResponse,
    StorageStats,
)
from storage_node.auth import require_auth
from storage_node.chunk_store import ChunkStore
from storage_node.config import NODE_VERSION
from storage_node.exceptions import UploadNotFoundError

logger = get_logger(__name__)

router = APIRouter(tags=["Storage"])


def get_store(request: Request) -> ChunkStore:
    return request.app.state.store


@router.get("/health", response_model=HealthResponse)
async def health(store: ChunkStore = Depends(get_store)):
    """
    Liveness plus storage usage. No authentication.
    """
    return HealthResponse(
        status="online",
        timestamp=datetime.now(timezone.utc).isoformat(),
        storage=StorageStats.model_validate(store.stats()),
        version=NODE_VERSION,
    )


@router.post("/upload", response_model=DirectUploadResponse)
async def upload_file(
    file: UploadFile = File(...),
    userId: Optional[str] = Form(None),
    store: ChunkStore = Depends(get_store),
    _token: str = Depends(require_auth)
):
    """
    Store a whole file sent in one multipart request.

    Parameters:
        - file: File to upload (multipart/form-data)
        - userId: Owner directory (defaults to "anonymous")

    Returns:
        - path: "<userId>/<storageFileName>"
        - fileName, size, mimeType

    Raises:
        - 401/403: Missing bearer token or wrong node key
        - 507: Storage full
    """
    path, storage_name, size = store.save_file(userId, file.filename or 'upload', file.file)
    logger.info(f"Stored {file.filename} as {path} ({size} B)")
    return DirectUploadResponse(
        path=path,
        file_name=storage_name,
        size=size,
        mime_type=file.content_type or 'application/octet-stream',
    )


@router.post("/chunk-upload", response_model=ChunkUploadResponse)
async def upload_chunk(
    chunk: UploadFile = File(...),
    uploadId: str = Form(...),
    chunkIndex: int = Form(...),
    totalChunks: int = Form(...),
    fileName: str = Form(''),
    storageFileName: Optional[str] = Form(None),
    store: ChunkStore = Depends(get_store),
    _token: str = Depends(require_auth)
):
    """
    Store one chunk of a resumable upload. Re-sending a chunk overwrites it.

    Returns:
        - storageFileName: fixed by the first chunk received for uploadId

    Raises:
        - 400: chunkIndex outside [0, totalChunks)
        - 507: Storage full
    """
    if totalChunks < 1 or not 0 <= chunkIndex < totalChunks:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"chunkIndex {chunkIndex} outside [0, {totalChunks})"
        )

    data = await chunk.read()
    assigned = store.write_chunk(
        upload_id=uploadId,
        chunk_index=chunkIndex,
        data=data,
        total_chunks=totalChunks,
        file_name=fileName,
        storage_file_name=storageFileName,
    )
    return ChunkUploadResponse(
        upload_id=uploadId,
        chunk_index=chunkIndex,
        storage_file_name=assigned,
        size=len(data),
    )


@router.get("/chunk-status/{upload_id}", response_model=ChunkStatusResponse)
async def chunk_status(
    upload_id: str,
    store: ChunkStore = Depends(get_store),
    _token: str = Depends(require_auth)
):
    """
    Chunks the node holds for an upload.

    Raises:
        - 404: Upload unknown to this node
    """
    status_body = store.chunk_status(upload_id)
    if status_body is None:
        raise UploadNotFoundError(f"Unknown upload: {upload_id}")
    return ChunkStatusResponse.model_validate(status_body)


@router.post("/finalize-upload", response_model=FinalizeResponse)
async def finalize_upload(
    body: FinalizeRequest,
    store: ChunkStore = Depends(get_store),
    _token: str = Depends(require_auth)
):
    """
    Assemble chunks 0..totalChunks-1 into "<userId>/<storageFileName>".

    Raises:
        - 400: missingChunks (never received)
        - 422: failedChunks (temp file gone or empty)
        - 404: Upload unknown to this node
    """
    path, size = store.assemble(
        upload_id=body.upload_id,
        storage_file_name=body.storage_file_name,
        total_chunks=body.total_chunks,
        user_id=body.user_id,
    )
    return FinalizeResponse(path=path, size=size)


@router.delete("/delete")
async def delete_file(
    body: DeleteRequest,
    store: ChunkStore = Depends(get_store),
    _token: str = Depends(require_auth)
):
    """
    Delete a stored object. Deleting a missing object is not an error.
    """
    deleted = store.delete(body.path)
    return {"success": True, "deleted": deleted}

"""Pydantic models for the upload-session wire protocol (router <-> storage node)."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(populate_by_name=True)


class ErrorResponse(WireModel):
    """Response model for errors."""
    detail: str
    code: str = 'UNKNOWN'


class StorageStats(WireModel):
    """Storage usage reported by a node's health endpoint."""
    total_bytes: int = Field(0, alias='totalBytes')
    used_bytes: int = Field(0, alias='usedBytes')
    free_bytes: int = Field(0, alias='freeBytes')
    file_count: int = Field(0, alias='fileCount')


class HealthResponse(WireModel):
    """Response model for GET /health."""
    status: str
    timestamp: str
    storage: Optional[StorageStats] = None
    version: str = '1.0.0'


class DirectUploadResponse(WireModel):
    """Response model for POST /upload (single-request path)."""
    path: str
    file_name: str = Field(alias='fileName')
    size: int
    mime_type: str = Field('application/octet-stream', alias='mimeType')


class ChunkUploadResponse(WireModel):
    """Response model for POST /chunk-upload."""
    upload_id: str = Field(alias='uploadId')
    chunk_index: int = Field(alias='chunkIndex')
    storage_file_name: str = Field(alias='storageFileName')
    size: int = 0


class ChunkStatusResponse(WireModel):
    """Response model for GET /chunk-status/{uploadId}."""
    upload_id: str = Field(alias='uploadId')
    storage_file_name: Optional[str] = Field(None, alias='storageFileName')
    total_chunks: Optional[int] = Field(None, alias='totalChunks')
    chunk_size: Optional[int] = Field(None, alias='chunkSize')
    uploaded_chunks: List[int] = Field(default_factory=list, alias='uploadedChunks')


class FinalizeRequest(WireModel):
    """Request body for POST /finalize-upload."""
    upload_id: str = Field(alias='uploadId')
    storage_file_name: str = Field(alias='storageFileName')
    total_chunks: int = Field(alias='totalChunks', ge=1)
    mime_type: str = Field('application/octet-stream', alias='mimeType')
    user_id: Optional[str] = Field(None, alias='userId')


class FinalizeResponse(WireModel):
    """Successful response for POST /finalize-upload."""
    path: str
    size: int = 0


class FinalizeErrorResponse(WireModel):
    """
    Error body for POST /finalize-upload.

    failedChunks: chunk bytes are missing or unreadable in the node's temp storage.
    missingChunks: the node's chunk bookkeeping disagrees with totalChunks.
    Neither present: the failure is terminal.
    """
    detail: str = 'Finalize failed'
    code: str = 'FINALIZE_FAILED'
    failed_chunks: Optional[List[int]] = Field(None, alias='failedChunks')
    missing_chunks: Optional[List[int]] = Field(None, alias='missingChunks')


class DeleteRequest(WireModel):
    """Request body for DELETE /delete."""
    path: str

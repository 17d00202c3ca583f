"""Entry point for the reference storage node."""

import time
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from common.logging_config import get_logger, setup_logging
from storage_node.chunk_store import ChunkStore
from storage_node.config import NODE_HOST, NODE_PORT, NODE_VERSION, NodeSettings
from storage_node.exceptions import (
    ChunkAssemblyError,
    InvalidNodeKeyError,
    InvalidPathError,
    NodeError,
    StorageFullError,
    UploadNotFoundError,
)
from storage_node.routes import router

setup_logging('storage_node')
logger = get_logger(__name__)


def create_app(settings: Optional[NodeSettings] = None) -> FastAPI:
    """
    Build the node application.

    Args:
        settings: Node settings (read from VAULTLIFT_NODE_* env vars if None)
    """
    settings = settings or NodeSettings.from_env()

    app = FastAPI(
        title="VaultLift Storage Node",
        description="Reference storage node for resumable chunked uploads",
        version=NODE_VERSION
    )
    app.state.settings = settings
    app.state.store = ChunkStore(settings.data_dir, settings.capacity_bytes)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """
        Middleware to log all HTTP requests and responses.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()
        logger.debug(f"Request started: {request.method} {request.url.path} [request_id={request_id}]")

        response = await call_next(request)

        duration = time.time() - start_time
        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration:.3f}s [request_id={request_id}]"
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(InvalidNodeKeyError)
    async def invalid_node_key_handler(request: Request, exc: InvalidNodeKeyError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.warning(f"Invalid node key: {exc} [request_id={request_id}] path={request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": str(exc), "code": "INVALID_NODE_KEY"}
        )

    @app.exception_handler(InvalidPathError)
    async def invalid_path_handler(request: Request, exc: InvalidPathError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.warning(f"Invalid path: {exc} [request_id={request_id}] path={request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "code": "INVALID_PATH"}
        )

    @app.exception_handler(UploadNotFoundError)
    async def upload_not_found_handler(request: Request, exc: UploadNotFoundError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.info(f"Upload not found: {exc} [request_id={request_id}] path={request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc), "code": "UPLOAD_NOT_FOUND"}
        )

    @app.exception_handler(ChunkAssemblyError)
    async def chunk_assembly_handler(request: Request, exc: ChunkAssemblyError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.warning(
            f"Finalize rejected: {exc} missing={exc.missing_chunks} failed={exc.failed_chunks} "
            f"[request_id={request_id}]"
        )
        if exc.missing_chunks:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": str(exc), "code": "MISSING_CHUNKS", "missingChunks": exc.missing_chunks}
            )
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "code": "FAILED_CHUNKS", "failedChunks": exc.failed_chunks}
        )

    @app.exception_handler(StorageFullError)
    async def storage_full_handler(request: Request, exc: StorageFullError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.error(f"Storage full error: {exc} [request_id={request_id}] path={request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_507_INSUFFICIENT_STORAGE,
            content={"detail": str(exc), "code": "STORAGE_FULL"}
        )

    @app.exception_handler(NodeError)
    async def node_exception_handler(request: Request, exc: NodeError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.error(f"Node exception: {exc} [request_id={request_id}] path={request.url.path}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc), "code": "INTERNAL_ERROR"}
        )

    app.include_router(router)

    logger.info(
        f"Storage node ready [data_dir={settings.data_dir}] "
        f"[capacity={settings.capacity_bytes or 'disk'}] [node_key={'set' if settings.api_key else 'unset'}]"
    )
    return app


def main():
    """Run the node with uvicorn."""
    uvicorn.run(create_app(), host=NODE_HOST, port=NODE_PORT, log_level="info")


if __name__ == "__main__":
    main()

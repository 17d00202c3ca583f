"""Storage node selection and the HTTP transport for the upload-session protocol."""

import asyncio
import threading
import uuid
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from common.logging_config import get_logger
from common.schemas import (
    ChunkStatusResponse,
    ChunkUploadResponse,
    DirectUploadResponse,
    ErrorResponse,
    FinalizeErrorResponse,
    FinalizeRequest,
    FinalizeResponse,
    HealthResponse,
)
from uploader.collaborators import TokenProvider
from uploader.config import UploadSettings
from uploader.exceptions import (
    AuthError,
    CapacityError,
    IntegrityError,
    TransientNetworkError,
    UploadError,
)
from uploader.models import FinalizeResult, StorageNode
from uploader.sources import UploadSource

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}


class StorageRouter:
    """
    Ranks storage nodes and talks to them over HTTP.

    Node selection is a pure function of the current node snapshots. Node
    state changes only through health probes and record_usage(), which is
    called after a confirmed, durable acceptance.
    """

    def __init__(
        self,
        nodes: Iterable[StorageNode],
        settings: Optional[UploadSettings] = None,
        token_provider: Optional[TokenProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize the router.

        Args:
            nodes: Known storage nodes; the primary node should be among them
            settings: Engine settings (timeouts, retry budget)
            token_provider: Source of the bearer credential; when None each
                node's own credential is used as the bearer token
            client: Shared httpx.AsyncClient (a private one is created if None)
            sleep: Backoff sleep, injectable for tests
        """
        self.settings = settings or UploadSettings()
        self.token_provider = token_provider
        self._nodes: Dict[str, StorageNode] = {n.id: n for n in nodes}
        self._lock = threading.Lock()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        self._sleep = sleep
        self._probe_task: Optional[asyncio.Task] = None
        logger.info(f"Initialized StorageRouter [nodes={list(self._nodes)}]")

    async def __aenter__(self) -> 'StorageRouter':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.stop_health_probes()
        if self._owns_client:
            await self.client.aclose()

    @property
    def nodes(self) -> List[StorageNode]:
        with self._lock:
            return list(self._nodes.values())

    def get_node(self, node_id: str) -> Optional[StorageNode]:
        with self._lock:
            return self._nodes.get(node_id)

    def add_node(self, node: StorageNode) -> None:
        with self._lock:
            self._nodes[node.id] = node
        logger.info(f"Storage node registered: {node.id} ({node.endpoint}) priority={node.priority}")

    def remove_node(self, node_id: str) -> bool:
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None or node.is_primary:
                return False
            del self._nodes[node_id]
        logger.info(f"Storage node removed: {node_id}")
        return True

    def ranked_nodes(self, required_capacity: int) -> List[StorageNode]:
        """
        Online nodes with more than required_capacity bytes free.

        Returns:
            Nodes ordered by (priority asc, free bytes desc)
        """
        candidates = [
            n for n in self.nodes
            if n.status == "online" and n.free > required_capacity
        ]
        return sorted(candidates, key=lambda n: (n.priority, -n.free))

    def select_node(self, required_capacity: int) -> Optional[StorageNode]:
        ranked = self.ranked_nodes(required_capacity)
        return ranked[0] if ranked else None

    def record_usage(self, node_id: str, bytes_added: int) -> None:
        """Account bytes against a node after the node has confirmed durable storage."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return
            node.used += bytes_added
        logger.debug(f"Node {node_id} usage +{bytes_added} B (used={node.used})")

    def _headers(self, node: StorageNode) -> Dict[str, str]:
        if self.token_provider is not None:
            token = self.token_provider.get_token()
            if not token:
                raise AuthError("Not signed in: no bearer credential available")
        else:
            token = node.credential
        headers = {'X-Request-ID': str(uuid.uuid4())}
        if token:
            headers['Authorization'] = f'Bearer {token}'
        if node.credential:
            headers['X-Node-Key'] = node.credential
        return headers

    async def _request(
        self,
        method: str,
        node: StorageNode,
        path: str,
        timeout: float,
        max_retries: int = 0,
        **kwargs
    ) -> httpx.Response:
        """
        Make an HTTP request with retry on 5xx responses and network failures.

        Args:
            method: HTTP method
            node: Target node
            path: Endpoint path, appended to the node's endpoint
            timeout: Deadline for each attempt, in seconds
            max_retries: Extra attempts after the first one
            **kwargs: Passed through to httpx

        Returns:
            The last HTTP response received (any status)

        Raises:
            TransientNetworkError: If every attempt failed at the transport level
            AuthError: If no credential is available
        """
        url = f"{node.endpoint}{path}"
        headers = self._headers(node)
        headers.update(kwargs.pop('headers', {}))
        request_id = headers['X-Request-ID']

        last_exception: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            try:
                response = await self.client.request(method, url, headers=headers, timeout=timeout, **kwargs)
                logger.debug(
                    f"Response received: {method} {path} status={response.status_code} "
                    f"[node={node.id}] [request_id={request_id}]"
                )
                retryable = (
                    (response.status_code >= 500 and response.status_code != 507)
                    or response.status_code in RETRYABLE_STATUS_CODES
                )
                if retryable and attempt < max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Server error (attempt {attempt + 1}/{max_retries + 1}): {method} {path} "
                        f"status={response.status_code}, retrying in {delay}s [node={node.id}]"
                    )
                    await self._sleep(delay)
                    continue
                return response

            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_exception = e
                if attempt < max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        f"Network error (attempt {attempt + 1}/{max_retries + 1}): {method} {path} "
                        f"error={type(e).__name__}, retrying in {delay}s [node={node.id}]"
                    )
                    await self._sleep(delay)
                    continue
                logger.warning(
                    f"Network error (retries exhausted): {method} {path} error={e!r} [node={node.id}]"
                )

        if isinstance(last_exception, httpx.TimeoutException):
            raise TransientNetworkError(f"Request to {node.id} timed out: {method} {path}") from last_exception
        raise TransientNetworkError(f"Cannot reach storage node {node.id}: {last_exception}") from last_exception

    def _backoff(self, attempt: int) -> float:
        return self.settings.retry_base_delay * (self.settings.retry_backoff_multiplier ** attempt)

    @staticmethod
    def _error_body(response: httpx.Response) -> ErrorResponse:
        try:
            return ErrorResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            return ErrorResponse(detail=response.text or f"HTTP {response.status_code}")

    def _raise_for_status(self, node: StorageNode, response: httpx.Response, operation: str) -> None:
        """Map a non-2xx response onto the error taxonomy."""
        if response.is_success:
            return
        error = self._error_body(response)
        message = f"{operation} failed on node {node.id}: {error.detail} (status={response.status_code})"
        if response.status_code in (401, 403):
            raise AuthError(message)
        if response.status_code == 507 or error.code == 'STORAGE_FULL':
            raise CapacityError(message)
        raise TransientNetworkError(message, status_code=response.status_code)

    async def upload_chunk(
        self,
        node: StorageNode,
        upload_id: str,
        chunk_index: int,
        data: bytes,
        total_chunks: int,
        file_name: str,
        storage_file_name: Optional[str] = None
    ) -> ChunkUploadResponse:
        """
        Send one chunk to the node's temp storage.

        Returns:
            The acknowledgment, echoing the (possibly server-assigned) storage file name

        Raises:
            TransientNetworkError: On timeout, transport failure or any non-2xx status
            AuthError: If the credential is rejected
        """
        form = {
            'uploadId': upload_id,
            'fileName': file_name,
            'chunkIndex': str(chunk_index),
            'totalChunks': str(total_chunks),
        }
        if storage_file_name:
            form['storageFileName'] = storage_file_name

        response = await self._request(
            'POST', node, '/chunk-upload',
            timeout=self.settings.chunk_timeout(len(data)),
            max_retries=self.settings.chunk_retries,
            data=form,
            files={'chunk': (f'chunk_{chunk_index}', data, 'application/octet-stream')},
        )
        self._raise_for_status(node, response, f"Chunk {chunk_index} upload")
        try:
            return ChunkUploadResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransientNetworkError(f"Malformed chunk acknowledgment from node {node.id}: {e}") from e

    async def chunk_status(self, node: StorageNode, upload_id: str) -> ChunkStatusResponse:
        """
        The node's authoritative view of which chunks it holds for upload_id.

        A 404 means the node knows nothing about the upload (empty set).
        """
        response = await self._request(
            'GET', node, f'/chunk-status/{upload_id}',
            timeout=self.settings.chunk_timeout_base,
            max_retries=self.settings.chunk_retries,
        )
        if response.status_code == 404:
            return ChunkStatusResponse(upload_id=upload_id)
        self._raise_for_status(node, response, "Chunk status query")
        try:
            return ChunkStatusResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransientNetworkError(f"Malformed chunk status from node {node.id}: {e}") from e

    async def finalize(
        self,
        node: StorageNode,
        upload_id: str,
        storage_file_name: str,
        total_chunks: int,
        mime_type: str,
        user_id: Optional[str] = None
    ) -> FinalizeResult:
        """
        Ask the node to assemble the acknowledged chunks into the final object.

        Raises:
            IntegrityError: With failed_chunks and/or missing_chunks set when the
                node asks for targeted re-uploads, or with neither set when the
                failure is terminal
            TransientNetworkError: On transport failure, a 5xx, 408 or 429 status
            AuthError: If the credential is rejected
        """
        body = FinalizeRequest(
            upload_id=upload_id,
            storage_file_name=storage_file_name,
            total_chunks=total_chunks,
            mime_type=mime_type,
            user_id=user_id,
        )
        response = await self._request(
            'POST', node, '/finalize-upload',
            timeout=self.settings.chunk_timeout_base * 4,
            json=body.model_dump(by_alias=True),
        )

        if response.is_success:
            try:
                result = FinalizeResponse.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                raise TransientNetworkError(f"Malformed finalize response from node {node.id}: {e}") from e
            return FinalizeResult(path=result.path, size=result.size)

        if (
            response.status_code in (401, 403)
            or response.status_code >= 500
            or response.status_code in RETRYABLE_STATUS_CODES
        ):
            self._raise_for_status(node, response, "Finalize")

        try:
            error = FinalizeErrorResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            error = FinalizeErrorResponse(detail=response.text or f"HTTP {response.status_code}")

        raise IntegrityError(
            f"Finalize rejected by node {node.id}: {error.detail}",
            upload_id=upload_id,
            failed_chunks=error.failed_chunks or (),
            missing_chunks=error.missing_chunks or (),
        )

    async def upload_direct(
        self,
        node: StorageNode,
        source: UploadSource,
        user_id: Optional[str] = None,
        on_bytes_sent: Optional[Callable[[int], None]] = None
    ) -> DirectUploadResponse:
        """
        Single-request upload with transport-level progress.

        Args:
            on_bytes_sent: Called with the running byte count as the body is streamed
        """
        reader = source.open_reader(on_bytes_sent)
        form = {'userId': user_id} if user_id else {}
        response = await self._request(
            'POST', node, '/upload',
            timeout=self.settings.chunk_timeout(source.size),
            data=form,
            files={'file': (source.name, reader, source.mime_type)},
        )
        self._raise_for_status(node, response, f"Upload of {source.name}")
        try:
            return DirectUploadResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransientNetworkError(f"Malformed upload response from node {node.id}: {e}") from e

    async def delete(self, node: StorageNode, path: str) -> bool:
        """Best-effort removal of a stored object. Never raises."""
        try:
            response = await self._request(
                'DELETE', node, '/delete',
                timeout=self.settings.health_timeout * 3,
                json={'path': path},
            )
            if not response.is_success:
                logger.warning(f"Delete of {path} on node {node.id} returned status={response.status_code}")
            return response.is_success
        except (UploadError, httpx.HTTPError) as e:
            logger.warning(f"Delete of {path} on node {node.id} failed: {e}")
            return False

    async def health_check(self, node: StorageNode, timeout: Optional[float] = None) -> bool:
        """
        Probe a node and refresh its status and storage stats.

        Returns:
            True if the node answered its health endpoint successfully
        """
        timeout = timeout if timeout is not None else self.settings.health_timeout
        healthy = False
        try:
            response = await self._request('GET', node, '/health', timeout=timeout)
            if response.is_success:
                health = HealthResponse.model_validate(response.json())
                healthy = health.status == 'online'
                if healthy and health.storage is not None and health.storage.total_bytes > 0:
                    with self._lock:
                        node.capacity = health.storage.total_bytes
                        node.used = health.storage.used_bytes
        except (UploadError, ValueError, ValidationError) as e:
            logger.debug(f"Health probe failed for node {node.id}: {e}")

        with self._lock:
            previous = node.status
            node.status = "online" if healthy else "offline"
        if previous != node.status:
            log = logger.info if healthy else logger.warning
            log(f"Storage node {node.id} is now {node.status}")
        return healthy

    async def refresh_nodes(self) -> Dict[str, bool]:
        """Probe every node concurrently."""
        nodes = self.nodes
        results = await asyncio.gather(*(self.health_check(n) for n in nodes))
        return {n.id: ok for n, ok in zip(nodes, results)}

    def start_health_probes(self, interval: Optional[float] = None) -> None:
        """Start periodic background health probes (no-op if already running)."""
        if self._probe_task is not None and not self._probe_task.done():
            return
        interval = interval if interval is not None else self.settings.health_interval
        self._probe_task = asyncio.create_task(self._probe_loop(interval))
        logger.info(f"Storage node health probes started (interval={interval}s)")

    async def stop_health_probes(self) -> None:
        if self._probe_task is None:
            return
        self._probe_task.cancel()
        try:
            await self._probe_task
        except asyncio.CancelledError:
            pass
        self._probe_task = None
        logger.info("Storage node health probes stopped")

    async def _probe_loop(self, interval: float) -> None:
        while True:
            try:
                await self.refresh_nodes()
            except Exception as e:
                logger.error(f"Health probe error: {e}", exc_info=True)
            await asyncio.sleep(interval)

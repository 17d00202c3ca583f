"""
Top-level upload state machine.

PREPARING -> (DIRECT | CHUNK_INIT) -> UPLOADING -> VERIFYING -> FINALIZING -> COMPLETE,
with FAILED reachable from any state once retries are exhausted.
"""

import asyncio
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from common.logging_config import get_logger
from uploader.collaborators import CatalogClient, UsageAccountant
from uploader.config import UploadSettings
from uploader.exceptions import (
    CapacityError,
    CatalogError,
    IntegrityError,
    LocalStateError,
    TransientNetworkError,
    UploadCancelledError,
    UploadError,
)
from uploader.hooks import PostUploadHookDispatcher, UploadCompleted, usage_accounting_hook
from uploader.models import FileRecord, FileRecordRequest, StorageNode, UploadSession, chunk_count
from uploader.progress import FinalizationProgress, ProgressObserver, ProgressTracker, UploadProgress
from uploader.sources import UploadSource
from uploader.speed_profiler import NetworkHint, SpeedProfileCache, SpeedProfiler
from uploader.state_store import ResumableStateStore
from uploader.storage_router import StorageRouter
from uploader.worker_pool import ChunkUploadWorkerPool

logger = get_logger(__name__)

BatchProgressObserver = Callable[[int, UploadProgress], None]


class UploadState(str, Enum):
    PREPARING = "preparing"
    DIRECT = "direct"
    CHUNK_INIT = "chunk_init"
    UPLOADING = "uploading"
    VERIFYING = "verifying"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = (UploadState.COMPLETE, UploadState.FAILED)


class UploadOrchestrator:
    """
    Drives one file (or a batch of files) from a local source into storage.

    Small files go through a single direct request. Larger files, and any
    upload resumed by id, go through a resumable chunked session whose
    progress is persisted after every acknowledged chunk. The remote's view
    of acknowledged chunks always wins over the local one.
    """

    def __init__(
        self,
        router: StorageRouter,
        store: ResumableStateStore,
        catalog: CatalogClient,
        settings: Optional[UploadSettings] = None,
        profile_cache: Optional[SpeedProfileCache] = None,
        network_hint: Optional[NetworkHint] = None,
        hooks: Optional[PostUploadHookDispatcher] = None,
        usage_accountant: Optional[UsageAccountant] = None
    ):
        self.router = router
        self.store = store
        self.catalog = catalog
        self.settings = settings or router.settings
        self.profile_cache = profile_cache or SpeedProfileCache(self.settings.speed_cache_ttl)
        self.network_hint = network_hint
        self.hooks = hooks or PostUploadHookDispatcher(concurrency=self.settings.hook_concurrency)
        if usage_accountant is not None:
            self.hooks.register("usage-accounting", usage_accounting_hook(usage_accountant))

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[asyncio.Task] = set()
        self._states: Dict[str, UploadState] = {}
        # finished upload ids, oldest first
        self._finished: "OrderedDict[str, None]" = OrderedDict()

    def state(self, upload_id: str) -> Optional[UploadState]:
        """
        Current state of an upload.

        Only the most recent finished_state_history COMPLETE/FAILED uploads
        are remembered; older ones return None.
        """
        return self._states.get(upload_id)

    def _set_state(self, upload_id: str, state: UploadState) -> None:
        previous = self._states.get(upload_id)
        self._states[upload_id] = state
        if previous != state:
            logger.info(f"Upload state {previous.value if previous else '-'} -> {state.value} [upload_id={upload_id}]")

        if state in TERMINAL_STATES:
            self._finished[upload_id] = None
            self._finished.move_to_end(upload_id)
            while len(self._finished) > self.settings.finished_state_history:
                evicted, _ = self._finished.popitem(last=False)
                self._states.pop(evicted, None)
        else:
            self._finished.pop(upload_id, None)

    def new_profiler(self) -> SpeedProfiler:
        return SpeedProfiler(self.settings, cache=self.profile_cache, network_hint=self.network_hint)

    def list_sessions(self) -> List[UploadSession]:
        """Resumable sessions currently held in the state store."""
        return self.store.list_all()

    def cancel(self, upload_id: str) -> bool:
        """
        Abort in-flight network calls for an upload.

        The session stays in the store so the upload can be resumed later.

        Returns:
            True if an active upload was signalled
        """
        task = self._tasks.get(upload_id)
        if task is None or task.done():
            return False
        self._cancel_requested.add(task)
        task.cancel()
        logger.info(f"Cancel requested [upload_id={upload_id}]")
        return True

    def abandon(self, upload_id: str) -> bool:
        """Cancel an upload if active and forget its local state. Chunks on the node are left as-is."""
        self.cancel(upload_id)
        removed = self.store.remove(upload_id)
        if removed:
            logger.info(f"Upload session abandoned [upload_id={upload_id}]")
        return removed

    async def upload(
        self,
        source: UploadSource,
        destination_folder_id: Optional[str] = None,
        on_progress: Optional[ProgressObserver] = None,
        resume_upload_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> FileRecord:
        """
        Upload one file and create its catalog record.

        Args:
            source: Bytes to upload
            destination_folder_id: Folder for the catalog record (None for root)
            on_progress: Observer receiving UploadProgress events
            resume_upload_id: Continue a previously interrupted chunked upload
            user_id: Owner recorded on the node and in the catalog

        Returns:
            The created FileRecord

        Raises:
            CapacityError: No node has room (raised before any network call)
            AuthError: Credential missing or rejected
            IntegrityError: Finalize kept reporting bad chunks
            TransientNetworkError: Retries exhausted; the session stays resumable
            CatalogError: Bytes were stored but the catalog record failed
            UploadCancelledError: cancel() was called for this upload
        """
        self.store.prune_expired(self.settings.session_retention)

        upload_id = resume_upload_id or str(uuid.uuid4())
        tracker = ProgressTracker(source.name, source.size, on_progress, upload_id=upload_id)
        task = asyncio.create_task(
            self._run(source, upload_id, tracker, destination_folder_id, resume_upload_id is not None, user_id)
        )
        self._tasks[upload_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task not in self._cancel_requested:
                raise
            upload_id = tracker.upload_id
            self._set_state(upload_id, UploadState.FAILED)
            tracker.emit("paused", message=UploadCancelledError.user_message)
            raise UploadCancelledError(f"Upload of {source.name} cancelled", upload_id=upload_id) from None
        finally:
            for key in [k for k, t in self._tasks.items() if t is task]:
                del self._tasks[key]
            self._cancel_requested.discard(task)

    async def upload_many(
        self,
        sources: Sequence[UploadSource],
        destination_folder_id: Optional[str] = None,
        on_progress: Optional[BatchProgressObserver] = None,
        user_id: Optional[str] = None,
        return_exceptions: bool = False
    ) -> List[Union[FileRecord, BaseException]]:
        """
        Upload several files with at most max_parallel_files running at once.

        Every file is attempted. If any upload failed, the first failure (in
        input order) is raised after the whole batch has settled, unless
        return_exceptions is set.

        Args:
            on_progress: Called with (index into sources, UploadProgress)
            return_exceptions: Return failures in place of their FileRecord instead of raising

        Returns:
            Results in the same order as sources
        """
        semaphore = asyncio.Semaphore(self.settings.max_parallel_files)

        async def upload_one(index: int, source: UploadSource) -> FileRecord:
            async with semaphore:
                observer = None
                if on_progress is not None:
                    def observer(event: UploadProgress) -> None:
                        on_progress(index, event)
                return await self.upload(source, destination_folder_id, observer, user_id=user_id)

        results = await asyncio.gather(
            *(upload_one(i, s) for i, s in enumerate(sources)),
            return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.error(f"Batch upload finished with {len(failures)}/{len(results)} failure(s)")
            if not return_exceptions:
                raise failures[0]
            return list(results)
        logger.info(f"Batch upload complete: {len(results)} file(s)")
        return list(results)

    async def _run(
        self,
        source: UploadSource,
        upload_id: str,
        tracker: ProgressTracker,
        folder_id: Optional[str],
        resuming: bool,
        user_id: Optional[str]
    ) -> FileRecord:
        self._set_state(upload_id, UploadState.PREPARING)
        tracker.emit("preparing", loaded=0)
        direct = source.size == 0 or (source.size <= self.settings.chunk_threshold and not resuming)
        try:
            if direct:
                return await self._upload_direct(source, upload_id, tracker, folder_id, user_id)
            return await self._upload_chunked(source, upload_id, tracker, folder_id, resuming, user_id)
        except UploadError as e:
            upload_id = tracker.upload_id
            if not direct and e.upload_id is None:
                e.upload_id = upload_id
            self._set_state(upload_id, UploadState.FAILED)
            tracker.emit("error", message=e.user_message)
            logger.error(
                f"Upload of {source.name} failed ({e.category}): {e} [upload_id={upload_id}]",
                exc_info=True
            )
            raise

    async def _upload_direct(
        self,
        source: UploadSource,
        upload_id: str,
        tracker: ProgressTracker,
        folder_id: Optional[str],
        user_id: Optional[str]
    ) -> FileRecord:
        self._set_state(upload_id, UploadState.DIRECT)
        nodes = self.router.ranked_nodes(source.size)
        if not nodes:
            raise CapacityError(f"No online storage node has room for {source.size} bytes", upload_id=upload_id)

        last_error: Optional[TransientNetworkError] = None
        for node in nodes:
            tracker.start_transfer()
            logger.info(f"Direct upload of {source.name} ({source.size} B) to node {node.id} [upload_id={upload_id}]")
            try:
                result = await self.router.upload_direct(
                    node, source, user_id,
                    on_bytes_sent=lambda sent: tracker.emit("uploading", loaded=sent),
                )
            except TransientNetworkError as e:
                last_error = e
                logger.warning(f"Direct upload to node {node.id} failed, trying next node: {e}")
                continue

            self.router.record_usage(node.id, result.size)
            return await self._complete(source, node, result.path, upload_id, tracker, folder_id, user_id)

        raise last_error

    async def _upload_chunked(
        self,
        source: UploadSource,
        upload_id: str,
        tracker: ProgressTracker,
        folder_id: Optional[str],
        resuming: bool,
        user_id: Optional[str]
    ) -> FileRecord:
        self._set_state(upload_id, UploadState.CHUNK_INIT)
        profiler = self.new_profiler()

        resumed = await self._resume_session(upload_id, source, folder_id, user_id) if resuming else None
        if resumed is not None:
            session, node = resumed
        else:
            # a failed resume gets a new id so stale remote chunks cannot be mistaken for ours
            session, node = self._create_session(
                source, profiler, folder_id, user_id,
                upload_id=None if resuming else upload_id
            )
            if session.upload_id != upload_id:
                self._states.pop(upload_id, None)
                upload_id = session.upload_id
                self._tasks[upload_id] = asyncio.current_task()
                self._set_state(upload_id, UploadState.CHUNK_INIT)
        self.store.save(session)

        tracker.upload_id = session.upload_id
        tracker.emit(
            "preparing",
            loaded=session.acknowledged_bytes(),
            upload_id=session.upload_id,
            chunked=True,
            total_chunks=session.total_chunks,
            chunk_size=session.chunk_size,
            parallelism=profiler.estimate().parallelism,
            uploaded_chunk_indices=sorted(session.acknowledged_chunks),
        )

        pool = ChunkUploadWorkerPool(self.router, profiler, self.store, self.settings)

        def on_ack(index: int) -> None:
            tracker.emit(
                "uploading",
                loaded=session.acknowledged_bytes(),
                uploaded_chunk_indices=sorted(session.acknowledged_chunks),
                parallelism=profiler.estimate().parallelism,
            )

        self._set_state(upload_id, UploadState.UPLOADING)
        tracker.start_transfer(session.acknowledged_bytes())
        pending = session.pending_chunks()
        logger.info(
            f"Uploading {len(pending)}/{session.total_chunks} chunk(s) of {session.file_name} "
            f"to node {node.id} (chunk_size={session.chunk_size}) [upload_id={upload_id}]"
        )
        if pending:
            tracker.emit("uploading", loaded=session.acknowledged_bytes())
            await pool.run(session, node, source, pending, on_ack)

        self._set_state(upload_id, UploadState.VERIFYING)
        await self._verify(session, node, source, pool, tracker, on_ack)

        self._set_state(upload_id, UploadState.FINALIZING)
        path = await self._finalize(session, node, source, pool, tracker, on_ack)

        self.router.record_usage(node.id, session.total_size)
        self.store.remove(session.upload_id)
        return await self._complete(source, node, path, upload_id, tracker, folder_id, user_id)

    def _create_session(
        self,
        source: UploadSource,
        profiler: SpeedProfiler,
        folder_id: Optional[str],
        user_id: Optional[str],
        upload_id: Optional[str] = None
    ) -> Tuple[UploadSession, StorageNode]:
        node = self.router.select_node(source.size)
        if node is None:
            raise CapacityError(f"No online storage node has room for {source.size} bytes")

        chunk_size = self.settings.chunk_size or profiler.estimate().chunk_size
        session = UploadSession.create(
            file_name=source.name,
            total_size=source.size,
            chunk_size=chunk_size,
            mime_type=source.mime_type,
            destination_folder_id=folder_id,
            node_id=node.id,
            user_id=user_id,
            upload_id=upload_id,
        )
        logger.info(
            f"Created upload session for {source.name}: {session.total_chunks} chunk(s) of "
            f"{chunk_size} B on node {node.id} [upload_id={session.upload_id}]"
        )
        return session, node

    async def _resume_session(
        self,
        upload_id: str,
        source: UploadSource,
        folder_id: Optional[str],
        user_id: Optional[str]
    ) -> Optional[Tuple[UploadSession, StorageNode]]:
        """
        Rebuild a session for upload_id from local state, the remote, or both.

        Returns:
            (session, node), or None when the upload has to start fresh
        """
        try:
            session = self.store.load(upload_id)
            if session is not None and (session.total_size != source.size or session.file_name != source.name):
                raise LocalStateError(
                    f"Saved session describes {session.file_name} ({session.total_size} B), "
                    f"not {source.name} ({source.size} B)",
                    upload_id=upload_id
                )
        except LocalStateError as e:
            logger.warning(f"Discarding unusable upload state, starting fresh: {e}")
            self.store.remove(upload_id)
            return None

        if session is None:
            return await self._rebuild_from_remote(upload_id, source, folder_id, user_id)

        node = self.router.get_node(session.node_id) if session.node_id else None
        if node is None or node.status != "online":
            logger.warning(
                f"Node {session.node_id} of saved session is unavailable, starting fresh [upload_id={upload_id}]"
            )
            self.store.remove(upload_id)
            return None

        await self._sync_with_remote(session, node)
        logger.info(
            f"Resuming {session.file_name}: {len(session.acknowledged_chunks)}/{session.total_chunks} "
            f"chunk(s) already on node {node.id} [upload_id={upload_id}]"
        )
        return session, node

    async def _rebuild_from_remote(
        self,
        upload_id: str,
        source: UploadSource,
        folder_id: Optional[str],
        user_id: Optional[str]
    ) -> Optional[Tuple[UploadSession, StorageNode]]:
        for node in self.router.ranked_nodes(source.size):
            try:
                status = await self.router.chunk_status(node, upload_id)
            except TransientNetworkError as e:
                logger.warning(f"Chunk status query on node {node.id} failed: {e}")
                continue
            if not status.uploaded_chunks or not status.chunk_size or not status.total_chunks:
                continue
            if chunk_count(source.size, status.chunk_size) != status.total_chunks:
                logger.warning(
                    f"Node {node.id} holds chunks for {upload_id} that do not match {source.name}, ignoring"
                )
                continue

            session = UploadSession.create(
                file_name=source.name,
                total_size=source.size,
                chunk_size=status.chunk_size,
                mime_type=source.mime_type,
                destination_folder_id=folder_id,
                node_id=node.id,
                upload_id=upload_id,
                user_id=user_id,
            )
            session.storage_file_name = status.storage_file_name
            session.replace_acknowledged(status.uploaded_chunks)
            logger.info(
                f"Rebuilt lost upload state from node {node.id}: {len(session.acknowledged_chunks)}/"
                f"{session.total_chunks} chunk(s) present [upload_id={upload_id}]"
            )
            return session, node

        logger.info(f"No saved or remote state for upload {upload_id}, starting fresh")
        return None

    async def _sync_with_remote(self, session: UploadSession, node: StorageNode) -> bool:
        """
        Replace the local acknowledged set with the node's view.

        Returns:
            False if the node could not be queried (local state is kept as a hint)
        """
        try:
            status = await self.router.chunk_status(node, session.upload_id)
        except TransientNetworkError as e:
            logger.warning(f"Chunk status query failed, using local state: {e} [upload_id={session.upload_id}]")
            return False

        remote = set(status.uploaded_chunks)
        if remote != session.acknowledged_chunks:
            logger.info(
                f"Remote holds {len(remote)} chunk(s), local state had {len(session.acknowledged_chunks)}; "
                f"using remote view [upload_id={session.upload_id}]"
            )
        session.replace_acknowledged(remote)
        if status.storage_file_name and not session.storage_file_name:
            session.storage_file_name = status.storage_file_name
        self.store.save(session)
        return True

    async def _verify(
        self,
        session: UploadSession,
        node: StorageNode,
        source: UploadSource,
        pool: ChunkUploadWorkerPool,
        tracker: ProgressTracker,
        on_ack: Callable[[int], None]
    ) -> None:
        rounds = self.settings.verify_rounds
        for round_number in range(1, rounds + 1):
            tracker.finalization("verifying", round_number * 10 // rounds, "Verifying uploaded chunks")
            await self._sync_with_remote(session, node)
            missing = session.pending_chunks()
            if not missing:
                logger.debug(f"Verification round {round_number}: all chunks present [upload_id={session.upload_id}]")
                return
            logger.warning(
                f"Verification round {round_number}/{rounds}: re-uploading chunk(s) {missing} "
                f"[upload_id={session.upload_id}]"
            )
            await pool.run(session, node, source, missing, on_ack)

        if session.pending_chunks():
            raise TransientNetworkError(
                f"Chunks {session.pending_chunks()} still missing after {rounds} verification round(s)",
                upload_id=session.upload_id
            )

    async def _finalize(
        self,
        session: UploadSession,
        node: StorageNode,
        source: UploadSource,
        pool: ChunkUploadWorkerPool,
        tracker: ProgressTracker,
        on_ack: Callable[[int], None]
    ) -> str:
        attempts = self.settings.finalize_attempts
        for attempt in range(1, attempts + 1):
            if not session.storage_file_name:
                raise IntegrityError(
                    "Node never assigned a storage file name to this upload",
                    upload_id=session.upload_id
                )
            tracker.finalization("assembling", 10 + attempt * 60 // attempts, "Assembling file on storage node")
            try:
                result = await self.router.finalize(
                    node,
                    session.upload_id,
                    session.storage_file_name,
                    session.total_chunks,
                    session.mime_type,
                    user_id=session.user_id,
                )
            except IntegrityError as e:
                targets = sorted(
                    i for i in set(e.failed_chunks) | set(e.missing_chunks)
                    if 0 <= i < session.total_chunks
                )
                if not targets:
                    raise IntegrityError(str(e), upload_id=session.upload_id) from e
                if attempt == attempts:
                    raise IntegrityError(
                        f"Finalize still reports bad chunks {targets} after {attempts} attempt(s)",
                        upload_id=session.upload_id,
                        failed_chunks=e.failed_chunks,
                        missing_chunks=e.missing_chunks,
                    ) from e
                logger.warning(
                    f"Finalize attempt {attempt}/{attempts} rejected, re-uploading chunk(s) {targets} "
                    f"[upload_id={session.upload_id}]"
                )
                session.acknowledged_chunks.difference_update(targets)
                self.store.save(session)
                await pool.run(session, node, source, targets, on_ack)
                continue
            except TransientNetworkError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Finalize attempt {attempt}/{attempts} failed: {e} [upload_id={session.upload_id}]"
                )
                continue

            logger.info(
                f"Finalized {session.file_name} at {result.path} ({session.total_chunks} chunk(s)) "
                f"[upload_id={session.upload_id}]"
            )
            return result.path

        raise IntegrityError(f"Finalize did not succeed after {attempts} attempt(s)", upload_id=session.upload_id)

    async def _complete(
        self,
        source: UploadSource,
        node: StorageNode,
        path: str,
        upload_id: str,
        tracker: ProgressTracker,
        folder_id: Optional[str],
        user_id: Optional[str]
    ) -> FileRecord:
        tracker.finalization("creating-record", 90, "Creating file record")
        request = FileRecordRequest(
            user_id=user_id,
            folder_id=folder_id,
            name=source.name,
            mime_type=source.mime_type,
            size_bytes=source.size,
            storage_path=path,
        )
        try:
            record = await self.catalog.create_file_record(request)
        except Exception as e:
            logger.error(f"Catalog record creation failed for {path}, removing stored object: {e}")
            await self.router.delete(node, path)
            raise CatalogError(f"Could not record {source.name} in the catalog: {e}", upload_id=upload_id) from e

        self._set_state(upload_id, UploadState.COMPLETE)
        tracker.emit(
            "complete",
            loaded=source.size,
            finalization=FinalizationProgress(phase="complete", progress=100, message="Upload complete"),
        )
        logger.info(f"Upload of {source.name} complete: {path} [upload_id={upload_id}]")
        self.hooks.dispatch(UploadCompleted(
            record=record,
            node_id=node.id,
            upload_id=upload_id,
            bytes_transferred=source.size,
        ))
        return record

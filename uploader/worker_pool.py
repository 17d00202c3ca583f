"""Bounded pool of concurrent chunk uploaders sharing one FIFO queue."""

import asyncio
import time
from typing import Callable, Iterable, List, Optional, Set

from common.logging_config import get_logger
from uploader.config import UploadSettings
from uploader.exceptions import TransientNetworkError
from uploader.models import StorageNode, UploadSession
from uploader.sources import UploadSource
from uploader.speed_profiler import SpeedProfiler
from uploader.state_store import ResumableStateStore
from uploader.storage_router import StorageRouter

logger = get_logger(__name__)

ChunkAckCallback = Callable[[int], None]


class ChunkUploadWorkerPool:
    """
    Pushes unacknowledged chunks of one session through the router.

    Work is split into waves. Each wave spawns min(parallelism, len(wave))
    workers, where parallelism is read fresh from the profiler, so
    concurrency can grow or shrink between waves. A chunk that fails with a
    transient error is left unacknowledged and reported back to the caller;
    it is not requeued within the same run.
    """

    def __init__(
        self,
        router: StorageRouter,
        profiler: SpeedProfiler,
        store: ResumableStateStore,
        settings: Optional[UploadSettings] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.router = router
        self.profiler = profiler
        self.store = store
        self.settings = settings or router.settings
        self._clock = clock

    async def run(
        self,
        session: UploadSession,
        node: StorageNode,
        source: UploadSource,
        chunk_indices: Iterable[int],
        on_ack: Optional[ChunkAckCallback] = None
    ) -> Set[int]:
        """
        Upload the given chunks.

        Args:
            session: Session being uploaded; mutated as chunks are acknowledged
            node: Destination node
            source: Byte source of the file
            chunk_indices: Unacknowledged chunk indices to send
            on_ack: Called with each newly acknowledged index

        Returns:
            Indices that failed with a transient error in this run

        Raises:
            AuthError, CapacityError: Terminal errors abort the whole pool
        """
        pending = sorted(set(chunk_indices))
        failed: Set[int] = set()

        while pending:
            parallelism = self.profiler.estimate().parallelism
            wave_size = parallelism * self.settings.chunks_per_worker
            wave, pending = pending[:wave_size], pending[wave_size:]
            logger.debug(
                f"Dispatching wave of {len(wave)} chunk(s) with parallelism={parallelism} "
                f"[upload_id={session.upload_id}]"
            )
            failed |= await self._run_wave(session, node, source, wave, parallelism, on_ack)

        return failed

    async def _run_wave(
        self,
        session: UploadSession,
        node: StorageNode,
        source: UploadSource,
        wave: List[int],
        parallelism: int,
        on_ack: Optional[ChunkAckCallback]
    ) -> Set[int]:
        queue: asyncio.Queue = asyncio.Queue()
        for index in wave:
            queue.put_nowait(index)

        failed: Set[int] = set()
        workers = [
            asyncio.create_task(self._worker(session, node, source, queue, failed, on_ack))
            for _ in range(min(parallelism, len(wave)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        return failed

    async def _worker(
        self,
        session: UploadSession,
        node: StorageNode,
        source: UploadSource,
        queue: asyncio.Queue,
        failed: Set[int],
        on_ack: Optional[ChunkAckCallback]
    ) -> None:
        while True:
            try:
                index = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            unit = session.transfer_unit(index)
            data = source.read_range(unit.offset, unit.length)
            started = self._clock()
            try:
                ack = await self.router.upload_chunk(
                    node,
                    session.upload_id,
                    index,
                    data,
                    total_chunks=session.total_chunks,
                    file_name=session.file_name,
                    storage_file_name=session.storage_file_name,
                )
            except TransientNetworkError as e:
                failed.add(index)
                logger.warning(f"Chunk {index} failed, deferring to verification: {e} [upload_id={session.upload_id}]")
                continue

            elapsed_ms = (self._clock() - started) * 1000
            if session.storage_file_name is None:
                session.storage_file_name = ack.storage_file_name
            elif ack.storage_file_name != session.storage_file_name:
                logger.warning(
                    f"Node echoed storage name {ack.storage_file_name} for chunk {index}, "
                    f"keeping {session.storage_file_name} [upload_id={session.upload_id}]"
                )

            newly_acknowledged = session.acknowledge(index)
            self.profiler.record(len(data), elapsed_ms)
            self.store.save(session)
            logger.debug(
                f"Chunk {index + 1}/{session.total_chunks} acknowledged ({len(data)} B in {elapsed_ms:.0f} ms) "
                f"[upload_id={session.upload_id}]"
            )
            if newly_acknowledged and on_ack is not None:
                on_ack(index)

"""Progress events emitted to upload observers."""

import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Literal, Optional

from common.logging_config import get_logger

logger = get_logger(__name__)

ProgressStatus = Literal["preparing", "uploading", "processing", "complete", "error", "paused"]
FinalizationPhase = Literal["verifying", "assembling", "creating-record", "complete"]


@dataclass(frozen=True)
class FinalizationProgress:
    """Sub-progress of the processing stage."""
    phase: FinalizationPhase
    progress: int
    message: str


@dataclass(frozen=True)
class UploadProgress:
    """
    One progress event.

    Attributes:
        loaded: Bytes confirmed so far
        total: File size in bytes
        percentage: 0-100
        speed: Bytes/second averaged since the transfer started
        remaining_time: Seconds left at the current speed (0 when speed is unknown)
        uploaded_chunk_indices: Acknowledged chunks, ascending (chunked path only)
    """
    file_name: str
    status: ProgressStatus
    loaded: int = 0
    total: int = 0
    percentage: int = 0
    speed: float = 0.0
    remaining_time: float = 0.0
    uploaded_chunk_indices: List[int] = field(default_factory=list)
    chunked: bool = False
    total_chunks: int = 0
    upload_id: Optional[str] = None
    chunk_size: Optional[int] = None
    parallelism: Optional[int] = None
    message: Optional[str] = None
    finalization: Optional[FinalizationProgress] = None


ProgressObserver = Callable[[UploadProgress], None]


def remaining_seconds(total: int, loaded: int, speed: float) -> float:
    """(total - loaded) / speed, or 0 when no speed is known yet."""
    if speed <= 0:
        return 0.0
    return max(total - loaded, 0) / speed


class ProgressTracker:
    """
    Builds progress events for one upload and delivers them to an observer.

    Observer exceptions are logged and dropped so a broken UI callback can
    never fail the transfer.
    """

    def __init__(
        self,
        file_name: str,
        total: int,
        observer: Optional[ProgressObserver] = None,
        upload_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.file_name = file_name
        self.total = total
        self.observer = observer
        self.upload_id = upload_id
        self._clock = clock
        self._started_at = clock()
        self._baseline = 0
        self.last: Optional[UploadProgress] = None

    def start_transfer(self, already_loaded: int = 0) -> None:
        """Reset the speed baseline; bytes already on the remote do not count toward speed."""
        self._started_at = self._clock()
        self._baseline = already_loaded

    def speed(self, loaded: int) -> float:
        elapsed = self._clock() - self._started_at
        if elapsed <= 0:
            return 0.0
        return max(loaded - self._baseline, 0) / elapsed

    def emit(self, status: ProgressStatus, loaded: Optional[int] = None, **extra) -> UploadProgress:
        if loaded is None:
            loaded = self.last.loaded if self.last is not None else 0
        percentage = 100 if self.total == 0 else min(100, int(loaded * 100 / self.total))
        if status == "complete":
            percentage = 100
        speed = extra.pop('speed', None)
        if speed is None:
            speed = self.speed(loaded) if status == "uploading" else 0.0

        base = self.last if self.last is not None else UploadProgress(
            file_name=self.file_name, status=status, upload_id=self.upload_id
        )
        event = replace(
            base,
            status=status,
            loaded=loaded,
            total=self.total,
            percentage=percentage,
            speed=speed,
            remaining_time=remaining_seconds(self.total, loaded, speed),
            upload_id=extra.pop('upload_id', base.upload_id or self.upload_id),
            message=extra.pop('message', None),
            finalization=extra.pop('finalization', None),
            **extra
        )
        self.last = event
        self._deliver(event)
        return event

    def finalization(self, phase: FinalizationPhase, progress: int, message: str) -> UploadProgress:
        return self.emit(
            "processing",
            loaded=self.total,
            finalization=FinalizationProgress(phase=phase, progress=progress, message=message),
            message=message,
        )

    def _deliver(self, event: UploadProgress) -> None:
        if self.observer is None:
            return
        try:
            self.observer(event)
        except Exception as e:
            logger.warning(f"Progress observer raised for {self.file_name}: {e}")

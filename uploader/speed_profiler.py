"""Live bandwidth estimation and adaptive chunk size / parallelism targets."""

import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Tuple

from common.constants import (
    FALLBACK_BYTES_PER_SECOND,
    MIB,
    SPEED_HISTORY_POINTS,
    SPEED_MIN_SAMPLES,
    SPEED_SAMPLE_WINDOW,
    SPEED_SMOOTHING_FACTOR,
)
from common.logging_config import get_logger
from uploader.config import UploadSettings
from uploader.models import SpeedDataPoint, SpeedProfile

logger = get_logger(__name__)

# Coarse upload speeds by connection class, in bytes/second
NETWORK_CLASS_SPEEDS = {
    'slow-2g': 50 * 1024,
    '2g': 150 * 1024,
    '3g': 750 * 1024,
    '4g': 4 * MIB,
}

# Upload bandwidth is assumed to be ~15% of the advertised downlink
UPLINK_RATIO = 0.15


@dataclass(frozen=True)
class NetworkHint:
    """Coarse connection-quality signal used to seed a cold profiler."""
    downlink_mbps: Optional[float] = None
    effective_type: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'NetworkHint':
        downlink = os.environ.get('VAULTLIFT_DOWNLINK_MBPS')
        return cls(
            downlink_mbps=float(downlink) if downlink else None,
            effective_type=os.environ.get('VAULTLIFT_NETWORK_CLASS') or None,
        )


def estimate_from_network_hint(hint: Optional[NetworkHint]) -> float:
    """
    Conservative throughput guess from a network hint.

    Returns:
        Estimated upload bytes/second (1 MiB/s when nothing is known)
    """
    if hint is not None:
        if hint.downlink_mbps and hint.downlink_mbps > 0:
            return hint.downlink_mbps * UPLINK_RATIO * MIB / 8
        if hint.effective_type:
            return NETWORK_CLASS_SPEEDS.get(hint.effective_type, FALLBACK_BYTES_PER_SECOND)
    return FALLBACK_BYTES_PER_SECOND


def optimal_chunk_size(bytes_per_second: float, settings: UploadSettings) -> int:
    """Chunk size that takes ~target_chunk_seconds to send, clamped to the configured bounds."""
    target = int(bytes_per_second * settings.target_chunk_seconds)
    return min(settings.max_chunk_size, max(settings.min_chunk_size, target))


def optimal_parallelism(bytes_per_second: float, settings: UploadSettings) -> int:
    """Monotonic step function of throughput, clamped to the configured bounds."""
    if bytes_per_second > 10 * MIB:
        steps = settings.max_parallel
    elif bytes_per_second > 5 * MIB:
        steps = 6
    elif bytes_per_second > 2 * MIB:
        steps = 4
    elif bytes_per_second > 500 * 1024:
        steps = 3
    else:
        steps = settings.min_parallel
    return min(settings.max_parallel, max(settings.min_parallel, steps))


class SpeedProfileCache:
    """
    Process-wide, time-bounded cache of the last known speed profile.

    Shared by concurrent sessions with last-writer-wins semantics. Entries
    expire after ttl_seconds so stale estimates do not leak into unrelated
    uploads.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._profile: Optional[SpeedProfile] = None

    def get(self) -> Optional[SpeedProfile]:
        with self._lock:
            profile = self._profile
        if profile is None:
            return None
        if self._clock() - profile.measured_at >= self.ttl_seconds:
            return None
        return profile

    def put(self, profile: SpeedProfile) -> None:
        with self._lock:
            self._profile = profile

    def reset(self) -> None:
        with self._lock:
            self._profile = None


class SpeedProfiler:
    """
    Per-session throughput tracker.

    Keeps a sliding window of completed-chunk samples, derives chunk size and
    parallelism targets from the windowed average and blends them with the
    previous targets to avoid oscillation. Never raises.
    """

    def __init__(
        self,
        settings: Optional[UploadSettings] = None,
        cache: Optional[SpeedProfileCache] = None,
        network_hint: Optional[NetworkHint] = None,
        clock: Callable[[], float] = time.time,
        window: int = SPEED_SAMPLE_WINDOW,
        min_samples: int = SPEED_MIN_SAMPLES,
        smoothing: float = SPEED_SMOOTHING_FACTOR
    ):
        self.settings = settings or UploadSettings()
        self.cache = cache if cache is not None else SpeedProfileCache(self.settings.speed_cache_ttl, clock)
        self.network_hint = network_hint
        self.min_samples = min_samples
        self.smoothing = smoothing
        self._clock = clock
        self._samples: Deque[Tuple[int, int]] = deque(maxlen=window)
        self._history: Deque[SpeedDataPoint] = deque(maxlen=SPEED_HISTORY_POINTS)
        self._current: Optional[SpeedProfile] = None

    def estimate(self) -> SpeedProfile:
        """
        Current profile.

        Falls back to the shared cache, then to a cold-start estimate from the
        network hint. Never blocks on I/O.
        """
        if self._current is not None:
            return self._current

        cached = self.cache.get()
        if cached is not None:
            return self._clamp(cached)

        bytes_per_second = estimate_from_network_hint(self.network_hint)
        profile = SpeedProfile(
            bytes_per_second=bytes_per_second,
            chunk_size=optimal_chunk_size(bytes_per_second, self.settings),
            parallelism=optimal_parallelism(bytes_per_second, self.settings),
            measured_at=self._clock(),
        )
        self.cache.put(profile)
        logger.debug(
            f"Cold-start speed profile: {bytes_per_second:.0f} B/s, "
            f"chunk={profile.chunk_size}, parallel={profile.parallelism}"
        )
        return profile

    def record(self, nbytes: int, elapsed_ms: float) -> None:
        """
        Ingest one completed-chunk measurement and refresh the targets.

        Args:
            nbytes: Bytes acknowledged by the remote
            elapsed_ms: Wall time of the chunk request in milliseconds
        """
        try:
            if nbytes <= 0:
                return
            self._samples.append((nbytes, max(elapsed_ms, 1)))

            if len(self._samples) >= self.min_samples:
                self._recalculate()

            current = self.estimate()
            self._history.append(SpeedDataPoint(
                timestamp=self._clock(),
                speed=self.measured_speed(),
                chunk_size=current.chunk_size,
                parallelism=current.parallelism,
            ))
        except Exception as e:
            logger.warning(f"Ignoring speed sample ({nbytes} B, {elapsed_ms} ms): {e}")

    def _recalculate(self) -> None:
        bytes_per_second = self.measured_speed()
        previous = self.estimate()

        new_chunk_size = optimal_chunk_size(bytes_per_second, self.settings)
        new_parallelism = optimal_parallelism(bytes_per_second, self.settings)

        keep = 1 - self.smoothing
        chunk_size = round(previous.chunk_size * keep + new_chunk_size * self.smoothing)
        parallelism = round(previous.parallelism * keep + new_parallelism * self.smoothing)

        self._current = self._clamp(SpeedProfile(
            bytes_per_second=bytes_per_second,
            chunk_size=chunk_size,
            parallelism=parallelism,
            measured_at=self._clock(),
        ))
        self.cache.put(self._current)

    def _clamp(self, profile: SpeedProfile) -> SpeedProfile:
        s = self.settings
        return SpeedProfile(
            bytes_per_second=profile.bytes_per_second,
            chunk_size=min(s.max_chunk_size, max(s.min_chunk_size, int(profile.chunk_size))),
            parallelism=min(s.max_parallel, max(s.min_parallel, int(profile.parallelism))),
            measured_at=profile.measured_at,
        )

    def measured_speed(self) -> float:
        """Average bytes/second over the sample window (0.0 with no samples)."""
        if not self._samples:
            return 0.0
        total_bytes = sum(b for b, _ in self._samples)
        total_ms = sum(ms for _, ms in self._samples)
        return total_bytes / total_ms * 1000

    def history(self) -> List[SpeedDataPoint]:
        return list(self._history)

    def reset(self) -> None:
        """Forget live samples; the shared cache is left alone."""
        self._samples.clear()
        self._history.clear()
        self._current = None

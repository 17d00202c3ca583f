"""Configuration settings for the upload engine."""

import os
from dataclasses import dataclass, fields
from typing import Optional

from common import constants as c

ENV_PREFIX = "VAULTLIFT_"

PRIMARY_NODE_ENDPOINT = os.environ.get("VAULTLIFT_PRIMARY_ENDPOINT", "http://localhost:4000")

PRIMARY_NODE_KEY = os.environ.get("VAULTLIFT_PRIMARY_KEY", "")

STATE_FILE_PATH = os.environ.get("VAULTLIFT_STATE_FILE", os.path.expanduser("~/.vaultlift/uploads.json"))


@dataclass
class UploadSettings:
    """
    Tunables for the engine. None of these are load-bearing for correctness.

    chunk_size of None means "derive from the speed profile when a session is
    created"; any positive value pins every new session to that size.
    """
    chunk_threshold: int = c.CHUNK_THRESHOLD_BYTES
    chunk_size: Optional[int] = None
    min_chunk_size: int = c.MIN_CHUNK_SIZE_BYTES
    max_chunk_size: int = c.MAX_CHUNK_SIZE_BYTES
    target_chunk_seconds: float = c.TARGET_CHUNK_SECONDS
    min_parallel: int = c.MIN_PARALLEL_CHUNKS
    max_parallel: int = c.MAX_PARALLEL_CHUNKS
    max_parallel_files: int = c.MAX_PARALLEL_FILES
    chunks_per_worker: int = 4
    verify_rounds: int = c.VERIFY_ROUNDS
    finalize_attempts: int = c.FINALIZE_ATTEMPTS
    chunk_retries: int = c.CHUNK_RETRIES
    retry_base_delay: float = c.RETRY_BASE_DELAY_SECONDS
    retry_backoff_multiplier: float = c.RETRY_BACKOFF_MULTIPLIER
    health_timeout: float = c.HEALTH_PROBE_TIMEOUT_SECONDS
    health_interval: int = c.HEALTH_PROBE_INTERVAL_SECONDS
    chunk_timeout_base: float = c.CHUNK_TIMEOUT_BASE_SECONDS
    chunk_timeout_per_mib: float = c.CHUNK_TIMEOUT_PER_MIB_SECONDS
    session_retention: int = c.SESSION_RETENTION_SECONDS
    speed_cache_ttl: int = c.SPEED_CACHE_TTL_SECONDS
    hook_concurrency: int = c.HOOK_CONCURRENCY
    finished_state_history: int = c.FINISHED_STATE_HISTORY

    def __post_init__(self):
        if self.min_chunk_size <= 0 or self.min_chunk_size > self.max_chunk_size:
            raise ValueError(
                f"Invalid chunk bounds: min={self.min_chunk_size} max={self.max_chunk_size}"
            )
        if self.min_parallel < 1 or self.min_parallel > self.max_parallel:
            raise ValueError(
                f"Invalid parallelism bounds: min={self.min_parallel} max={self.max_parallel}"
            )
        if self.chunk_size is not None and self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.verify_rounds < 1 or self.finalize_attempts < 1:
            raise ValueError("verify_rounds and finalize_attempts must be at least 1")

    def chunk_timeout(self, chunk_bytes: int) -> float:
        """
        Per-request deadline for a chunk upload.

        Returns:
            Timeout in seconds (30s base + 0.1s per MiB by default)
        """
        size_mib = chunk_bytes / c.MIB
        return self.chunk_timeout_base + size_mib * self.chunk_timeout_per_mib

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> 'UploadSettings':
        """
        Build settings from VAULTLIFT_* environment variables.

        Field names map to upper-case variables, e.g. chunk_threshold ->
        VAULTLIFT_CHUNK_THRESHOLD. Unset variables keep their defaults.
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw == '':
                continue
            if f.name == 'chunk_size' or f.type in (int, 'int'):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = float(raw)
        return cls(**overrides)

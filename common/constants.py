"""Project-wide constants (chunk bounds, thresholds, retry budgets, timeouts)."""

MIB: int = 1024 * 1024

CHUNK_THRESHOLD_BYTES: int = 20 * MIB  # files above this go through the chunked path
MIN_CHUNK_SIZE_BYTES: int = 1 * MIB
MAX_CHUNK_SIZE_BYTES: int = 20 * MIB

TARGET_CHUNK_SECONDS: float = 4.0

MIN_PARALLEL_CHUNKS: int = 2
MAX_PARALLEL_CHUNKS: int = 8
MAX_PARALLEL_FILES: int = 3

SPEED_SAMPLE_WINDOW: int = 10
SPEED_MIN_SAMPLES: int = 3
SPEED_SMOOTHING_FACTOR: float = 0.3
SPEED_HISTORY_POINTS: int = 50
SPEED_CACHE_TTL_SECONDS: int = 5 * 60
FALLBACK_BYTES_PER_SECOND: float = 1 * MIB

VERIFY_ROUNDS: int = 5
FINALIZE_ATTEMPTS: int = 3
CHUNK_RETRIES: int = 2
RETRY_BASE_DELAY_SECONDS: float = 1.0
RETRY_BACKOFF_MULTIPLIER: float = 2.0

HEALTH_PROBE_TIMEOUT_SECONDS: float = 3.0
HEALTH_PROBE_INTERVAL_SECONDS: int = 30
CHUNK_TIMEOUT_BASE_SECONDS: float = 30.0
CHUNK_TIMEOUT_PER_MIB_SECONDS: float = 0.1

SESSION_RETENTION_SECONDS: int = 24 * 3600

HOOK_CONCURRENCY: int = 4

FINISHED_STATE_HISTORY: int = 256  # completed/failed upload states kept for state() lookups

PRIMARY_NODE_ID: str = "primary"
DEFAULT_NODE_CAPACITY_BYTES: int = 200 * 1024 * MIB
DEFAULT_MIME_TYPE: str = "application/octet-stream"

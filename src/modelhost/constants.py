"""System-wide constants for modelhost."""

# Retries
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY = 1.0  # seconds
DEFAULT_RETRY_BACKOFF = 2.0  # Multiplicative backoff, not capped

# Timeouts (seconds)
DEFAULT_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 30.0

# Connection pool
DEFAULT_POOL_SIZE = 10
DEFAULT_IDLE_TIMEOUT = 300.0  # 5 minutes
DEFAULT_MAX_AGE = 3600.0  # 1 hour

# Execution
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
DEFAULT_LOCALE = "en_US.UTF-8"
LOCAL_HOST_KEY = "local"

# Lifecycle
DEFAULT_SETTLE_DELAY = 3.0
DEFAULT_KILL_GRACE_PERIOD = 0.5
DEFAULT_KILL_BATCH_SIZE = 5
DEFAULT_LOG_TAIL_LINES = 100

# Model-serving frameworks recognised in start commands
FRAMEWORKS = [
    "vllm",
    "lmdeploy",
    "sglang",
]

# Error history limits
ERROR_HISTORY_SIZE = 100
NOTIFICATION_QUEUE_SIZE = 50

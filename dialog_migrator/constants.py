"""Constants shared across the migration tool."""

# Progress file format
PROGRESS_VERSION = "1.0"
EXPORT_VERSION = "1.0"
DEFAULT_PROGRESS_PATH = "./migration-progress.json"

# Forwarding
DEFAULT_BATCH_SIZE = 100
DEFAULT_DESTINATION_PREFIX = "[Migrated] "

# Flow control (seconds)
DEFAULT_BATCH_DELAY = 1.0
DEFAULT_MIN_BATCH_DELAY = 0.5
DEFAULT_MAX_BATCH_DELAY = 10.0
DEFAULT_MAX_REQUESTS_PER_MINUTE = 30
DEFAULT_RATE_EXCEEDED_THRESHOLD = 300
DEFAULT_RECOVERY_WINDOW = 300.0
SLOWDOWN_FACTOR = 1.5
SPEEDUP_FACTOR = 0.9
REQUESTS_PER_MINUTE_WINDOW = 60.0

# Realtime sync
DEFAULT_MAX_QUEUE_SIZE = 1000
DEFAULT_QUEUE_MAX_RETRIES = 3

# Orchestration
DEFAULT_MAX_ENUMERATE_RETRIES = 3
DEFAULT_MAX_RESUME_ATTEMPTS = 3
DEFAULT_SHUTDOWN_GRACE_PERIOD = 30.0
ENUMERATE_RETRY_DELAY = 2.0

# Environment variable prefix for config overrides
ENV_PREFIX = "DIALOG_MIGRATOR_"

LOGGER_NAME = "dialog_migrator"

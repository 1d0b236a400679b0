"""Engine-wide limits and defaults."""

DEFAULT_STEP_BUDGET = 50
DEFAULT_MAX_BLOCK_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 30.0
DEFAULT_EVENT_WAIT_TIMEOUT_HOURS = 24.0 * 30

DEFAULT_SERIES_SCAN_LIMIT = 5000
MAX_SERIES_SCAN_LIMIT = 20000
DEFAULT_WAITING_BATCH_LIMIT = 1000
MAX_WAITING_BATCH_LIMIT = 5000
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

DEFAULT_HISTORY_LIMIT = 500
MAX_HISTORY_LIMIT = 5000

"""Default values shared across sagaflow components."""

DEFAULT_QUEUE = "default"
DEFAULT_PRIORITY = 0
DEFAULT_MAX_ATTEMPTS = 20

# Uniqueness window for jobs enqueued with a unique key, in seconds.
DEFAULT_UNIQUE_PERIOD = 60.0

DEFAULT_BACKOFF_BASE = 15.0
DEFAULT_BACKOFF_CAP = 3600.0
DEFAULT_BACKOFF_JITTER = 0.1

# Executing jobs not settled within this many seconds are handed out again.
DEFAULT_LEASE_TIMEOUT = 3600.0
LEASE_EXPIRED_ERROR = "lease expired before the job was settled"

DEFAULT_WORKER_CONCURRENCY = 10
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_STEP_CONCURRENCY = 8
DEFAULT_SCHEDULER_INTERVAL = 60.0

JOB_ARGS_WORKFLOW_KEY = "workflow"
JOB_ARGS_INPUTS_KEY = "inputs"
JOB_ARGS_ACTOR_KEY = "actor"

"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class WorkerState(StrEnum):
    """
    Execution engine states.

    State transitions:
    - IDLE -> RESERVING (loop iteration begins)
    - RESERVING -> DISPATCHING (job reserved)
    - RESERVING -> IDLE (reserve timed out, nothing to do)
    - DISPATCHING -> SUCCEEDING (handler returned)
    - DISPATCHING -> RETRYING (failure, attempts remain)
    - DISPATCHING -> BURYING (failure, attempts exhausted)
    - SUCCEEDING | RETRYING | BURYING -> IDLE
    - any -> STOPPED (loop exits after shutdown was requested)
    """

    IDLE = "idle"
    RESERVING = "reserving"
    DISPATCHING = "dispatching"
    SUCCEEDING = "succeeding"
    RETRYING = "retrying"
    BURYING = "burying"
    STOPPED = "stopped"


class JobOutcome(StrEnum):
    """How a reserved job was resolved by this worker."""

    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    BURIED = "buried"
    # The broker rejected the acknowledgement; the reservation lapses on its own
    ABANDONED = "abandoned"


# Job defaults (lower priority value = more urgent)
DEFAULT_PRIORITY = 66536
DEFAULT_DELAY_SECONDS = 0
DEFAULT_TTR_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 25
DEFAULT_RETRY_DELAY_SECONDS = 5

JOB_DEFAULTS: dict[str, int] = {
    "priority": DEFAULT_PRIORITY,
    "delay": DEFAULT_DELAY_SECONDS,
    "ttr": DEFAULT_TTR_SECONDS,
    "max_attempts": DEFAULT_MAX_ATTEMPTS,
    "retry_delay": DEFAULT_RETRY_DELAY_SECONDS,
}

# Seconds reserved so the worker's deadline fires before the broker's TTR
TTR_MARGIN_SECONDS = 1

# Broker endpoints
BROKER_URL_SCHEME = "beanstalk"
DEFAULT_BROKER_PORT = 11300
DEFAULT_BROKER_URL = "beanstalk://localhost/"
DEFAULT_TUBE = "default"

# Per-endpoint reserve timeout when polling several brokers round-robin
MULTI_ENDPOINT_POLL_SECONDS = 1

# Metrics names
METRIC_JOBS_ENQUEUED = "tubeworker_jobs_enqueued_total"
METRIC_JOBS_RESERVED = "tubeworker_jobs_reserved_total"
METRIC_JOBS_COMPLETED = "tubeworker_jobs_completed_total"
METRIC_JOB_DURATION = "tubeworker_job_duration_seconds"
METRIC_HOOK_ERRORS = "tubeworker_hook_errors_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_RESERVE_JOB = "reserve_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_ACK_JOB = "ack_job"

"""
Tubeworker

A job-processing harness for beanstalkd-style work queues: register named
jobs, enqueue them with JSON arguments, and run workers that reserve,
execute, and acknowledge them with retry/backoff/burial on failure.
"""

__version__ = "1.0.0"

from tubeworker.client import JobQueue
from tubeworker.errors import (
    BadURL,
    ConnectionLost,
    JobTimeout,
    NoJobsDefined,
    NoSuchJob,
)
from tubeworker.worker.hooks import HookEvent, HookShape

__all__ = [
    "JobQueue",
    "HookEvent",
    "HookShape",
    "NoJobsDefined",
    "NoSuchJob",
    "JobTimeout",
    "BadURL",
    "ConnectionLost",
]

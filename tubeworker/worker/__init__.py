"""
Worker module.
Contains the job registry, lifecycle hooks, executors, and the worker loop.
"""

from tubeworker.worker.executor import Executor, ForkExecutor, InlineExecutor
from tubeworker.worker.hooks import HookEvent, HookShape, HookTable
from tubeworker.worker.main import Worker
from tubeworker.worker.registry import JobRegistry

__all__ = [
    "Executor",
    "InlineExecutor",
    "ForkExecutor",
    "HookEvent",
    "HookShape",
    "HookTable",
    "JobRegistry",
    "Worker",
]

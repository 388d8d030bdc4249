"""
Type definitions for tubeworker.
"""

from tubeworker.types.job import (
    JobContext,
    JobDefinition,
    JobHandler,
    JobOptions,
    JobPayload,
)

__all__ = [
    "JobOptions",
    "JobDefinition",
    "JobHandler",
    "JobPayload",
    "JobContext",
]

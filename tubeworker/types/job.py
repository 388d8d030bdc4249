"""
Job-related type definitions.
"""

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tubeworker.constants import (
    DEFAULT_DELAY_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_TTR_SECONDS,
)
from tubeworker.errors import MalformedPayload

if TYPE_CHECKING:
    from tubeworker.broker.connection import JobHandle

# Handlers take the decoded argument mapping and the reserved job handle.
# Coroutine functions are accepted too; the return value is ignored.
JobHandler = Callable[[dict[str, Any], "JobHandle"], Any]


class JobOptions(BaseModel):
    """
    Per-job broker and retry settings.
    Explicit values override the documented defaults.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    priority: int = Field(default=DEFAULT_PRIORITY, ge=0)
    delay: int = Field(default=DEFAULT_DELAY_SECONDS, ge=0)
    ttr: int = Field(default=DEFAULT_TTR_SECONDS, ge=2)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_delay: int = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)

    def retry_delay_for(self, reserves: int) -> int:
        """
        Delay before the next attempt after a failed one.

        Cubic in the broker's reservation count, with no upper bound.
        """
        return self.retry_delay + reserves**3


class JobDefinition(BaseModel):
    """
    A registered job: its name, options, and handler.
    Created once at registration time and never mutated.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    options: JobOptions = Field(default_factory=JobOptions)
    handler: Callable[..., Any]

    def retry_delay_for(self, reserves: int) -> int:
        """Delay before the next attempt after a failed one."""
        return self.options.retry_delay_for(reserves)


class JobPayload(BaseModel):
    """
    The serialized body of a queued job.
    On the wire it is the JSON array ``[name, args]``.
    """

    name: str
    args: dict[str, Any] = Field(default_factory=dict)

    def encode(self) -> str:
        """Serialize to the wire format."""
        return json.dumps([self.name, self.args])

    @classmethod
    def decode(cls, body: str | bytes) -> "JobPayload":
        """
        Parse a job body.

        Raises:
            MalformedPayload: If the body is not a JSON ``[name, args]`` pair.
        """
        try:
            name, args = json.loads(body)
            return cls(name=name, args=args)
        except (ValueError, TypeError, ValidationError) as e:
            raise MalformedPayload(f"Undecodable job body: {body!r:.200}") from e


@dataclass
class JobContext:
    """
    Context passed to lifecycle hooks.
    ``elapsed_ms`` and ``age_ms`` are only set for ``after`` hooks.
    """

    name: str
    args: dict[str, Any]
    job: "JobHandle"
    elapsed_ms: int | None = None
    age_ms: int | None = None

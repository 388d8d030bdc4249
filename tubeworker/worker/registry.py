"""
Job registry.

Maps job names to their definitions. Populated before a worker starts and
left untouched while it runs; ``clear`` exists for test teardown.
"""

import logging
from collections.abc import Iterable
from typing import Any, Callable

from tubeworker.errors import NoJobsDefined, NoSuchJob
from tubeworker.types.job import JobDefinition, JobHandler, JobOptions

logger = logging.getLogger(__name__)


class JobRegistry:
    """Registered jobs, keyed by name."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobDefinition] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def register(
        self,
        name: str,
        options: JobOptions | dict[str, Any] | None,
        handler: JobHandler,
    ) -> JobDefinition:
        """
        Register a handler under ``name``.

        Re-registering a name replaces the previous definition.

        Args:
            name: The job name, also used as the broker tube.
            options: Overrides for priority, delay, ttr, max_attempts, retry_delay.
            handler: Called with ``(args, job)``.

        Returns:
            The stored definition.
        """
        if not isinstance(options, JobOptions):
            options = JobOptions(**(options or {}))

        definition = JobDefinition(name=name, options=options, handler=handler)
        self._jobs[name] = definition
        logger.debug(f"Registered job: {name}")
        return definition

    def job(self, name: str, **options: Any) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Example:
            @registry.job("send_email", max_attempts=3)
            def send_email(args, job):
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self.register(name, options, handler)
            return handler
        return decorator

    def get(self, name: str) -> JobDefinition | None:
        """Get the definition for ``name``, or None."""
        return self._jobs.get(name)

    def lookup(self, name: str) -> JobDefinition:
        """
        Get the definition for ``name``.

        Raises:
            NoSuchJob: If nothing is registered under that name.
        """
        definition = self._jobs.get(name)
        if definition is None:
            raise NoSuchJob(name)
        return definition

    def all_names(self) -> set[str]:
        """Names of all registered jobs."""
        return set(self._jobs)

    def resolve(self, names: Iterable[str] | None = None) -> list[str]:
        """
        Work out which jobs a worker should watch.

        Args:
            names: An explicit subset, or None for every registered job.

        Raises:
            NoJobsDefined: If there is nothing to watch.
            NoSuchJob: If an explicit name is not registered.
        """
        if names is None:
            resolved = sorted(self._jobs)
        else:
            resolved = list(dict.fromkeys(names))

        if not resolved:
            raise NoJobsDefined("No jobs defined")

        for name in resolved:
            if name not in self._jobs:
                raise NoSuchJob(name)

        return resolved

    def clear(self) -> None:
        """Forget every registered job."""
        self._jobs.clear()

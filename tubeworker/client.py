"""
Queue context.

A JobQueue bundles the job registry, the hook table, and the broker
connection for one application. Producers use it to register and enqueue
jobs; workers are built from it. Several independent queues can live in
one process.
"""

import logging
from collections.abc import Iterable
from typing import Any, Callable

from tubeworker.broker.connection import ClientFactory, ConnectionManager
from tubeworker.config import Settings, get_settings
from tubeworker.constants import SPAN_ENQUEUE_JOB
from tubeworker.errors import ConnectionLost
from tubeworker.observability.logging import exception_message
from tubeworker.observability.metrics import get_metrics
from tubeworker.observability.tracing import create_span
from tubeworker.types.job import JobDefinition, JobHandler, JobOptions, JobPayload
from tubeworker.worker.executor import Executor, ForkExecutor, InlineExecutor
from tubeworker.worker.hooks import HookEvent, HookShape, HookTable
from tubeworker.worker.main import Worker
from tubeworker.worker.registry import JobRegistry

logger = logging.getLogger(__name__)

HookCallback = Callable[..., Any]


class JobQueue:
    """
    Registry, hooks, and broker connection for one application.

    Example:
        queue = JobQueue()

        @queue.job("send_mail", max_attempts=3)
        def send_mail(args, job):
            ...

        queue.enqueue("send_mail", {"to": "a@example.com"})
    """

    def __init__(
        self,
        settings: Settings | None = None,
        connection: ConnectionManager | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """
        Initialize the queue.

        Args:
            settings: Defaults to the environment-derived settings.
            connection: An existing connection manager to use.
            client_factory: Builds broker clients when the connection is
                created lazily. Defaults to ``greenstalk.Client``.
        """
        self.settings = settings or get_settings()
        self.registry = JobRegistry()
        self.hooks = HookTable()
        self._connection = connection
        self._client_factory = client_factory
        self._url = connection.url if connection is not None else self.settings.beanstalk_url

    @property
    def url(self) -> str:
        return self._url

    @property
    def connection(self) -> ConnectionManager:
        """
        The broker connection, created on first use.

        Raises:
            BadURL: If the configured URL list is malformed.
        """
        if self._connection is None:
            self._connection = ConnectionManager(self._url, self._client_factory)
        return self._connection

    def connect(self, url: str) -> ConnectionManager:
        """Point the queue at ``url`` and open every endpoint."""
        self.close()
        self._url = url
        try:
            self.connection.connect()
        except ConnectionLost as e:
            self.failed_connection(e)
        return self.connection

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # Registration

    def register(
        self,
        name: str,
        handler: JobHandler,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> JobDefinition:
        """Register ``handler`` as the job ``name``."""
        return self.registry.register(name, options, handler)

    def job(self, name: str, **options: Any) -> Callable[[JobHandler], JobHandler]:
        """Decorator form of ``register``."""
        return self.registry.job(name, **options)

    def on_before(self, callback: HookCallback, shape: HookShape = HookShape.CONTEXT) -> HookCallback:
        return self.hooks.add(HookEvent.BEFORE, callback, shape)

    def on_after(self, callback: HookCallback, shape: HookShape = HookShape.CONTEXT) -> HookCallback:
        return self.hooks.add(HookEvent.AFTER, callback, shape)

    def on_error(self, callback: HookCallback, shape: HookShape = HookShape.CONTEXT) -> HookCallback:
        """
        Register an error hook.

        CONTEXT hooks receive the exception; VARIADIC hooks receive
        ``(exception, context)``.
        """
        return self.hooks.add(HookEvent.ERROR, callback, shape)

    def on_after_fork(self, callback: HookCallback, shape: HookShape = HookShape.CONTEXT) -> HookCallback:
        return self.hooks.add(HookEvent.AFTER_FORK, callback, shape)

    def clear(self) -> None:
        """Forget all jobs and hooks."""
        self.registry.clear()
        self.hooks.clear()

    # Producing

    def enqueue(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        priority: int | None = None,
        delay: int | None = None,
        ttr: int | None = None,
    ) -> int:
        """
        Put a job on the tube named after it.

        Per-call values override the job's registered options, which override
        the defaults; unregistered jobs can still be enqueued with defaults.

        Returns:
            The broker-assigned job id.

        Raises:
            SystemExit: With status 1 if the broker connection is lost.
        """
        definition = self.registry.get(name)
        options = definition.options if definition is not None else JobOptions()

        payload = JobPayload(name=name, args=args or {})

        with create_span(SPAN_ENQUEUE_JOB, job=name):
            try:
                job_id = self.connection.put(
                    name,
                    payload.encode(),
                    priority=options.priority if priority is None else priority,
                    delay=options.delay if delay is None else delay,
                    ttr=options.ttr if ttr is None else ttr,
                )
            except ConnectionLost as e:
                self.failed_connection(e)

        get_metrics().record_job_enqueued(name)
        logger.debug(f"Enqueued {name}", extra={"job_id": job_id, "job_args": payload.args})
        return job_id

    # Working

    def worker(
        self,
        jobs: Iterable[str] | None = None,
        fork: bool | None = None,
        executor: Executor | None = None,
        reserve_timeout: float | None = None,
    ) -> Worker:
        """
        Build a worker for this queue.

        Args:
            jobs: Job names to work. Defaults to every registered job.
            fork: Run each handler in a child process. Defaults to the
                ``worker_fork`` setting. Ignored when ``executor`` is given.
            executor: An explicit executor.
            reserve_timeout: Seconds per reserve before re-checking shutdown.

        Raises:
            NoJobsDefined: If there are no jobs to work.
            NoSuchJob: If a requested job is not registered.
        """
        if executor is None and fork is not None:
            executor = ForkExecutor(self.hooks) if fork else InlineExecutor()
        return Worker(self, jobs, executor=executor, reserve_timeout=reserve_timeout)

    def failed_connection(self, error: ConnectionLost) -> None:
        """
        Log a lost broker connection and exit the process.

        Raises:
            SystemExit: Always, with status 1.
        """
        logger.error(exception_message(error))
        logger.error(f"*** Failed connection to {self._url}")
        logger.error("*** Check that beanstalkd is running (or set a different BEANSTALK_URL)")
        raise SystemExit(1)

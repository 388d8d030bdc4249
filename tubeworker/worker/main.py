"""
Worker process for executing jobs.

The worker reserves jobs from the broker, dispatches them to registered
handlers under a deadline, and acknowledges each one: delete on success,
release with backoff while attempts remain, bury once they are exhausted.
"""

import importlib
import logging
import signal
import time
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import greenstalk

from tubeworker.broker.connection import JobHandle
from tubeworker.config import get_settings
from tubeworker.constants import (
    SPAN_ACK_JOB,
    SPAN_EXECUTE_JOB,
    SPAN_RESERVE_JOB,
    TTR_MARGIN_SECONDS,
    JobOutcome,
    WorkerState,
)
from tubeworker.errors import ConnectionLost, HandlerFailed
from tubeworker.observability.logging import (
    bind_context,
    clear_context,
    exception_message,
    setup_logging,
)
from tubeworker.observability.metrics import get_metrics, setup_metrics
from tubeworker.observability.tracing import create_span, setup_tracing
from tubeworker.types.job import JobContext, JobDefinition, JobOptions, JobPayload
from tubeworker.worker.executor import Executor, ForkExecutor, InlineExecutor
from tubeworker.worker.hooks import HookEvent

if TYPE_CHECKING:
    from tubeworker.client import JobQueue

logger = logging.getLogger(__name__)

MALFORMED_JOB_NAME = "<malformed>"


class Worker:
    """
    Job worker that reserves and executes jobs one at a time.

    Features:
    - Watches exactly the tubes of the jobs it works
    - Deadline of ttr - 1 seconds per handler
    - Cubic retry backoff, burial after max_attempts
    - Optional per-job process isolation
    - Graceful shutdown on SIGTERM/SIGINT, immediate abort on a second signal
    """

    def __init__(
        self,
        queue: "JobQueue",
        jobs: Iterable[str] | None = None,
        executor: Executor | None = None,
        reserve_timeout: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: The queue context holding registry, hooks, and connection.
            jobs: Job names to work. Defaults to every registered job.
            executor: How handlers run. Defaults to forking when the
                ``worker_fork`` setting is on, in-process otherwise.
            reserve_timeout: Seconds to wait for a job before re-checking for
                shutdown. Defaults to the ``worker_reserve_timeout_seconds``
                setting (None blocks until a job arrives).

        Raises:
            NoJobsDefined: If there are no jobs to work.
            NoSuchJob: If a requested job is not registered.
        """
        settings = queue.settings

        self.queue = queue
        self.jobs = queue.registry.resolve(jobs)
        if executor is None:
            executor = ForkExecutor(queue.hooks) if settings.worker_fork else InlineExecutor()
        self.executor = executor
        if reserve_timeout is None:
            reserve_timeout = settings.worker_reserve_timeout_seconds
        self.reserve_timeout = reserve_timeout

        self.state = WorkerState.IDLE
        self._shutdown = False
        self._job_begun: float | None = None
        self._metrics = get_metrics()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown

    def prepare(self) -> None:
        """Watch the tubes of the worked jobs and ignore every other tube."""
        connection = self.queue.connection

        logger.info(f"Working {len(self.jobs)} jobs: [ {' '.join(self.jobs)} ]")

        for job in self.jobs:
            connection.watch(job)

        unwanted = set()
        for tubes in connection.list_watched().values():
            unwanted.update(tube for tube in tubes if tube not in self.jobs)
        for tube in sorted(unwanted):
            connection.ignore(tube)

    def start(self) -> None:
        """
        Run the reserve-execute loop until shutdown is requested.

        Raises:
            SystemExit: With status 1 if the broker connection is lost.
        """
        logger.info("Worker starting", extra={"jobs": self.jobs})
        try:
            self.prepare()
            self.install_signal_handlers()
            while not self._shutdown:
                self.work_once()
        except ConnectionLost as e:
            self.failed_connection(e)
        finally:
            self.state = WorkerState.STOPPED

        logger.info("Worker stopped")

    def work_once(self) -> JobOutcome | None:
        """
        Reserve one job and resolve it.

        Returns:
            How the job was resolved, or None if no job was reserved.

        Raises:
            ConnectionLost: If the broker becomes unreachable.
        """
        self.state = WorkerState.RESERVING
        with create_span(SPAN_RESERVE_JOB):
            job = self.queue.connection.reserve(timeout=self.reserve_timeout)

        if job is None:
            self.state = WorkerState.IDLE
            return None

        self.state = WorkerState.DISPATCHING
        self._job_begun = time.monotonic()
        bind_context(job_id=job.id)

        name, args = MALFORMED_JOB_NAME, {}
        definition = None
        try:
            payload = JobPayload.decode(job.body)
            name, args = payload.name, payload.args
            bind_context(job=name)
            self._log_job_begin(name, args)
            self._metrics.record_job_reserved(name)

            definition = self.queue.registry.lookup(name)
            self.queue.hooks.run(HookEvent.BEFORE, JobContext(name=name, args=args, job=job))

            deadline = max(job.ttr - TTR_MARGIN_SECONDS, 1)
            with create_span(SPAN_EXECUTE_JOB, job=name, job_id=job.id):
                self.executor.run(definition, args, job, deadline)
        except ConnectionLost:
            raise
        except Exception as e:
            outcome = self._fail(job, name, args, definition, e)
        else:
            outcome = self._succeed(job, name, args)
        finally:
            clear_context()

        self.state = WorkerState.IDLE
        return outcome

    def _succeed(self, job: JobHandle, name: str, args: dict[str, Any]) -> JobOutcome:
        self.state = WorkerState.SUCCEEDING

        try:
            with create_span(SPAN_ACK_JOB, job=name, outcome=JobOutcome.SUCCEEDED):
                age = job.age
                job.delete()
        except greenstalk.Error as e:
            return self._abandon(job, name, args, "delete", e)

        elapsed_ms = self._log_job_end(name)
        self._metrics.record_job_completed(name, JobOutcome.SUCCEEDED, elapsed_ms / 1000)

        context = JobContext(
            name=name,
            args=args,
            job=job,
            elapsed_ms=elapsed_ms,
            age_ms=age * 1000 + elapsed_ms,
        )
        self.queue.hooks.run_safely(HookEvent.AFTER, context)
        return JobOutcome.SUCCEEDED

    def _fail(
        self,
        job: JobHandle,
        name: str,
        args: dict[str, Any],
        definition: JobDefinition | None,
        error: Exception,
    ) -> JobOutcome:
        message = exception_message(error)
        if isinstance(error, HandlerFailed) and error.trace:
            message = f"{message}\nRaised in child process:\n{error.trace}"
        logger.error(message, extra={"job": name, "job_args": args, "job_id": job.id})

        # Unknown and malformed jobs fall back to the default retry policy
        options = definition.options if definition is not None else JobOptions()

        action = "inspect"
        try:
            with create_span(SPAN_ACK_JOB, job=name) as span:
                attempts = job.reserves
                span.set_attribute("attempts", attempts)
                if attempts < options.max_attempts:
                    self.state = WorkerState.RETRYING
                    action = "release"
                    delay = options.retry_delay_for(attempts)
                    job.release(delay=delay)
                    outcome = JobOutcome.RETRIED
                    suffix = f"(failed - attempt #{attempts}, retrying in {delay}s)"
                else:
                    self.state = WorkerState.BURYING
                    try:
                        job.bury()
                    except greenstalk.Error as e:
                        logger.debug(f"Could not bury job {job.id}: {e}")
                    outcome = JobOutcome.BURIED
                    suffix = f"(failed - attempt #{attempts}, burying)"
        except greenstalk.Error as e:
            outcome = self._abandon(job, name, args, action, e)
        else:
            elapsed_ms = self._log_job_end(name, suffix)
            self._metrics.record_job_completed(name, outcome, elapsed_ms / 1000)

        self.queue.hooks.run_safely(
            HookEvent.ERROR, error, JobContext(name=name, args=args, job=job)
        )
        return outcome

    def _abandon(
        self,
        job: JobHandle,
        name: str,
        args: dict[str, Any],
        action: str,
        error: greenstalk.Error,
    ) -> JobOutcome:
        """
        Give up on acknowledging a job the broker no longer accepts commands for.

        The usual cause is a reservation that already expired or a handler that
        acknowledged the job itself. A job still reserved is requeued by the
        broker once its ttr lapses.
        """
        logger.error(
            f"Could not {action} job {job.id}: {exception_message(error)}",
            extra={"job": name, "job_args": args, "job_id": job.id},
        )
        elapsed_ms = self._log_job_end(name, f"({action} rejected by broker)")
        self._metrics.record_job_completed(name, JobOutcome.ABANDONED, elapsed_ms / 1000)
        return JobOutcome.ABANDONED

    def _log_job_begin(self, name: str, args: dict[str, Any]) -> None:
        args_flat = ""
        if args:
            args_flat = "(" + " ".join(f"{key}={value}" for key, value in args.items()) + ")"

        logger.info(" ".join(part for part in ("Working", name, args_flat) if part))

    def _log_job_end(self, name: str, message: str = "") -> int:
        begun = self._job_begun if self._job_begun is not None else time.monotonic()
        elapsed_ms = int((time.monotonic() - begun) * 1000)
        logger.info(f"Finished {name} in {elapsed_ms}ms {message}".rstrip())
        return elapsed_ms

    def failed_connection(self, error: ConnectionLost) -> None:
        """
        Log a lost broker connection and exit the process.

        Raises:
            SystemExit: Always, with status 1.
        """
        self.queue.failed_connection(error)

    def shutdown(self) -> None:
        """Stop the loop once the in-flight job is resolved."""
        logger.info("Exiting...")
        self._shutdown = True

    def kill_child(self) -> None:
        """Kill an in-flight isolated handler, if there is one."""
        self.executor.kill_child()

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to ``handle_signal``."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self.handle_signal)

    def handle_signal(self, signum: int, frame: Any) -> None:
        """
        First signal: graceful shutdown, killing any child.
        Second signal: abort immediately.
        """
        if self._shutdown:
            raise KeyboardInterrupt
        self.shutdown()
        self.kill_child()


def load_queue(target: str) -> "JobQueue":
    """
    Import a JobQueue from a ``package.module:attribute`` reference.

    Importing the module is what registers its jobs and hooks.
    """
    module_name, _, attribute = target.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attribute or "queue")


def run(jobs: Iterable[str] | None = None) -> None:
    """Run a worker for the queue named by the ``worker_app`` setting."""
    settings = get_settings()
    setup_logging(settings)
    setup_metrics(settings.prometheus_port)
    setup_tracing()

    if not settings.worker_app:
        raise SystemExit("Set WORKER_APP to the JobQueue to work, e.g. myapp.jobs:queue")

    queue = load_queue(settings.worker_app)
    worker = queue.worker(jobs)

    try:
        worker.start()
    finally:
        queue.close()


if __name__ == "__main__":
    run()

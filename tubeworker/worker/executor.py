"""
Job executors.

An executor runs one handler to completion or raises: JobTimeout when the
deadline passes, the handler's own error when it fails, or JobCrashed when
an isolated handler dies without reporting. The worker's retry and burial
logic is the same whichever executor runs the handler.
"""

import asyncio
import inspect
import logging
import multiprocessing
import os
import signal
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from multiprocessing.connection import Connection
from typing import Any

from tubeworker.broker.connection import JobHandle
from tubeworker.errors import HandlerFailed, JobCrashed, JobTimeout
from tubeworker.observability.logging import exception_message
from tubeworker.types.job import JobDefinition, JobHandler
from tubeworker.worker.hooks import HookEvent, HookTable

logger = logging.getLogger(__name__)


class _DeadlineExceeded(BaseException):
    """Raised into a handler by the alarm; not catchable as Exception."""


def timeout_message(name: str, deadline: int) -> str:
    return f"{name} hit {deadline}s timeout"


def call_handler(
    handler: JobHandler,
    args: dict[str, Any],
    job: JobHandle,
    deadline: float | None = None,
) -> Any:
    """
    Call a handler, running coroutine handlers on a fresh event loop.

    Only coroutine handlers observe ``deadline`` here.
    """
    if inspect.iscoroutinefunction(handler):
        return asyncio.run(asyncio.wait_for(handler(args, job), timeout=deadline))
    return handler(args, job)


@contextmanager
def alarm_deadline(seconds: int, name: str) -> Iterator[None]:
    """
    Interrupt the enclosed block with JobTimeout after ``seconds``.

    Uses SIGALRM, so it only works in the main thread; elsewhere the block
    runs unbounded and a warning is logged.
    """
    if threading.current_thread() is not threading.main_thread():
        logger.warning(
            "Handler deadline not enforced outside the main thread",
            extra={"job": name}
        )
        yield
        return

    def on_alarm(signum: int, frame: Any) -> None:
        raise _DeadlineExceeded()

    previous = signal.signal(signal.SIGALRM, on_alarm)
    signal.setitimer(signal.ITIMER_REAL, seconds)
    try:
        yield
        signal.setitimer(signal.ITIMER_REAL, 0)
    except _DeadlineExceeded:
        raise JobTimeout(timeout_message(name, seconds)) from None
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, previous)


class Executor(ABC):
    """Runs a handler to completion, or signals timeout or crash."""

    @abstractmethod
    def run(
        self,
        definition: JobDefinition,
        args: dict[str, Any],
        job: JobHandle,
        deadline: int,
    ) -> None:
        """
        Run ``definition.handler`` with ``(args, job)``.

        The handler's return value is ignored; returning at all is success.

        Raises:
            JobTimeout: If the handler is still running after ``deadline`` seconds.
        """

    def kill_child(self) -> bool:
        """
        Forcibly stop an in-flight isolated handler.

        Returns:
            True if a child was signalled.
        """
        return False


class InlineExecutor(Executor):
    """Runs handlers in the worker's own process."""

    def run(
        self,
        definition: JobDefinition,
        args: dict[str, Any],
        job: JobHandle,
        deadline: int,
    ) -> None:
        if inspect.iscoroutinefunction(definition.handler):
            try:
                call_handler(definition.handler, args, job, deadline)
            except TimeoutError:
                raise JobTimeout(timeout_message(definition.name, deadline)) from None
            return

        with alarm_deadline(deadline, definition.name):
            definition.handler(args, job)


class ForkExecutor(Executor):
    """
    Runs each handler in a freshly forked child process.

    The child runs the ``after_fork`` hooks, then the handler, and reports
    back over a pipe. The parent waits up to the deadline, kills a child that
    overruns it, and always reaps the child before returning. A handler that
    leaks memory, segfaults, or ignores the deadline cannot take the worker
    down with it.
    """

    def __init__(self, hooks: HookTable):
        self._hooks = hooks
        self._context = multiprocessing.get_context("fork")
        self._child: multiprocessing.process.BaseProcess | None = None

    @property
    def child_pid(self) -> int | None:
        return self._child.pid if self._child is not None else None

    def run(
        self,
        definition: JobDefinition,
        args: dict[str, Any],
        job: JobHandle,
        deadline: int,
    ) -> None:
        receiver, sender = self._context.Pipe(duplex=False)
        child = self._context.Process(
            target=self._child_main,
            args=(sender, definition, args, job),
            name=f"tubeworker-{definition.name}",
        )
        child.start()
        sender.close()
        self._child = child

        try:
            if not receiver.poll(deadline):
                logger.warning(
                    "Killing child past its deadline",
                    extra={"job": definition.name, "pid": child.pid}
                )
                child.kill()
                raise JobTimeout(timeout_message(definition.name, deadline))

            try:
                report = receiver.recv()
            except EOFError:
                report = None
        finally:
            child.join()
            self._child = None
            receiver.close()

        if report is None:
            raise JobCrashed(definition.name, child.exitcode)

        status, *detail = report
        if status == "error":
            raise HandlerFailed(*detail)

    def _child_main(
        self,
        sender: Connection,
        definition: JobDefinition,
        args: dict[str, Any],
        job: JobHandle,
    ) -> None:
        try:
            self._hooks.run(HookEvent.AFTER_FORK)
            call_handler(definition.handler, args, job)
        except Exception as e:
            sender.send(("error", type(e).__name__, str(e), exception_message(e)))
        else:
            sender.send(("ok",))
        finally:
            sender.close()

    def kill_child(self) -> bool:
        child = self._child
        if child is None or child.pid is None:
            return False

        logger.info(f"Killing child at {child.pid}")
        try:
            os.kill(child.pid, signal.SIGKILL)
        except ProcessLookupError:
            logger.error(f"Child {child.pid} not found, restarting.")
            return False
        return True

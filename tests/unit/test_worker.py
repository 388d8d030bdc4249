"""
Unit tests for the worker execution engine.
"""

import multiprocessing
import os
import signal
import time

import pytest

from tests.fakes import FakeBroker
from tubeworker.client import JobQueue
from tubeworker.constants import JobOutcome, WorkerState
from tubeworker.errors import JobTimeout, MalformedPayload, NoJobsDefined, NoSuchJob
from tubeworker.types.job import JobContext
from tubeworker.worker.executor import ForkExecutor, InlineExecutor
from tubeworker.worker.hooks import HookShape
from tubeworker.worker.main import Worker


def noop(args, job):
    return None


def failing(args, job):
    raise RuntimeError("handler failed")


class TestWorkerStartup:
    """Tests for worker construction and watch setup."""

    def test_empty_registry_raises(self, queue: JobQueue):
        """Test that a worker needs at least one job."""
        with pytest.raises(NoJobsDefined):
            queue.worker()

    def test_unknown_job_raises_before_reserving(self, queue: JobQueue, broker: FakeBroker):
        """Test that watching an unregistered job fails before any broker traffic."""
        queue.register("send_mail", noop)

        with pytest.raises(NoSuchJob):
            queue.worker(["send_mail", "resize"])

        assert broker.clients == []

    def test_prepare_watches_only_job_tubes(self, queue: JobQueue):
        """Test that the worker watches its jobs and ignores the default tube."""
        queue.register("send_mail", noop)
        queue.register("resize", noop)
        worker = queue.worker()

        worker.prepare()

        assert queue.connection.list_watched() == {"localhost:11300": {"resize", "send_mail"}}

    def test_prepare_subset(self, queue: JobQueue):
        """Test that a worker can work a subset of the registered jobs."""
        queue.register("send_mail", noop)
        queue.register("resize", noop)
        worker = queue.worker(["resize"])

        worker.prepare()

        assert worker.jobs == ["resize"]
        assert queue.connection.list_watched() == {"localhost:11300": {"resize"}}

    def test_executor_selection(self, queue: JobQueue):
        """Test that fork chooses process isolation."""
        queue.register("send_mail", noop)

        assert isinstance(queue.worker().executor, InlineExecutor)
        assert isinstance(queue.worker(fork=True).executor, ForkExecutor)
        assert isinstance(queue.worker(fork=False).executor, InlineExecutor)

    def test_fork_setting(self, test_settings, broker: FakeBroker):
        """Test that the worker_fork setting chooses process isolation."""
        queue = JobQueue(
            test_settings.model_copy(update={"worker_fork": True}),
            client_factory=broker.client,
        )
        queue.register("send_mail", noop)

        assert isinstance(queue.worker().executor, ForkExecutor)


class TestWorkOnce:
    """Tests for a single reserve-execute-acknowledge cycle."""

    @pytest.fixture
    def worker(self, queue: JobQueue) -> Worker:
        queue.register("send_mail", noop, {"max_attempts": 3, "retry_delay": 5, "ttr": 10})
        queue.register("flaky", failing, {"max_attempts": 2, "retry_delay": 5})
        worker = queue.worker()
        worker.prepare()
        return worker

    def test_no_job_returns_none(self, worker: Worker, broker: FakeBroker):
        """Test that an empty queue leaves the worker idle."""
        assert worker.work_once() is None
        assert worker.state == WorkerState.IDLE
        assert broker.calls == []

    def test_success_deletes(self, worker: Worker, queue: JobQueue, broker: FakeBroker):
        """Test that a successful job is deleted exactly once and never retried."""
        job_id = queue.enqueue("send_mail", {"to": "a@example.com"})

        assert worker.work_once() == JobOutcome.SUCCEEDED

        assert broker.ops("delete") == [("delete", job_id)]
        assert broker.ops("release") == []
        assert broker.ops("bury") == []
        assert worker.state == WorkerState.IDLE

    def test_handler_receives_args_and_job(self, queue: JobQueue, broker: FakeBroker):
        """Test that the handler sees the enqueued args and the reserved job."""
        received = []
        queue.register("send_mail", lambda args, job: received.append((args, job.id)))
        worker = queue.worker()
        worker.prepare()
        job_id = queue.enqueue("send_mail", {"to": "a@example.com"})

        worker.work_once()

        assert received == [({"to": "a@example.com"}, job_id)]

    def test_failure_releases_with_backoff(
        self, worker: Worker, queue: JobQueue, broker: FakeBroker
    ):
        """Test that a failure with attempts left releases with cubic backoff."""
        job_id = queue.enqueue("flaky")

        assert worker.work_once() == JobOutcome.RETRIED

        assert broker.ops("release") == [("release", job_id, 66536, 6)]
        assert broker.ops("delete") == []

    def test_failure_buries_when_exhausted(
        self, worker: Worker, queue: JobQueue, broker: FakeBroker
    ):
        """Test that a failure at max_attempts buries the job."""
        job_id = queue.enqueue("flaky")

        worker.work_once()
        assert worker.work_once() == JobOutcome.BURIED

        assert broker.ops("bury") == [("bury", job_id)]
        assert len(broker.ops("release")) == 1
        assert broker.ops("delete") == []

    def test_bury_failure_is_swallowed(
        self, worker: Worker, queue: JobQueue, broker: FakeBroker
    ):
        """Test that a broker error while burying does not escape."""
        queue.enqueue("flaky")
        worker.work_once()
        broker.fail_bury = True

        assert worker.work_once() == JobOutcome.BURIED
        assert broker.ops("bury") == []

    def test_unknown_job_is_job_failure(self, worker: Worker, queue: JobQueue, broker: FakeBroker):
        """Test that an unregistered name on a watched tube fails the job, not the worker."""
        errors = []
        queue.on_error(errors.append)
        job_id = broker.client(("localhost", 11300)).put('["ghost", {}]')
        broker.jobs[job_id].tube = "send_mail"

        assert worker.work_once() == JobOutcome.RETRIED

        assert isinstance(errors[0], NoSuchJob)
        assert broker.ops("release") == [("release", job_id, 2**16, 6)]

    def test_malformed_payload_is_job_failure(
        self, worker: Worker, queue: JobQueue, broker: FakeBroker
    ):
        """Test that an undecodable body follows the lookup-failure path."""
        errors = []
        queue.on_error(errors.append)
        job_id = broker.client(("localhost", 11300)).put("not json")
        broker.jobs[job_id].tube = "send_mail"

        assert worker.work_once() == JobOutcome.RETRIED
        assert isinstance(errors[0], NoSuchJob)

    def test_undecodable_bytes_are_job_failure(
        self, worker: Worker, queue: JobQueue, broker: FakeBroker
    ):
        """Test that a body that is not UTF-8 is retried instead of escaping the worker."""
        errors = []
        queue.on_error(errors.append)
        job_id = broker.client(("localhost", 11300)).put(b"\xff\xfe")
        broker.jobs[job_id].tube = "send_mail"

        assert worker.work_once() == JobOutcome.RETRIED

        assert isinstance(errors[0], MalformedPayload)
        assert broker.ops("release") == [("release", job_id, 2**16, 6)]

    def test_delete_rejected_by_broker(self, queue: JobQueue, broker: FakeBroker):
        """Test that a job the handler already deleted is abandoned, not fatal."""
        after = []
        queue.register("self_deleting", lambda args, job: job.delete())
        queue.on_after(after.append)
        worker = queue.worker()
        worker.prepare()
        job_id = queue.enqueue("self_deleting")
        queue.enqueue("self_deleting")

        assert worker.work_once() == JobOutcome.ABANDONED
        assert after == []
        assert worker.state == WorkerState.IDLE

        assert worker.work_once() == JobOutcome.ABANDONED
        assert broker.ops("delete")[0] == ("delete", job_id)

    def test_release_rejected_by_broker(self, queue: JobQueue, broker: FakeBroker):
        """Test that a failed job whose reservation is gone still runs error hooks."""
        def delete_then_fail(args, job):
            job.delete()
            raise RuntimeError("handler failed")

        errors = []
        queue.register("vanishing", delete_then_fail)
        queue.on_error(errors.append)
        worker = queue.worker()
        worker.prepare()
        queue.enqueue("vanishing")

        assert worker.work_once() == JobOutcome.ABANDONED

        assert str(errors[0]) == "handler failed"
        assert broker.ops("release") == []
        assert broker.ops("bury") == []

    def test_timeout_is_job_failure(self, queue: JobQueue, broker: FakeBroker):
        """Test that a handler past ttr - 1 is failed, never acknowledged."""
        def slow(args, job):
            time.sleep(10)

        errors = []
        queue.register("slow", slow, {"ttr": 2})
        queue.on_error(errors.append)
        worker = queue.worker()
        worker.prepare()
        job_id = queue.enqueue("slow")

        assert worker.work_once() == JobOutcome.RETRIED

        assert isinstance(errors[0], JobTimeout)
        assert str(errors[0]) == "slow hit 1s timeout"
        assert broker.ops("delete") == []
        assert [call[1] for call in broker.ops("release")] == [job_id]


class TestHooks:
    """Tests for lifecycle hooks around job execution."""

    @pytest.fixture
    def worker(self, queue: JobQueue) -> Worker:
        queue.register("send_mail", noop)
        queue.register("flaky", failing)
        worker = queue.worker()
        worker.prepare()
        return worker

    def test_before_and_after_contexts(self, worker: Worker, queue: JobQueue, broker: FakeBroker):
        """Test the context records passed to before and after hooks."""
        before: list[JobContext] = []
        after: list[JobContext] = []
        queue.on_before(before.append)
        queue.on_after(after.append)
        queue.enqueue("send_mail", {"to": "a@example.com"})
        broker.jobs[1].age = 2

        worker.work_once()

        assert before[0].name == "send_mail"
        assert before[0].args == {"to": "a@example.com"}
        assert before[0].elapsed_ms is None
        assert len(after) == 1
        assert after[0].elapsed_ms >= 0
        assert after[0].age_ms == 2000 + after[0].elapsed_ms

    def test_after_hook_error_does_not_undo_delete(
        self, worker: Worker, queue: JobQueue, broker: FakeBroker
    ):
        """Test that a failing after hook is logged and the job stays deleted."""
        def broken(context):
            raise RuntimeError("after hook failed")

        queue.on_after(broken)
        job_id = queue.enqueue("send_mail")

        assert worker.work_once() == JobOutcome.SUCCEEDED
        assert broker.ops("delete") == [("delete", job_id)]
        assert broker.ops("release") == []

    def test_before_hook_error_is_job_failure(
        self, worker: Worker, queue: JobQueue, broker: FakeBroker
    ):
        """Test that a failing before hook fails the job like the handler would."""
        ran = []

        def broken(context):
            raise RuntimeError("before hook failed")

        queue.register("send_mail", lambda args, job: ran.append(args))
        queue.on_before(broken)
        queue.enqueue("send_mail")

        assert worker.work_once() == JobOutcome.RETRIED
        assert ran == []
        assert broker.ops("delete") == []

    def test_error_hook_shapes(self, worker: Worker, queue: JobQueue):
        """Test that error hooks get the exception, or the exception and context."""
        single = []
        variadic = []
        queue.on_error(single.append)
        queue.on_error(lambda error, context: variadic.append((error, context)), HookShape.VARIADIC)
        queue.enqueue("flaky", {"n": 1})

        worker.work_once()

        assert isinstance(single[0], RuntimeError)
        error, context = variadic[0]
        assert error is single[0]
        assert context.name == "flaky"
        assert context.args == {"n": 1}

    def test_error_hook_failure_does_not_stop_worker(self, worker: Worker, queue: JobQueue):
        """Test that a failing error hook is logged, not raised."""
        def broken(error):
            raise RuntimeError("error hook failed")

        queue.on_error(broken)
        queue.enqueue("flaky")

        assert worker.work_once() == JobOutcome.RETRIED


class TestShutdown:
    """Tests for signal-driven shutdown and connection loss."""

    @pytest.fixture
    def worker(self, queue: JobQueue) -> Worker:
        queue.register("send_mail", noop)
        return queue.worker()

    def test_first_signal_requests_shutdown(self, worker: Worker):
        """Test that the first signal only sets the shutdown flag."""
        worker.handle_signal(signal.SIGTERM, None)

        assert worker.shutdown_requested is True

    def test_second_signal_aborts(self, worker: Worker):
        """Test that a second signal raises immediately."""
        worker.handle_signal(signal.SIGINT, None)

        with pytest.raises(KeyboardInterrupt):
            worker.handle_signal(signal.SIGTERM, None)

    def test_shutdown_kills_child(self, queue: JobQueue):
        """Test that graceful shutdown asks the executor to kill its child."""
        killed = []

        class RecordingExecutor(InlineExecutor):
            def kill_child(self) -> bool:
                killed.append(True)
                return False

        queue.register("send_mail", noop)
        worker = queue.worker(executor=RecordingExecutor())

        worker.handle_signal(signal.SIGTERM, None)

        assert killed == [True]

    def test_shutdown_continues_when_child_is_gone(self, queue: JobQueue):
        """Test that a child exiting before the kill does not interrupt shutdown."""
        executor = ForkExecutor(queue.hooks)
        child = multiprocessing.get_context("fork").Process(target=os._exit, args=(0,))
        child.start()
        child.join()
        executor._child = child
        queue.register("send_mail", noop)
        worker = queue.worker(executor=executor)

        worker.handle_signal(signal.SIGTERM, None)

        assert worker.shutdown_requested is True

    def test_start_finishes_in_flight_job_then_stops(
        self, queue: JobQueue, broker: FakeBroker, restore_signals
    ):
        """Test that a signal during a job lets it finish and stops the loop."""
        worker = None

        def handler(args, job):
            worker.handle_signal(signal.SIGTERM, None)

        queue.register("send_mail", handler)
        worker = queue.worker()
        first = queue.enqueue("send_mail")
        queue.enqueue("send_mail")

        worker.start()

        assert worker.state == WorkerState.STOPPED
        assert broker.ops("delete") == [("delete", first)]
        assert len(broker.jobs) == 1

    def test_start_installs_signal_handlers(self, queue: JobQueue, restore_signals):
        """Test that SIGINT and SIGTERM are routed to the worker."""
        queue.register("send_mail", noop)
        worker = queue.worker()
        worker.shutdown()

        worker.start()

        assert signal.getsignal(signal.SIGINT) == worker.handle_signal
        assert signal.getsignal(signal.SIGTERM) == worker.handle_signal

    def test_connection_loss_exits(self, worker: Worker, broker: FakeBroker, restore_signals):
        """Test that a lost connection exits the process with status 1."""
        broker.refuse_connections = True

        with pytest.raises(SystemExit) as exc_info:
            worker.start()

        assert exc_info.value.code == 1
        assert worker.state == WorkerState.STOPPED

    def test_connection_loss_mid_job_exits(
        self, queue: JobQueue, broker: FakeBroker, restore_signals
    ):
        """Test that losing the broker while a job runs is fatal, not retried."""
        def handler(args, job):
            broker.disconnect()

        queue.register("send_mail", handler)
        worker = queue.worker()
        queue.enqueue("send_mail")

        with pytest.raises(SystemExit) as exc_info:
            worker.start()

        assert exc_info.value.code == 1
        assert broker.ops("delete") == []

"""
Exceptions raised by the queue, the broker connection, and the worker.
"""


class TubeworkerError(RuntimeError):
    """Base class for all tubeworker errors."""


class NoJobsDefined(TubeworkerError):
    """A worker was started with nothing to work on."""


class NoSuchJob(TubeworkerError):
    """A job name is not present in the registry."""


class MalformedPayload(NoSuchJob):
    """A reserved job body could not be decoded into (name, args)."""


class JobTimeout(TubeworkerError):
    """A handler ran past its time-to-run budget."""


class JobCrashed(TubeworkerError):
    """An isolated handler process exited without reporting a result."""

    def __init__(self, name: str, exitcode: int | None):
        super().__init__(f"{name} crashed with exit code {exitcode}")
        self.exitcode = exitcode


class HandlerFailed(TubeworkerError):
    """A handler raised inside an isolated process."""

    def __init__(self, error_type: str, message: str, trace: str = ""):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.trace = trace


class BadURL(TubeworkerError):
    """A broker endpoint URI is malformed or uses the wrong scheme."""


class ConnectionLost(TubeworkerError):
    """The broker could not be reached."""

    def __init__(self, endpoint: str, cause: BaseException | None = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Lost connection to {endpoint}{detail}")
        self.endpoint = endpoint

"""
Broker connection management.
Resolves beanstalk:// endpoints and owns one greenstalk client per endpoint.
"""

import logging
import math
import random
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import urlsplit

import greenstalk

from tubeworker.constants import (
    BROKER_URL_SCHEME,
    DEFAULT_BROKER_PORT,
    DEFAULT_TUBE,
    MULTI_ENDPOINT_POLL_SECONDS,
)
from tubeworker.errors import BadURL, ConnectionLost

logger = logging.getLogger(__name__)

Address = tuple[str, int]
ClientFactory = Callable[[Address], Any]


def parse_broker_url(url: str) -> list[Address]:
    """
    Resolve a broker URL list into (host, port) pairs.

    Args:
        url: One or more ``beanstalk://host[:port]/`` URIs separated by
            commas and/or whitespace.

    Returns:
        The endpoints in configuration order.

    Raises:
        BadURL: If any URI has a different scheme, no host, or a bad port.
    """
    addresses = []
    for uri in re.split(r"[\s,]+", url.strip()):
        if not uri:
            continue
        parts = urlsplit(uri)
        try:
            port = parts.port
        except ValueError as e:
            raise BadURL(uri) from e
        if parts.scheme != BROKER_URL_SCHEME or not parts.hostname:
            raise BadURL(uri)
        addresses.append((parts.hostname, port or DEFAULT_BROKER_PORT))

    if not addresses:
        raise BadURL(url)
    return addresses


def open_client(address: Address) -> greenstalk.Client:
    """Connect to one endpoint, leaving job bodies as undecoded bytes."""
    return greenstalk.Client(address, encoding=None)


def format_address(address: Address) -> str:
    """Render an endpoint as ``host:port``."""
    return f"{address[0]}:{address[1]}"


class JobHandle:
    """
    A job reserved by this worker.

    Wraps the broker's job record together with the client it was reserved
    through, so acknowledgements go back to the same endpoint.
    """

    def __init__(self, manager: "ConnectionManager", address: Address, job: greenstalk.Job):
        self._manager = manager
        self._address = address
        self._job = job

    def __repr__(self) -> str:
        return f"<JobHandle id={self.id} endpoint={self.endpoint}>"

    @property
    def id(self) -> int:
        return self._job.id

    @property
    def body(self) -> bytes:
        return self._job.body

    @property
    def endpoint(self) -> str:
        return format_address(self._address)

    def stats(self) -> dict[str, Any]:
        """Fetch the broker's statistics for this job (``reserves``, ``age``, ...)."""
        with self._manager.guard(self._address) as client:
            return client.stats_job(self._job)

    @property
    def ttr(self) -> int:
        """Time-to-run in seconds."""
        return int(self.stats()["ttr"])

    @property
    def age(self) -> int:
        """Seconds since the job was first put."""
        return int(self.stats()["age"])

    @property
    def reserves(self) -> int:
        """How many times the job has been reserved, this reservation included."""
        return int(self.stats()["reserves"])

    def delete(self) -> None:
        with self._manager.guard(self._address) as client:
            client.delete(self._job)

    def release(self, priority: int | None = None, delay: int = 0) -> None:
        """
        Return the job to the ready queue after ``delay`` seconds.

        Args:
            priority: New priority, or None to keep the current one.
            delay: Seconds before the job becomes reservable again.
        """
        with self._manager.guard(self._address) as client:
            if priority is None:
                priority = client.stats_job(self._job)["pri"]
            client.release(self._job, priority=priority, delay=delay)

    def bury(self, priority: int | None = None) -> None:
        """Move the job out of normal reservation traffic."""
        with self._manager.guard(self._address) as client:
            if priority is None:
                priority = client.stats_job(self._job)["pri"]
            client.bury(self._job, priority=priority)


class ConnectionManager:
    """
    Owns the broker session for one or more endpoints.

    Clients are opened lazily, once per endpoint, and reused for every
    watch/reserve/put. Socket failures surface as ConnectionLost; there is
    no reconnection.
    """

    def __init__(self, url: str, client_factory: ClientFactory | None = None):
        """
        Initialize the connection manager.

        Args:
            url: Broker URL list (see ``parse_broker_url``).
            client_factory: Builds a client for an address. Defaults to
                ``open_client``.

        Raises:
            BadURL: If the URL list is malformed.
        """
        self.url = url
        self.addresses = parse_broker_url(url)
        self._client_factory = client_factory or open_client
        self._clients: dict[Address, Any] = {}
        self._watched: dict[Address, set[str]] = {}
        self._next_index = 0

    def _client(self, address: Address) -> Any:
        client = self._clients.get(address)
        if client is None:
            client = self._client_factory(address)
            self._clients[address] = client
            self._watched[address] = {DEFAULT_TUBE}
            logger.info(
                "Broker connection opened",
                extra={"endpoint": format_address(address)}
            )
        return client

    @contextmanager
    def guard(self, address: Address) -> Iterator[Any]:
        """
        Yield the client for ``address``, translating socket errors.

        Raises:
            ConnectionLost: If the endpoint is unreachable or drops the connection.
        """
        try:
            yield self._client(address)
        except OSError as e:
            raise ConnectionLost(format_address(address), e) from e

    def connect(self) -> None:
        """Open every endpoint eagerly."""
        for address in self.addresses:
            with self.guard(address):
                pass

    def watch(self, tube: str) -> None:
        """Add ``tube`` to the watch list on every endpoint."""
        for address in self.addresses:
            with self.guard(address) as client:
                client.watch(tube)
                self._watched[address].add(tube)

    def ignore(self, tube: str) -> None:
        """Remove ``tube`` from the watch list on every endpoint."""
        for address in self.addresses:
            with self.guard(address) as client:
                client.ignore(tube)
                self._watched[address].discard(tube)

    def list_watched(self) -> dict[str, set[str]]:
        """Watched tubes per endpoint."""
        result = {}
        for address in self.addresses:
            with self.guard(address):
                result[format_address(address)] = set(self._watched[address])
        return result

    def reserve(self, timeout: float | None = None) -> JobHandle | None:
        """
        Reserve the next ready job from any watched tube.

        With a single endpoint this blocks on it; with several, endpoints are
        polled round-robin with a short timeout each. The broker counts
        timeouts in whole seconds, so fractions round up.

        Args:
            timeout: Seconds to wait overall, or None to wait indefinitely.

        Returns:
            The reserved job, or None if the timeout passed.
        """
        if len(self.addresses) == 1:
            return self._reserve_from(self.addresses[0], timeout)

        waited = 0.0
        while timeout is None or waited < timeout:
            address = self.addresses[self._next_index % len(self.addresses)]
            self._next_index += 1
            poll = MULTI_ENDPOINT_POLL_SECONDS
            if timeout is not None:
                poll = min(poll, math.ceil(timeout - waited))
            job = self._reserve_from(address, poll)
            if job is not None:
                return job
            waited += poll
        return None

    def _reserve_from(self, address: Address, timeout: float | None) -> JobHandle | None:
        with self.guard(address) as client:
            try:
                if timeout is None:
                    job = client.reserve()
                else:
                    job = client.reserve(timeout=math.ceil(timeout))
            except greenstalk.TimedOutError:
                return None
        if job is None:
            return None
        return JobHandle(self, address, job)

    def put(
        self,
        tube: str,
        body: str,
        priority: int,
        delay: int,
        ttr: int,
    ) -> int:
        """
        Put a job on ``tube`` at a randomly chosen endpoint.

        Returns:
            The broker-assigned job id.
        """
        address = random.choice(self.addresses)
        with self.guard(address) as client:
            client.use(tube)
            return client.put(body.encode("utf-8"), priority=priority, delay=delay, ttr=ttr)

    def close(self) -> None:
        """Close every open client."""
        for address, client in list(self._clients.items()):
            try:
                client.close()
            except OSError:
                logger.warning(
                    "Error closing broker connection",
                    extra={"endpoint": format_address(address)}
                )
        self._clients.clear()
        self._watched.clear()

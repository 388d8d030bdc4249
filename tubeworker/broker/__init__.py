"""
Broker module.
Contains endpoint parsing and the connection manager for the work queue broker.
"""

from tubeworker.broker.connection import (
    ConnectionManager,
    JobHandle,
    parse_broker_url,
)

__all__ = [
    "ConnectionManager",
    "JobHandle",
    "parse_broker_url",
]

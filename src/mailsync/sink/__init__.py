"""Downstream adapters fed by the session manager's event stream."""

from .base import EventBroadcaster, IndexSink
from .dispatcher import SinkDispatcher
from .memory import InMemoryIndexSink, LoggingBroadcaster

__all__ = [
    "EventBroadcaster",
    "InMemoryIndexSink",
    "IndexSink",
    "LoggingBroadcaster",
    "SinkDispatcher",
]

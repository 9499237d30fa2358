"""In-process change feed for pickup rows.

Writes made through the workflow publish a ``ChangeEvent`` after the write
returns. Live sessions open an ``EventStream`` scoped by table, event type and
an optional ``column=eq.value`` row filter, then iterate it until stopped.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ANY_EVENT = "*"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: ChangeType
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)
    commit_timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
    seq: int = 0

    @property
    def record(self) -> Dict[str, Any]:
        return self.new or self.old

    @property
    def record_id(self) -> Optional[str]:
        value = self.record.get("id")
        return str(value) if value is not None else None


def _parse_row_filter(expr: Optional[str]) -> Optional[Tuple[str, str]]:
    if not expr:
        return None
    column, sep, rest = expr.partition("=")
    op, dot, value = rest.partition(".")
    if not sep or not dot or op != "eq" or not column:
        raise ValueError(f"Unsupported row filter: {expr!r} (expected column=eq.value)")
    return column.strip(), value


@dataclass(frozen=True)
class ChangeFilter:
    table: str
    event: str = ANY_EVENT
    filter: Optional[str] = None

    def __post_init__(self) -> None:
        _parse_row_filter(self.filter)
        if self.event != ANY_EVENT:
            ChangeType(self.event)

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.event != ANY_EVENT and change.event.value != self.event:
            return False
        parsed = _parse_row_filter(self.filter)
        if parsed is None:
            return True
        column, value = parsed
        row_value = change.record.get(column)
        return row_value is not None and str(row_value) == value


_STOP = object()


class EventStream:
    """Lazy, unbounded sequence of change events for one live session.

    Nothing is delivered before ``start()`` or after ``stop()``. ``stop()``
    may be called any number of times.
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        filters: Sequence[ChangeFilter],
        *,
        maxsize: int = 100,
        name: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> None:
        if not filters:
            raise ValueError("EventStream needs at least one filter")
        self._feed = feed
        self.filters = tuple(filters)
        self.name = name or ",".join(f.table for f in self.filters)
        self.owner = owner
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._started = False
        self._stopped = False
        self.dropped = 0

    @property
    def active(self) -> bool:
        return self._started and not self._stopped

    def matches(self, change: ChangeEvent) -> bool:
        return any(f.matches(change) for f in self.filters)

    def start(self) -> "EventStream":
        if self._stopped:
            raise RuntimeError("A stopped stream cannot be restarted")
        if not self._started:
            self._started = True
            self._feed._attach(self)
            logger.info("realtime stream started", extra={"stream": self.name})
        return self

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._feed._detach(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_STOP)
        logger.info(
            "realtime stream stopped",
            extra={"stream": self.name, "dropped": self.dropped},
        )

    def offer(self, change: ChangeEvent) -> None:
        if not self.active:
            return
        if self._queue.qsize() >= self._maxsize:
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "realtime queue full, dropping oldest event",
                extra={"stream": self.name, "dropped": self.dropped},
            )
        self._queue.put_nowait(change)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self._stopped:
            raise StopAsyncIteration
        if not self._started:
            raise RuntimeError("Call start() before iterating the stream")
        item = await self._queue.get()
        if item is _STOP or self._stopped:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "EventStream":
        return self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.stop()


class ChangeFeed:
    def __init__(self, *, queue_size: int = 100) -> None:
        self._streams: Set[EventStream] = set()
        self._seq = itertools.count(1)
        self.queue_size = queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._streams)

    def _attach(self, stream: EventStream) -> None:
        self._streams.add(stream)

    def _detach(self, stream: EventStream) -> None:
        self._streams.discard(stream)

    def open_stream(
        self,
        *filters: ChangeFilter,
        name: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> EventStream:
        return EventStream(self, filters, maxsize=self.queue_size, name=name, owner=owner)

    def stop_streams(self, owner: str) -> int:
        """Stop every stream opened for ``owner`` (e.g. on sign-out)."""
        streams = [stream for stream in list(self._streams) if stream.owner == owner]
        for stream in streams:
            stream.stop()
        return len(streams)

    def publish(
        self,
        table: str,
        event: ChangeType,
        new: Optional[Dict[str, Any]] = None,
        old: Optional[Dict[str, Any]] = None,
    ) -> ChangeEvent:
        change = ChangeEvent(
            table=table,
            event=ChangeType(event),
            new=dict(new or {}),
            old=dict(old or {}),
            seq=next(self._seq),
        )
        delivered = 0
        for stream in list(self._streams):
            if stream.matches(change):
                stream.offer(change)
                delivered += 1
        logger.debug(
            "change published",
            extra={
                "table": table,
                "event": change.event.value,
                "record_id": change.record_id,
                "delivered": delivered,
            },
        )
        return change


feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    return feed

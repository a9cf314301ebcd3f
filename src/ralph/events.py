"""ralph events: per-run publish/subscribe channel for monitoring clients.

Each subscriber owns a bounded buffer. When a subscriber falls behind, the
configured backpressure policy applies: ``drop_oldest`` discards the oldest
buffered event (and counts it), ``block`` makes the producer wait for room.
A subscriber that receives nothing for ``keepalive_seconds`` gets a
:class:`KeepAlive` tick instead, so a silent stream can be told from a dead one.
"""

from __future__ import annotations

import itertools
import json
import logging
import queue
import threading
import time
from collections.abc import Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from ralph.constants import (
    BACKPRESSURE_POLICIES,
    DEFAULT_BACKPRESSURE_POLICY,
    DEFAULT_KEEPALIVE_SECONDS,
    DEFAULT_SUBSCRIBER_BUFFER,
    EVENT_QUEUE_DROP_WARN_INTERVAL,
    EVENT_TYPES,
)
from ralph.models import ConfigError, EventSettings
from ralph.utils import _utc_now

logger = logging.getLogger(__name__)

_BLOCK_POLL_SECONDS = 0.05


@dataclass(frozen=True)
class RunEvent:
    type: str
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)
    id: int = 0
    timestamp: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "runId": self.run_id, "timestamp": self.timestamp, **self.data}


@dataclass(frozen=True)
class KeepAlive:
    run_id: str
    timestamp: str


def format_sse(item: RunEvent | KeepAlive) -> str:
    if isinstance(item, KeepAlive):
        return ": keepalive\n\n"
    return f"id: {item.id}\ndata: {json.dumps(item.to_payload())}\n\n"


class Subscription:
    def __init__(
        self,
        bus: "EventBus",
        run_id: str,
        *,
        buffer_size: int,
        backpressure: str,
        keepalive_seconds: float,
        block_timeout: float | None,
    ) -> None:
        self._bus = bus
        self.run_id = run_id
        self.backpressure = backpressure
        self.keepalive_seconds = keepalive_seconds
        self._block_timeout = block_timeout
        self._queue: queue.Queue[RunEvent] = queue.Queue(maxsize=max(1, buffer_size))
        self._closed = threading.Event()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: RunEvent) -> bool:
        if self.closed:
            return False
        if self.backpressure == "block":
            return self._offer_blocking(event)
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with suppress(queue.Empty):
                self._queue.get_nowait()
            self._queue.put_nowait(event)
            self._record_drop()
        return True

    def _offer_blocking(self, event: RunEvent) -> bool:
        deadline = None if self._block_timeout is None else time.monotonic() + self._block_timeout
        while not self.closed:
            try:
                self._queue.put(event, timeout=_BLOCK_POLL_SECONDS)
                return True
            except queue.Full:
                if deadline is not None and time.monotonic() >= deadline:
                    self._record_drop()
                    return False
        return False

    def _record_drop(self) -> None:
        self.dropped += 1
        if self.dropped == 1 or self.dropped % EVENT_QUEUE_DROP_WARN_INTERVAL == 0:
            logger.warning(
                "event subscriber for run %s is behind: dropped %s event(s) (buffer=%s, policy=%s)",
                self.run_id,
                self.dropped,
                self._queue.maxsize,
                self.backpressure,
            )

    def get(self, timeout: float | None = None) -> RunEvent | KeepAlive | None:
        """Next event, a keep-alive tick after a quiet period, or None once closed and drained."""
        wait = self.keepalive_seconds if timeout is None else timeout
        deadline = time.monotonic() + wait
        while True:
            try:
                return self._queue.get(timeout=min(_BLOCK_POLL_SECONDS * 4, max(0.0, deadline - time.monotonic())))
            except queue.Empty:
                if self.closed:
                    return None
                if time.monotonic() >= deadline:
                    return KeepAlive(run_id=self.run_id, timestamp=_utc_now())

    def __iter__(self) -> Iterator[RunEvent | KeepAlive]:
        while True:
            item = self.get()
            if item is None:
                return
            yield item

    def iter_sse(self) -> Iterator[str]:
        for item in self:
            yield format_sse(item)

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._bus._discard(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Fan-out of run events to subscribers, keyed by run id."""

    def __init__(
        self,
        *,
        buffer_size: int = DEFAULT_SUBSCRIBER_BUFFER,
        backpressure: str = DEFAULT_BACKPRESSURE_POLICY,
        keepalive_seconds: float = DEFAULT_KEEPALIVE_SECONDS,
        block_timeout: float | None = None,
    ) -> None:
        if backpressure not in BACKPRESSURE_POLICIES:
            raise ConfigError(
                f"backpressure must be one of {list(BACKPRESSURE_POLICIES)}, got '{backpressure}'"
            )
        self.buffer_size = buffer_size
        self.backpressure = backpressure
        self.keepalive_seconds = keepalive_seconds
        self.block_timeout = block_timeout
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: EventSettings) -> "EventBus":
        return cls(
            buffer_size=settings.buffer_size,
            backpressure=settings.backpressure,
            keepalive_seconds=settings.keepalive_seconds,
        )

    def subscribe(self, run_id: str) -> Subscription:
        subscription = Subscription(
            self,
            run_id,
            buffer_size=self.buffer_size,
            backpressure=self.backpressure,
            keepalive_seconds=self.keepalive_seconds,
            block_timeout=self.block_timeout,
        )
        with self._lock:
            self._subscribers.setdefault(run_id, []).append(subscription)
        return subscription

    def _discard(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.run_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.run_id, None)

    def subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def publish(self, event: RunEvent) -> int:
        """Deliver ``event`` to every subscriber of its run; return how many accepted it."""
        with self._lock:
            targets = list(self._subscribers.get(event.run_id, []))
        delivered = 0
        for subscription in targets:
            if subscription._offer(event):
                delivered += 1
        return delivered

    def emit(self, run_id: str, event_type: str, **data: Any) -> RunEvent:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type '{event_type}'")
        with self._lock:
            event_id = next(self._ids)
        event = RunEvent(type=event_type, run_id=run_id, data=data, id=event_id, timestamp=_utc_now())
        self.publish(event)
        return event

    def close_run(self, run_id: str) -> None:
        with self._lock:
            targets = list(self._subscribers.get(run_id, []))
        for subscription in targets:
            subscription.close()

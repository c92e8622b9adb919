# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Event fan-out for live consumers and a JSONL journal of everything published."""

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from slurry.schemas import TypedEvent

logger = logging.getLogger(__name__)


class EventJournal:
    """Append-only JSONL log of published events."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path).expanduser()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, event: TypedEvent) -> None:
        """Append one event to the JSONL file."""
        line = json.dumps(event.to_dict())
        with self._lock:
            with open(self.log_path, "a") as f:
                f.write(line + "\n")

    def read(self) -> List[dict]:
        if not self.log_path.exists():
            return []
        with open(self.log_path) as f:
            return [json.loads(line) for line in f if line.strip()]


class Subscription:
    """A consumer's view of the event stream.

    Delivery is at-least-once; consumers dedupe on ``event_id``.
    """

    def __init__(self, bus: "EventBus", loop: asyncio.AbstractEventLoop):
        self._bus = bus
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def _deliver(self, event: TypedEvent) -> None:
        try:
            on_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            self._queue.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def get(self, timeout: Optional[float] = None) -> TypedEvent:
        """Next event; raises asyncio.TimeoutError after ``timeout`` seconds."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def drain(self) -> List[TypedEvent]:
        """Events already delivered, without waiting."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def __aiter__(self):
        return self

    async def __anext__(self) -> TypedEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def close(self) -> None:
        self.closed = True
        self._bus._remove(self)


class EventBus:
    """Publishes TypedEvents to every live subscription.

    publish() may be called from worker threads; delivery is marshalled
    onto each subscriber's event loop.
    """

    def __init__(self, journal: Optional[EventJournal] = None):
        self.journal = journal
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

    def subscribe(self) -> Subscription:
        """Register a subscriber. Must be called from a running event loop."""
        subscription = Subscription(self, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: TypedEvent) -> None:
        if self.journal is not None:
            self.journal.write(event)
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            try:
                subscription._deliver(event)
            except RuntimeError:
                # Subscriber's loop is gone
                logger.debug("Dropping subscription with closed event loop")
                self._remove(subscription)

    def publish_many(self, events: Iterable[TypedEvent]) -> None:
        for event in events:
            self.publish(event)

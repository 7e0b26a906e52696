"""events.py

Event records and the in-process publisher they travel through.

Rules:
  1. publish() is best-effort. A failing handler or a full subscriber queue is
     logged and skipped; it never raises back into the publisher.
  2. Handlers run synchronously in the publishing thread, in registration order.
  3. subscribe(topic) returns a bounded stream. "*" receives every topic.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import OrderedDict
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar, Union

from fleetline.core.config import settings
from fleetline.models.job import BidStatus, JobStatus, WaypointKind, is_newer_status

logger = logging.getLogger(__name__)

ALL_TOPICS = "*"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Position events ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PositionChanged:
    topic: ClassVar[str] = "position.changed"

    carrier_id: str
    lat: float
    lng: float
    online: bool
    heading: float | None = None
    speed: float | None = None
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class CarrierWentOffline:
    topic: ClassVar[str] = "carrier.offline"

    carrier_id: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ProximityReached:
    topic: ClassVar[str] = "proximity.reached"

    job_id: int
    carrier_id: str
    shipper_id: str
    waypoint: WaypointKind
    distance_m: float
    approach: int  # 1 for the first entry, +1 per re-entry after an exit
    suggested_from: JobStatus
    suggested_to: JobStatus
    occurred_at: datetime = field(default_factory=_utcnow)


# ── Lifecycle events ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class JobCreated:
    topic: ClassVar[str] = "job.created"

    job_id: int
    shipper_id: str
    equipment_type: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class JobStatusChanged:
    topic: ClassVar[str] = "job.status_changed"

    job_id: int
    shipper_id: str
    carrier_id: str | None  # assigned carrier, once a bid is accepted
    from_status: JobStatus
    to_status: JobStatus
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BidSubmitted:
    topic: ClassVar[str] = "bid.submitted"

    job_id: int
    bid_id: int
    shipper_id: str
    carrier_id: str
    price: Decimal
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BidStatusChanged:
    topic: ClassVar[str] = "bid.status_changed"

    job_id: int
    bid_id: int
    shipper_id: str
    carrier_id: str
    from_status: BidStatus
    to_status: BidStatus
    occurred_at: datetime = field(default_factory=_utcnow)


Event = Union[
    PositionChanged,
    CarrierWentOffline,
    ProximityReached,
    JobCreated,
    JobStatusChanged,
    BidSubmitted,
    BidStatusChanged,
]

Handler = Callable[[Event], None]


class LatestStatus:
    """Newest job status seen per job, for spotting reads that lag behind events.

    Bounded: the least recently touched jobs are forgotten first. Not locked;
    callers serialize access.
    """

    def __init__(self, capacity: int | None = None):
        self._capacity = capacity or settings.JOB_STATUS_MEMORY
        self._statuses: OrderedDict[int, JobStatus] = OrderedDict()

    def __len__(self) -> int:
        return len(self._statuses)

    def get(self, job_id: int) -> JobStatus | None:
        return self._statuses.get(job_id)

    def is_behind(self, job_id: int, status: JobStatus) -> bool:
        known = self._statuses.get(job_id)
        return known is not None and is_newer_status(known, status)

    def note(self, job_id: int, status: JobStatus) -> None:
        known = self._statuses.get(job_id)
        if known is None or is_newer_status(status, known):
            self._statuses[job_id] = JobStatus(status)
        self._statuses.move_to_end(job_id)
        while len(self._statuses) > self._capacity:
            self._statuses.popitem(last=False)


# ── Subscription stream ───────────────────────────────────────────────────────

_CLOSED = object()


class Subscription:
    """Bounded stream of events for one topic."""

    def __init__(self, bus: "EventBus", topic: str, maxsize: int):
        self.topic = topic
        self.dropped = 0
        self._bus = bus
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: Event) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None when the wait times out or the stream is closed."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> list[Event]:
        events: list[Event] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not _CLOSED:
                events.append(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._detach(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass

    def __iter__(self) -> Iterator[Event]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ── Publisher ─────────────────────────────────────────────────────────────────

class EventBus:
    def __init__(self, queue_size: int | None = None):
        self._queue_size = queue_size or settings.SUBSCRIPTION_QUEUE_SIZE
        self._lock = threading.Lock()
        self._handlers: dict[str, list[Handler]] = {}
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, topic: str = ALL_TOPICS) -> Subscription:
        subscription = Subscription(self, topic, self._queue_size)
        with self._lock:
            self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def add_handler(self, topic: str, handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)

    def remove_handler(self, topic: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.topic, [])
            if subscription in subs:
                subs.remove(subscription)

    def publish(self, event: Event) -> None:
        topic = event.topic
        with self._lock:
            handlers = list(self._handlers.get(topic, ())) + list(self._handlers.get(ALL_TOPICS, ()))
            subs = list(self._subscriptions.get(topic, ())) + list(self._subscriptions.get(ALL_TOPICS, ()))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.warning(
                    "bus: handler %r failed for topic=%s",
                    getattr(handler, "__qualname__", handler),
                    topic,
                    exc_info=True,
                )

        for subscription in subs:
            if not subscription.offer(event):
                logger.warning(
                    "bus: dropped topic=%s for subscriber topic=%s (queue full or closed)",
                    topic,
                    subscription.topic,
                )

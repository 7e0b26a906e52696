"""dispatcher.py

Turns lifecycle and proximity events into notifications for registered people.

Rules enforced here (in order):
  1. Scope by role:
       shipper  - bids and status changes on jobs they own.
       carrier  - new open jobs, decisions on bids they placed, status changes
                  and proximity alerts on jobs assigned to them.
       operator - all of the above, for every job.
  2. Deduplication: a recipient sees a given fact once. The fact key is the
     event kind plus its identity (bid, job + status, job + waypoint + approach).
  3. Log: the newest NOTIFICATION_LOG_SIZE notifications per recipient are kept
     in memory for display. It is not a system of record.
  4. Offered actions (the one-tap transition on a proximity alert) are tracked
     apart from geofence state and resolve once the job leaves the status the
     action starts from.
     A proximity alert that arrives after the job already moved past the
     offered step is not offered to the carrier at all.
  5. Delivery sinks are fire-and-forget. A failing sink is logged and skipped;
     nothing here can block or undo the change that produced the event.
"""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fleetline.core.config import settings
from fleetline.models.job import BidStatus, JobStatus, WaypointKind
from fleetline.services.events import (
    BidStatusChanged,
    BidSubmitted,
    EventBus,
    JobCreated,
    JobStatusChanged,
    LatestStatus,
    ProximityReached,
)

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    SHIPPER = "shipper"
    CARRIER = "carrier"
    OPERATOR = "operator"


@dataclass(frozen=True)
class OfferedAction:
    label: str
    job_id: int
    expected_from: JobStatus
    to: JobStatus


@dataclass
class Notification:
    recipient_id: str
    kind: str
    title: str
    body: str
    link: str | None = None
    job_id: int | None = None
    action: OfferedAction | None = None
    action_resolved: bool = False
    read: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _Draft:
    title: str
    body: str
    link: str | None = None
    action: OfferedAction | None = None


Sink = Callable[[Notification], None]


# ── Payload text ──────────────────────────────────────────────────────────────

_SHIPPER_STATUS_TEXT = {
    JobStatus.BID_ACCEPTED: ("Carrier assigned", "Shipment #{job_id} has an assigned carrier."),
    JobStatus.IN_TRANSIT: ("Shipment update", "Shipment #{job_id} is on the way."),
    JobStatus.COMPLETED: ("Shipment update", "Shipment #{job_id} was delivered."),
    JobStatus.CANCELLED: ("Shipment update", "Shipment #{job_id} was cancelled."),
}

_CARRIER_STATUS_TEXT = {
    JobStatus.IN_TRANSIT: ("Trip started", "Shipment #{job_id} is now in transit."),
    JobStatus.COMPLETED: ("Delivery confirmed", "Shipment #{job_id} is complete."),
    JobStatus.CANCELLED: ("Shipment cancelled", "Shipment #{job_id} was cancelled by the shipper."),
}

_PROXIMITY_TEXT = {
    WaypointKind.PICKUP: ("You are near the pickup location", "Start the trip?", "Start trip"),
    WaypointKind.DELIVERY: ("You are near the delivery location", "Confirm delivery?", "Confirm delivery"),
}


def _shipment_link(job_id: int) -> str:
    return f"/shipments/{job_id}"


def _trip_link(job_id: int) -> str:
    return f"/my-trips/{job_id}"


def _admin_link(job_id: int) -> str:
    return f"/admin/shipments/{job_id}"


# ── Dispatcher ────────────────────────────────────────────────────────────────

class EventDispatcher:
    TOPICS = (
        JobCreated.topic,
        BidSubmitted.topic,
        BidStatusChanged.topic,
        JobStatusChanged.topic,
        ProximityReached.topic,
    )

    def __init__(
        self,
        bus: EventBus,
        *,
        log_size: int | None = None,
        dedupe_window: int | None = None,
    ):
        self._bus = bus
        self._log_size = log_size or settings.NOTIFICATION_LOG_SIZE
        self._dedupe_window = dedupe_window or settings.NOTIFICATION_DEDUPE_WINDOW

        self._lock = threading.Lock()
        self._roles: dict[str, Role] = {}
        self._logs: dict[str, deque[Notification]] = {}
        self._seen: dict[str, OrderedDict[tuple, None]] = {}
        self._offers: dict[str, dict[tuple[int, WaypointKind], Notification]] = {}
        self._latest = LatestStatus()
        self._sinks: list[Sink] = []

    def attach(self) -> None:
        for topic in self.TOPICS:
            self._bus.add_handler(topic, self.handle)

    # ── Recipients and sinks ──────────────────────────────────────────────────

    def register(self, recipient_id: str, role: Role | str) -> None:
        with self._lock:
            self._roles[recipient_id] = Role(role)
            self._logs.setdefault(recipient_id, deque(maxlen=self._log_size))
            self._seen.setdefault(recipient_id, OrderedDict())

    def unregister(self, recipient_id: str) -> None:
        with self._lock:
            self._roles.pop(recipient_id, None)
            self._logs.pop(recipient_id, None)
            self._seen.pop(recipient_id, None)
            self._offers.pop(recipient_id, None)

    def add_sink(self, sink: Sink) -> None:
        with self._lock:
            self._sinks.append(sink)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def notifications_for(self, recipient_id: str) -> list[Notification]:
        """Newest first."""
        with self._lock:
            return list(reversed(self._logs.get(recipient_id, ())))

    def unread_count(self, recipient_id: str) -> int:
        with self._lock:
            return sum(1 for n in self._logs.get(recipient_id, ()) if not n.read)

    def mark_all_read(self, recipient_id: str) -> int:
        with self._lock:
            marked = 0
            for notification in self._logs.get(recipient_id, ()):
                if not notification.read:
                    notification.read = True
                    marked += 1
            return marked

    def open_actions(self, recipient_id: str) -> list[Notification]:
        with self._lock:
            return list(self._offers.get(recipient_id, {}).values())

    # ── Event handling ────────────────────────────────────────────────────────

    def handle(self, event) -> list[Notification]:
        if isinstance(event, JobStatusChanged):
            self._resolve_offers(event)

        with self._lock:
            targets = self._route(event)
            delivered: list[Notification] = []
            for recipient_id, draft in targets:
                key = self._fact_key(event)
                seen = self._seen[recipient_id]
                if key in seen:
                    logger.debug("dispatch: duplicate %s for recipient=%s skipped", key, recipient_id)
                    continue
                seen[key] = None
                while len(seen) > self._dedupe_window:
                    seen.popitem(last=False)

                notification = Notification(
                    recipient_id=recipient_id,
                    kind=event.topic,
                    title=draft.title,
                    body=draft.body,
                    link=draft.link,
                    job_id=getattr(event, "job_id", None),
                    action=draft.action,
                )
                self._logs[recipient_id].append(notification)
                if draft.action is not None:
                    self._offers.setdefault(recipient_id, {})[(draft.action.job_id, event.waypoint)] = notification
                delivered.append(notification)
            sinks = list(self._sinks)

        for notification in delivered:
            for sink in sinks:
                try:
                    sink(notification)
                except Exception:
                    logger.warning(
                        "dispatch: sink failed for recipient=%s kind=%s",
                        notification.recipient_id,
                        notification.kind,
                        exc_info=True,
                    )
        return delivered

    @staticmethod
    def _fact_key(event) -> tuple:
        if isinstance(event, JobCreated):
            return (event.topic, event.job_id)
        if isinstance(event, BidSubmitted):
            return (event.topic, event.bid_id)
        if isinstance(event, BidStatusChanged):
            return (event.topic, event.bid_id, BidStatus(event.to_status).value)
        if isinstance(event, JobStatusChanged):
            return (event.topic, event.job_id, JobStatus(event.to_status).value)
        if isinstance(event, ProximityReached):
            return (event.topic, event.job_id, WaypointKind(event.waypoint).value, event.approach)
        return (event.topic, id(event))

    def _resolve_offers(self, event: JobStatusChanged) -> None:
        with self._lock:
            self._latest.note(event.job_id, event.to_status)
            for offers in self._offers.values():
                for offer_key, notification in list(offers.items()):
                    action = notification.action
                    if action.job_id == event.job_id and event.from_status == action.expected_from:
                        notification.action_resolved = True
                        del offers[offer_key]

    # ── Routing ───────────────────────────────────────────────────────────────

    def _recipients(self, role: Role) -> list[str]:
        return [rid for rid, r in self._roles.items() if r == role]

    def _is(self, recipient_id: str | None, role: Role) -> bool:
        return recipient_id is not None and self._roles.get(recipient_id) == role

    def _route(self, event) -> list[tuple[str, _Draft]]:
        # Caller holds _lock
        targets: list[tuple[str, _Draft]] = []

        if isinstance(event, JobCreated):
            for carrier_id in self._recipients(Role.CARRIER):
                targets.append((carrier_id, _Draft(
                    "New shipment available",
                    f"A new {event.equipment_type} shipment is open for bids.",
                    "/open-requests",
                )))
            operator_draft = _Draft(
                "New shipment",
                f"Shipment #{event.job_id} was created by {event.shipper_id}.",
                _admin_link(event.job_id),
            )

        elif isinstance(event, BidSubmitted):
            if self._is(event.shipper_id, Role.SHIPPER):
                targets.append((event.shipper_id, _Draft(
                    "New bid received",
                    f"A carrier offered {event.price} on shipment #{event.job_id}.",
                    _shipment_link(event.job_id),
                )))
            operator_draft = _Draft(
                "Bid submitted",
                f"Carrier {event.carrier_id} bid {event.price} on shipment #{event.job_id}.",
                _admin_link(event.job_id),
            )

        elif isinstance(event, BidStatusChanged):
            if self._is(event.carrier_id, Role.CARRIER):
                if event.to_status == BidStatus.ACCEPTED:
                    draft = _Draft(
                        "Your bid was accepted",
                        f"Your bid on shipment #{event.job_id} was accepted. Head to pickup to start the trip.",
                        _trip_link(event.job_id),
                    )
                else:
                    draft = _Draft(
                        "Your bid was declined",
                        f"Your bid on shipment #{event.job_id} was not accepted.",
                        "/open-requests",
                    )
                targets.append((event.carrier_id, draft))
            operator_draft = _Draft(
                f"Bid {BidStatus(event.to_status).value}",
                f"Bid #{event.bid_id} by {event.carrier_id} on shipment #{event.job_id} is {BidStatus(event.to_status).value}.",
                _admin_link(event.job_id),
            )

        elif isinstance(event, JobStatusChanged):
            to_status = JobStatus(event.to_status)
            if self._is(event.shipper_id, Role.SHIPPER) and to_status in _SHIPPER_STATUS_TEXT:
                title, body = _SHIPPER_STATUS_TEXT[to_status]
                targets.append((event.shipper_id, _Draft(
                    title, body.format(job_id=event.job_id), _shipment_link(event.job_id),
                )))
            if self._is(event.carrier_id, Role.CARRIER) and to_status in _CARRIER_STATUS_TEXT:
                title, body = _CARRIER_STATUS_TEXT[to_status]
                targets.append((event.carrier_id, _Draft(
                    title, body.format(job_id=event.job_id), _trip_link(event.job_id),
                )))
            operator_draft = _Draft(
                "Shipment status changed",
                f"Shipment #{event.job_id}: {JobStatus(event.from_status).value} -> {to_status.value}.",
                _admin_link(event.job_id),
            )

        elif isinstance(event, ProximityReached):
            waypoint = WaypointKind(event.waypoint)
            # The job already moved past the offered step; nothing to offer
            superseded = self._latest.is_behind(event.job_id, event.suggested_from)
            if superseded:
                logger.debug(
                    "dispatch: proximity for job=%s offers %s but job is %s, not offering",
                    event.job_id, JobStatus(event.suggested_from).value, self._latest.get(event.job_id).value,
                )
            elif self._is(event.carrier_id, Role.CARRIER):
                title, body, label = _PROXIMITY_TEXT[waypoint]
                targets.append((event.carrier_id, _Draft(
                    title,
                    body,
                    _trip_link(event.job_id),
                    OfferedAction(
                        label=label,
                        job_id=event.job_id,
                        expected_from=event.suggested_from,
                        to=event.suggested_to,
                    ),
                )))
            operator_draft = _Draft(
                "Carrier near waypoint",
                f"Carrier {event.carrier_id} is {event.distance_m:.0f}m from the {waypoint.value} of shipment #{event.job_id}.",
                _admin_link(event.job_id),
            )

        else:
            return targets

        for operator_id in self._recipients(Role.OPERATOR):
            targets.append((operator_id, operator_draft))
        return targets

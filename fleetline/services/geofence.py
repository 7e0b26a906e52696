"""geofence.py

Emits one ProximityReached per approach to the waypoint that matters right now.

Rules enforced here (in order):
  1. Relevance: bid_accepted watches pickup, in_transit watches delivery. Any
     other status makes the evaluator inert for that job and drops its state.
  2. Offline samples are never evaluated. CarrierWentOffline resets every
     proximity state held for that carrier to outside.
  3. Entering: distance <= radius while the state is outside (or unset) emits
     ProximityReached and marks the state inside.
  4. Exiting: distance > radius marks the state outside. Only an explicit
     outside sample re-arms the geofence, so samples jittering just inside the
     radius never emit twice.
  5. Optional cooldown: a re-entry within GEOFENCE_COOLDOWN_SECONDS of the last
     event is recorded as inside without emitting.
  6. Ordering: a job snapshot whose status is older than the newest
     JobStatusChanged already seen for that job is skipped, so a read that
     raced a transition cannot emit for the waypoint the job just left.

State is keyed by (job_id, waypoint kind) and lives only in memory. Losing it
is safe: the next sample rebuilds it.

ProximityReached never changes job status. It is advisory input for the
dispatcher, which offers the carrier the matching transition.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone

from fleetline.core.config import settings
from fleetline.logic.geo import haversine_meters
from fleetline.models.job import JobStatus, WaypointKind
from fleetline.repositories.job_repo import JobSnapshot
from fleetline.services.events import (
    CarrierWentOffline,
    EventBus,
    JobStatusChanged,
    LatestStatus,
    PositionChanged,
    ProximityReached,
)
from fleetline.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

RELEVANT_WAYPOINT: dict[JobStatus, WaypointKind] = {
    JobStatus.BID_ACCEPTED: WaypointKind.PICKUP,
    JobStatus.IN_TRANSIT: WaypointKind.DELIVERY,
}

# Transition offered to the carrier on arrival
SUGGESTED_TRANSITION: dict[WaypointKind, tuple[JobStatus, JobStatus]] = {
    WaypointKind.PICKUP: (JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT),
    WaypointKind.DELIVERY: (JobStatus.IN_TRANSIT, JobStatus.COMPLETED),
}


def relevant_waypoint(status: JobStatus) -> WaypointKind | None:
    return RELEVANT_WAYPOINT.get(JobStatus(status))


@dataclass
class ProximityState:
    inside: bool = False
    last_event_at: datetime | None = None
    approaches: int = 0


StateKey = tuple[int, WaypointKind]


class GeofenceEvaluator:
    def __init__(
        self,
        bus: EventBus,
        job_source: Callable[[str], list[JobSnapshot]],
        *,
        radius_m: float | None = None,
        cooldown_s: float | None = None,
    ):
        self._bus = bus
        self._job_source = job_source
        self.radius_m = radius_m if radius_m is not None else settings.GEOFENCE_RADIUS_METERS
        self.cooldown_s = cooldown_s if cooldown_s is not None else settings.GEOFENCE_COOLDOWN_SECONDS

        self._carrier_locks = KeyedLocks()
        self._state_lock = threading.Lock()
        self._states: dict[StateKey, ProximityState] = {}
        self._owners: dict[StateKey, str] = {}
        self._by_carrier: dict[str, set[StateKey]] = {}
        self._latest = LatestStatus()

    def attach(self) -> None:
        self._bus.add_handler(PositionChanged.topic, self.on_position_changed)
        self._bus.add_handler(CarrierWentOffline.topic, self.on_carrier_offline)
        self._bus.add_handler(JobStatusChanged.topic, self.on_job_status_changed)

    # ── Bus handlers ──────────────────────────────────────────────────────────

    def on_position_changed(self, event: PositionChanged) -> None:
        if not event.online:
            return

        # Same-carrier samples are evaluated one at a time
        with self._carrier_locks.hold(event.carrier_id):
            try:
                jobs = self._job_source(event.carrier_id)
            except Exception:
                logger.warning(
                    "geofence: job lookup failed for carrier=%s, skipping sample",
                    event.carrier_id,
                    exc_info=True,
                )
                return

            for job in jobs:
                reached = self.evaluate(job, event.carrier_id, event.lat, event.lng, now=event.occurred_at)
                if reached is not None:
                    self._publish(reached)

    def on_carrier_offline(self, event: CarrierWentOffline) -> None:
        # Approach counters survive so a later re-entry is still a new fact
        with self._carrier_locks.hold(event.carrier_id):
            with self._state_lock:
                keys = list(self._by_carrier.get(event.carrier_id, ()))
                for key in keys:
                    self._states[key].inside = False
        if keys:
            logger.info("geofence: carrier=%s offline, cleared %d proximity states", event.carrier_id, len(keys))

    def on_job_status_changed(self, event: JobStatusChanged) -> None:
        keep = relevant_waypoint(event.to_status)
        with self._state_lock:
            self._latest.note(event.job_id, event.to_status)
            for kind in WaypointKind:
                if kind != keep:
                    self._drop((event.job_id, kind))

    # ── Evaluation ────────────────────────────────────────────────────────────

    def evaluate(
        self,
        job: JobSnapshot,
        carrier_id: str,
        lat: float,
        lng: float,
        *,
        now: datetime | None = None,
    ) -> ProximityReached | None:
        """Update the job's proximity state for one sample; return the event to emit, if any."""
        now = now or datetime.now(timezone.utc)
        kind = relevant_waypoint(job.status)
        distance = None
        if kind is not None:
            waypoint = job.waypoint(kind)
            distance = haversine_meters(lat, lng, waypoint.lat, waypoint.lng)
        key = (job.id, kind)

        with self._state_lock:
            # A status change seen after this snapshot was read makes it stale
            if self._latest.is_behind(job.id, job.status):
                logger.debug(
                    "geofence: job=%s snapshot status %s is behind %s, skipping",
                    job.id, JobStatus(job.status).value, self._latest.get(job.id).value,
                )
                return None
            self._latest.note(job.id, job.status)

            if kind is None:
                for stale_kind in WaypointKind:
                    self._drop((job.id, stale_kind))
                return None

            state = self._states.get(key)
            if state is None:
                state = ProximityState()
                self._states[key] = state
                self._owners[key] = carrier_id
                self._by_carrier.setdefault(carrier_id, set()).add(key)

            if distance > self.radius_m:
                if state.inside:
                    logger.debug("geofence: job=%s %s exit at %.0fm", job.id, kind.value, distance)
                state.inside = False
                return None

            if state.inside:
                return None

            state.inside = True
            if (
                self.cooldown_s
                and state.last_event_at is not None
                and (now - state.last_event_at).total_seconds() < self.cooldown_s
            ):
                logger.debug("geofence: job=%s %s re-entry inside cooldown, not emitting", job.id, kind.value)
                return None

            state.approaches += 1
            state.last_event_at = now
            approach = state.approaches

        suggested_from, suggested_to = SUGGESTED_TRANSITION[kind]
        logger.info(
            "geofence: job=%s carrier=%s reached %s (%.0fm, approach %d)",
            job.id, carrier_id, kind.value, distance, approach,
        )
        return ProximityReached(
            job_id=job.id,
            carrier_id=carrier_id,
            shipper_id=job.shipper_id,
            waypoint=kind,
            distance_m=distance,
            approach=approach,
            suggested_from=suggested_from,
            suggested_to=suggested_to,
            occurred_at=now,
        )

    def proximity_state(self, job_id: int, kind: WaypointKind) -> ProximityState | None:
        with self._state_lock:
            state = self._states.get((job_id, WaypointKind(kind)))
            return replace(state) if state else None

    # ── Internals ─────────────────────────────────────────────────────────────

    def _drop(self, key: StateKey) -> None:
        # Caller holds _state_lock
        if self._states.pop(key, None) is None:
            return
        carrier_id = self._owners.pop(key, None)
        if carrier_id is not None:
            keys = self._by_carrier.get(carrier_id)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_carrier[carrier_id]

    def _publish(self, event: ProximityReached) -> None:
        try:
            self._bus.publish(event)
        except Exception:
            logger.warning("geofence: publish failed job=%s", event.job_id, exc_info=True)

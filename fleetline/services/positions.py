"""positions.py

Latest-known position per carrier, plus the change feed built on it.

Rules enforced here:
  1. Coordinates are validated before anything is written (InvalidLocation).
  2. The write is a single upsert keyed by carrier_id. Last write wins; a
     delayed report can overwrite a newer one because reports carry no sequence.
  3. After the write commits, PositionChanged is published. An offline report
     also publishes CarrierWentOffline so geofence state is cleared at once.
  4. Publishing is best-effort: a failure is logged, the write stands.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from fleetline.logic.geo import normalize_heading, validate_coordinates, validate_speed
from fleetline.models.position import CarrierPosition
from fleetline.services.events import CarrierWentOffline, EventBus, PositionChanged
from fleetline.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

_UPSERT_COLUMNS = ("lat", "lng", "heading", "speed", "is_online", "updated_at")


@dataclass(frozen=True)
class PositionSnapshot:
    carrier_id: str
    lat: float
    lng: float
    heading: float | None
    speed: float | None
    online: bool
    updated_at: datetime | None


def _snapshot(row: CarrierPosition) -> PositionSnapshot:
    return PositionSnapshot(
        carrier_id=row.carrier_id,
        lat=row.lat,
        lng=row.lng,
        heading=row.heading,
        speed=row.speed,
        online=bool(row.is_online),
        updated_at=row.updated_at,
    )


def upsert_position(db: Session, values: dict) -> None:
    """INSERT ... ON CONFLICT (carrier_id) DO UPDATE, per dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        db.merge(CarrierPosition(**values))
        return

    stmt = insert(CarrierPosition).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[CarrierPosition.carrier_id],
        set_={column: stmt.excluded[column] for column in _UPSERT_COLUMNS},
    )
    db.execute(stmt)


class PositionStore:
    def __init__(self, session_factory: Callable[[], Session], bus: EventBus):
        self._session_factory = session_factory
        self._bus = bus
        self._locks = KeyedLocks()

    def report_position(
        self,
        carrier_id: str,
        lat: float,
        lng: float,
        heading: float | None = None,
        speed: float | None = None,
        online: bool = True,
    ) -> PositionSnapshot:
        lat, lng = validate_coordinates(lat, lng)
        heading = normalize_heading(heading)
        speed = validate_speed(speed)
        online = bool(online)
        now = datetime.now(timezone.utc)

        values = {
            "carrier_id": carrier_id,
            "lat": lat,
            "lng": lng,
            "heading": heading,
            "speed": speed,
            "is_online": online,
            "updated_at": now,
        }

        # Held across write + publish so one carrier's events leave in write order
        with self._locks.hold(carrier_id):
            with self._session_factory() as db:
                upsert_position(db, values)
                db.commit()

            logger.debug(
                "positions: carrier=%s lat=%.6f lng=%.6f online=%s",
                carrier_id, lat, lng, online,
            )
            self._publish(PositionChanged(
                carrier_id=carrier_id,
                lat=lat,
                lng=lng,
                online=online,
                heading=heading,
                speed=speed,
                occurred_at=now,
            ))
            if not online:
                self._publish(CarrierWentOffline(carrier_id=carrier_id, occurred_at=now))

        return PositionSnapshot(
            carrier_id=carrier_id,
            lat=lat,
            lng=lng,
            heading=heading,
            speed=speed,
            online=online,
            updated_at=now,
        )

    def get_position(self, carrier_id: str) -> PositionSnapshot | None:
        with self._session_factory() as db:
            row = db.get(CarrierPosition, carrier_id)
            return _snapshot(row) if row else None

    def online_positions(self) -> list[PositionSnapshot]:
        """Every carrier currently reporting online, for live-map consumers."""
        with self._session_factory() as db:
            rows = (
                db.query(CarrierPosition)
                .filter(CarrierPosition.is_online.is_(True))
                .order_by(CarrierPosition.carrier_id)
                .all()
            )
            return [_snapshot(row) for row in rows]

    def _publish(self, event) -> None:
        try:
            self._bus.publish(event)
        except Exception:
            logger.warning("positions: publish failed topic=%s", event.topic, exc_info=True)

import sqlite3
from datetime import date
from decimal import Decimal

import pytest

from fleetline.database import Base, build_session_factory
from fleetline.models import job as _job_models  # noqa: F401
from fleetline.models import position as _position_models  # noqa: F401
from fleetline.repositories.job_repo import Waypoint
from fleetline.services.events import EventBus
from fleetline.services.runtime import FleetCore

sqlite3.register_adapter(Decimal, float)

# One degree of latitude along a meridian, on the 6,371 km sphere
METERS_PER_DEGREE_LAT = 6_371_000.0 * 3.141592653589793 / 180.0

PICKUP = Waypoint(24.7136, 46.6753, "Riyadh DC, Gate 4")
DELIVERY = Waypoint(21.4858, 39.1925, "Jeddah Port, Berth 12")


def north_of(waypoint: Waypoint, meters: float) -> tuple[float, float]:
    return waypoint.lat + meters / METERS_PER_DEGREE_LAT, waypoint.lng


def _build_session_factory(url: str):
    engine, factory = build_session_factory(url)
    Base.metadata.create_all(engine)
    return engine, factory


@pytest.fixture
def session_factory():
    engine, factory = _build_session_factory("sqlite://")
    yield factory
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    # Real file so worker threads get their own connections
    engine, factory = _build_session_factory(f"sqlite:///{tmp_path / 'fleet.db'}")
    yield factory
    engine.dispose()


@pytest.fixture
def bus():
    return EventBus(queue_size=100)


@pytest.fixture
def core(session_factory):
    return FleetCore(session_factory)


@pytest.fixture
def recorded(core):
    """Every event published on the core's bus, in order."""
    events = []
    core.bus.add_handler("*", events.append)
    return events


def create_job(lifecycle, shipper_id="shipper-1", **overrides):
    params = dict(
        pickup=PICKUP,
        delivery=DELIVERY,
        requested_date=date(2026, 11, 2),
        weight=Decimal("12000"),
        equipment_type="Dry Van",
    )
    params.update(overrides)
    return lifecycle.create_job(shipper_id, **params)

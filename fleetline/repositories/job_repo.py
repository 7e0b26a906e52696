"""
Job repository: reads shared by the lifecycle engine and the geofence evaluator.
Rows are turned into frozen snapshots so nothing outside a transaction holds ORM state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from fleetline.models.job import Bid, BidStatus, Job, JobStatus, WaypointKind

ACTIVE_STATUSES = (JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)


@dataclass(frozen=True)
class Waypoint:
    lat: float
    lng: float
    address: str


@dataclass(frozen=True)
class JobSnapshot:
    id: int
    shipper_id: str
    status: JobStatus
    pickup: Waypoint
    delivery: Waypoint
    requested_date: date
    weight: Decimal
    equipment_type: str
    notes: str | None
    accepted_bid_id: int | None
    carrier_id: str | None  # carrier behind accepted_bid_id

    def waypoint(self, kind: WaypointKind) -> Waypoint:
        return self.pickup if kind == WaypointKind.PICKUP else self.delivery


@dataclass(frozen=True)
class BidSnapshot:
    id: int
    job_id: int
    carrier_id: str
    price: Decimal
    notes: str | None
    status: BidStatus


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def job_snapshot(job: Job, carrier_id: str | None = None) -> JobSnapshot:
    return JobSnapshot(
        id=job.id,
        shipper_id=job.shipper_id,
        status=JobStatus(job.status),
        pickup=Waypoint(job.pickup_lat, job.pickup_lng, job.pickup_address),
        delivery=Waypoint(job.delivery_lat, job.delivery_lng, job.delivery_address),
        requested_date=job.requested_date,
        weight=job.weight,
        equipment_type=job.equipment_type,
        notes=job.notes,
        accepted_bid_id=job.accepted_bid_id,
        carrier_id=carrier_id,
    )


def bid_snapshot(bid: Bid) -> BidSnapshot:
    return BidSnapshot(
        id=bid.id,
        job_id=bid.job_id,
        carrier_id=bid.carrier_id,
        price=bid.price,
        notes=bid.notes,
        status=BidStatus(bid.status),
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_job(db: Session, job_id: int, *, for_update: bool = False) -> Job | None:
    query = db.query(Job).filter(Job.id == job_id)
    if for_update:
        # Row lock on PostgreSQL; SQLite ignores it and relies on the version check
        query = query.with_for_update()
    return query.first()


def get_bid(db: Session, job_id: int, bid_id: int) -> Bid | None:
    return db.query(Bid).filter(Bid.id == bid_id, Bid.job_id == job_id).first()


def list_bids(db: Session, job_id: int) -> list[Bid]:
    return db.query(Bid).filter(Bid.job_id == job_id).order_by(Bid.created_at, Bid.id).all()


def has_bid_from(db: Session, job_id: int, carrier_id: str) -> bool:
    return (
        db.query(Bid.id)
        .filter(Bid.job_id == job_id, Bid.carrier_id == carrier_id)
        .first()
        is not None
    )


def assigned_carrier_id(db: Session, job: Job) -> str | None:
    if job.accepted_bid_id is None:
        return None
    row = db.query(Bid.carrier_id).filter(Bid.id == job.accepted_bid_id).first()
    return row.carrier_id if row else None


def active_jobs_for_carrier(db: Session, carrier_id: str) -> list[JobSnapshot]:
    """Jobs awaiting pickup or in transit whose accepted bid belongs to carrier_id."""
    rows = (
        db.query(Job)
        .join(Bid, Bid.id == Job.accepted_bid_id)
        .filter(
            Bid.carrier_id == carrier_id,
            Job.status.in_(ACTIVE_STATUSES),
        )
        .order_by(Job.id)
        .all()
    )
    return [job_snapshot(job, carrier_id=carrier_id) for job in rows]

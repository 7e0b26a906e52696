import enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func

from fleetline.database import Base


class JobStatus(str, enum.Enum):
    OPEN = "open"
    AWAITING_BIDS = "pending_bids"
    BID_ACCEPTED = "bid_accepted"
    IN_TRANSIT = "in_transit"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Jobs only move forward along this order; a status never repeats
STATUS_ORDER = {
    JobStatus.OPEN: 0,
    JobStatus.AWAITING_BIDS: 1,
    JobStatus.BID_ACCEPTED: 2,
    JobStatus.IN_TRANSIT: 3,
    JobStatus.COMPLETED: 4,
    JobStatus.CANCELLED: 5,
}


def is_newer_status(candidate: JobStatus, known: JobStatus) -> bool:
    return STATUS_ORDER[JobStatus(candidate)] > STATUS_ORDER[JobStatus(known)]


class BidStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class WaypointKind(str, enum.Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


def _status_column(enum_cls, **kwargs) -> Column:
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            length=20,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    shipper_id = Column(String(64), nullable=False, index=True)
    equipment_type = Column(String(100), nullable=False)
    weight = Column(Numeric(12, 2), nullable=False)
    pickup_address = Column(String(255), nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    delivery_address = Column(String(255), nullable=False)
    delivery_lat = Column(Float, nullable=False)
    delivery_lng = Column(Float, nullable=False)
    requested_date = Column(Date, nullable=False)
    notes = Column(Text, nullable=True)
    status = _status_column(JobStatus, nullable=False, default=JobStatus.OPEN, index=True)
    accepted_bid_id = Column(Integer, nullable=True, index=True)  # set once, never cleared
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Optimistic concurrency: every UPDATE is guarded by WHERE version = :loaded_version
    __mapper_args__ = {"version_id_col": version}


class Bid(Base):
    __tablename__ = "bids"
    __table_args__ = (
        UniqueConstraint("job_id", "carrier_id", name="uq_bids_job_carrier"),
        Index(
            "uq_bids_one_accepted",
            "job_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    carrier_id = Column(String(64), nullable=False, index=True)
    price = Column(Numeric(12, 2), nullable=False)
    notes = Column(Text, nullable=True)
    status = _status_column(BidStatus, nullable=False, default=BidStatus.PENDING, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class JobRating(Base):
    __tablename__ = "job_ratings"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True)
    shipper_id = Column(String(64), nullable=False, index=True)
    carrier_id = Column(String(64), nullable=False, index=True)
    score = Column(SmallInteger, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

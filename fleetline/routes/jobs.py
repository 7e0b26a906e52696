import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from fleetline.dependencies.actor import Actor, current_actor, get_core, require_role
from fleetline.models.job import JobStatus
from fleetline.repositories.job_repo import BidSnapshot, JobSnapshot, Waypoint
from fleetline.services.dispatcher import Role
from fleetline.services.runtime import FleetCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class WaypointIn(BaseModel):
    lat: float
    lng: float
    address: str = Field(min_length=1, max_length=255)


class JobCreateRequest(BaseModel):
    pickup: WaypointIn
    delivery: WaypointIn
    requested_date: date
    weight: Decimal = Field(gt=0)
    equipment_type: str = Field(min_length=1, max_length=100)
    notes: Optional[str] = None


class BidRequest(BaseModel):
    price: Decimal = Field(gt=0)
    notes: Optional[str] = None


class AdvanceRequest(BaseModel):
    expected_from: JobStatus
    to: JobStatus


class RatingRequest(BaseModel):
    score: int = Field(ge=1, le=5)
    comment: Optional[str] = None


def _waypoint_payload(waypoint: Waypoint) -> dict:
    return {"lat": waypoint.lat, "lng": waypoint.lng, "address": waypoint.address}


def _job_payload(job: JobSnapshot) -> dict:
    return {
        "id": job.id,
        "shipper_id": job.shipper_id,
        "status": job.status.value,
        "pickup": _waypoint_payload(job.pickup),
        "delivery": _waypoint_payload(job.delivery),
        "requested_date": job.requested_date.isoformat(),
        "weight": str(job.weight),
        "equipment_type": job.equipment_type,
        "notes": job.notes,
        "accepted_bid_id": job.accepted_bid_id,
        "carrier_id": job.carrier_id,
    }


def _bid_payload(bid: BidSnapshot) -> dict:
    return {
        "id": bid.id,
        "job_id": bid.job_id,
        "carrier_id": bid.carrier_id,
        "price": str(bid.price),
        "notes": bid.notes,
        "status": bid.status.value,
    }


@router.post("", status_code=201)
def create_job(
    payload: JobCreateRequest,
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    require_role(actor, Role.SHIPPER)
    job = core.lifecycle.create_job(
        actor.id,
        pickup=Waypoint(payload.pickup.lat, payload.pickup.lng, payload.pickup.address),
        delivery=Waypoint(payload.delivery.lat, payload.delivery.lng, payload.delivery.address),
        requested_date=payload.requested_date,
        weight=payload.weight,
        equipment_type=payload.equipment_type,
        notes=payload.notes,
    )
    return _job_payload(job)


@router.get("/open")
def open_jobs(
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    return {"jobs": [_job_payload(job) for job in core.lifecycle.open_jobs()]}


@router.get("/{job_id}")
def get_job(
    job_id: int,
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    return _job_payload(core.lifecycle.get_job(job_id))


@router.get("/{job_id}/bids")
def list_bids(
    job_id: int,
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    bids = core.lifecycle.list_bids(job_id)
    if actor.role == Role.CARRIER:
        # Carriers only see their own offer
        bids = [bid for bid in bids if bid.carrier_id == actor.id]
    return {"bids": [_bid_payload(bid) for bid in bids]}


@router.post("/{job_id}/bids", status_code=201)
def submit_bid(
    job_id: int,
    payload: BidRequest,
    timeout: Optional[float] = Query(default=None, gt=0),
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    require_role(actor, Role.CARRIER)
    bid_id = core.lifecycle.submit_bid(job_id, actor.id, payload.price, payload.notes, timeout=timeout)
    return {"status": "ok", "bid_id": bid_id}


@router.post("/{job_id}/bids/{bid_id}/accept")
def accept_bid(
    job_id: int,
    bid_id: int,
    timeout: Optional[float] = Query(default=None, gt=0),
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    require_role(actor, Role.SHIPPER)
    core.lifecycle.accept_bid(job_id, bid_id, shipper_id=actor.id, timeout=timeout)
    return {"status": "ok", "job": _job_payload(core.lifecycle.get_job(job_id))}


@router.post("/{job_id}/bids/{bid_id}/reject")
def reject_bid(
    job_id: int,
    bid_id: int,
    timeout: Optional[float] = Query(default=None, gt=0),
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    require_role(actor, Role.SHIPPER)
    core.lifecycle.reject_bid(job_id, bid_id, shipper_id=actor.id, timeout=timeout)
    return {"status": "ok"}


@router.post("/{job_id}/advance")
def advance(
    job_id: int,
    payload: AdvanceRequest,
    timeout: Optional[float] = Query(default=None, gt=0),
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    """Start trip / confirm delivery. Operators may step a job on the carrier's behalf."""
    require_role(actor, Role.CARRIER, Role.OPERATOR)
    carrier_id = actor.id if actor.role == Role.CARRIER else None
    core.lifecycle.advance(job_id, payload.expected_from, payload.to, carrier_id=carrier_id, timeout=timeout)
    return {"status": "ok", "job": _job_payload(core.lifecycle.get_job(job_id))}


@router.post("/{job_id}/cancel")
def cancel(
    job_id: int,
    timeout: Optional[float] = Query(default=None, gt=0),
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    require_role(actor, Role.SHIPPER, Role.OPERATOR)
    core.lifecycle.cancel(
        job_id,
        actor_id=actor.id,
        as_operator=actor.role == Role.OPERATOR,
        timeout=timeout,
    )
    return {"status": "ok"}


@router.post("/{job_id}/rating", status_code=201)
def rate_job(
    job_id: int,
    payload: RatingRequest,
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    require_role(actor, Role.SHIPPER)
    rating_id = core.lifecycle.rate_job(job_id, shipper_id=actor.id, score=payload.score, comment=payload.comment)
    return {"status": "ok", "rating_id": rating_id}


@router.get("/carriers/{carrier_id}/rating")
def carrier_rating(
    carrier_id: str,
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    return core.lifecycle.carrier_rating(carrier_id)

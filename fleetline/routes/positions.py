import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fleetline.dependencies.actor import Actor, current_actor, get_core, require_role
from fleetline.services.dispatcher import Role
from fleetline.services.positions import PositionSnapshot
from fleetline.services.runtime import FleetCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/carriers", tags=["positions"])


class PositionReport(BaseModel):
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    online: bool = True


def _position_payload(position: PositionSnapshot) -> dict:
    return {
        "carrier_id": position.carrier_id,
        "lat": position.lat,
        "lng": position.lng,
        "heading": position.heading,
        "speed": position.speed,
        "online": position.online,
        "updated_at": position.updated_at.isoformat() if position.updated_at else None,
    }


@router.put("/{carrier_id}/position")
def report_position(
    carrier_id: str,
    report: PositionReport,
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    """Called by the carrier app's location loop every few seconds."""
    require_role(actor, Role.CARRIER)
    if actor.id != carrier_id:
        raise HTTPException(status_code=403, detail={"status": "error", "message": "forbidden"})

    position = core.positions.report_position(
        carrier_id,
        report.lat,
        report.lng,
        heading=report.heading,
        speed=report.speed,
        online=report.online,
    )
    return {"status": "ok", "position": _position_payload(position)}


@router.get("/{carrier_id}/position")
def get_position(
    carrier_id: str,
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
):
    position = core.positions.get_position(carrier_id)
    if position is None:
        return JSONResponse(status_code=404, content={"status": "error", "message": "position_not_found"})
    return _position_payload(position)


@router.get("/online")
def online_carriers(
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    """Live-map feed for operators."""
    require_role(actor, Role.OPERATOR)
    return {"carriers": [_position_payload(p) for p in core.positions.online_positions()]}

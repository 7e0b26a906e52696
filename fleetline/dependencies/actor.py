"""
Caller identity for the HTTP surface.
Authentication happens upstream; the gateway forwards the resolved actor in
X-Actor-Id / X-Actor-Role. Every resolved actor is registered with the
dispatcher so their notification feed exists before the first event.
"""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, status

from fleetline.services.dispatcher import Role
from fleetline.services.runtime import FleetCore


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role


def get_core(request: Request) -> FleetCore:
    return request.app.state.core


def current_actor(
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
    core: FleetCore = Depends(get_core),
) -> Actor:
    actor_id = (x_actor_id or "").strip()
    role_raw = (x_actor_role or "").strip().lower()
    if not actor_id or not role_raw:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"status": "error", "message": "auth_required"},
        )
    try:
        role = Role(role_raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"status": "error", "message": "unknown_role"},
        ) from None

    core.dispatcher.register(actor_id, role)
    return Actor(id=actor_id, role=role)


def require_role(actor: Actor, *roles: Role) -> None:
    if actor.role not in roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"status": "error", "message": "forbidden"},
        )

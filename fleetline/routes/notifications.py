import logging

from fastapi import APIRouter, Depends

from fleetline.dependencies.actor import Actor, current_actor, get_core
from fleetline.services.dispatcher import Notification
from fleetline.services.runtime import FleetCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _notification_payload(notification: Notification) -> dict:
    action = notification.action
    return {
        "id": notification.id,
        "kind": notification.kind,
        "title": notification.title,
        "body": notification.body,
        "link": notification.link,
        "job_id": notification.job_id,
        "read": notification.read,
        "created_at": notification.created_at.isoformat(),
        "action": None if action is None else {
            "label": action.label,
            "job_id": action.job_id,
            "expected_from": action.expected_from.value,
            "to": action.to.value,
            "resolved": notification.action_resolved,
        },
    }


@router.get("")
def list_notifications(
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    """Newest first; only the most recent entries are kept."""
    notifications = core.dispatcher.notifications_for(actor.id)
    return {
        "unread_count": sum(1 for n in notifications if not n.read),
        "notifications": [_notification_payload(n) for n in notifications],
    }


@router.get("/unread-count")
def unread_count(
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    """Badge count; does not mark anything read."""
    return {"unread_count": core.dispatcher.unread_count(actor.id)}


@router.post("/mark-read")
def mark_read(
    actor: Actor = Depends(current_actor),
    core: FleetCore = Depends(get_core),
) -> dict:
    marked = core.dispatcher.mark_all_read(actor.id)
    return {"status": "ok", "marked": marked}

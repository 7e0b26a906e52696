"""
Builds the fleet core from one session factory and wires its handlers onto a shared bus.

Handler order on the bus matters only within a topic: the geofence evaluator
registers before the dispatcher, so a status change drops stale proximity
state before the dispatcher resolves the matching offered action.
"""
from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from fleetline.services.dispatcher import EventDispatcher
from fleetline.services.events import EventBus
from fleetline.services.geofence import GeofenceEvaluator
from fleetline.services.lifecycle import LifecycleEngine
from fleetline.services.positions import PositionStore

logger = logging.getLogger(__name__)


class FleetCore:
    def __init__(self, session_factory: Callable[[], Session], *, bus: EventBus | None = None):
        self.session_factory = session_factory
        self.bus = bus or EventBus()
        self.positions = PositionStore(session_factory, self.bus)
        self.lifecycle = LifecycleEngine(session_factory, self.bus)
        self.geofence = GeofenceEvaluator(self.bus, self.lifecycle.active_jobs_for_carrier)
        self.dispatcher = EventDispatcher(self.bus)

        self.geofence.attach()
        self.dispatcher.attach()
        logger.debug("runtime: fleet core wired")

import logging
from collections.abc import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from fleetline.core.config import settings as core_settings
from fleetline.core.errors import (
    BidNotFound,
    BidNotPending,
    DuplicateBid,
    DuplicateRating,
    FleetError,
    InvalidLocation,
    InvalidTransition,
    JobNotFound,
    NotJobOwner,
    OperationTimeout,
)
from fleetline.database import Base, SessionLocal, check_database_connection, engine
from fleetline.models import job as _job_models  # noqa: F401  (register tables on Base)
from fleetline.models import position as _position_models  # noqa: F401
from fleetline.routes.jobs import router as jobs_router
from fleetline.routes.notifications import router as notifications_router
from fleetline.routes.positions import router as positions_router
from fleetline.services.runtime import FleetCore

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[FleetError], int] = {
    InvalidLocation: 422,
    JobNotFound: 404,
    BidNotFound: 404,
    NotJobOwner: 403,
    InvalidTransition: 409,
    BidNotPending: 409,
    DuplicateBid: 409,
    DuplicateRating: 409,
    OperationTimeout: 504,
}


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, core_settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def status_for(exc: FleetError) -> int:
    for error_cls in type(exc).__mro__:
        if error_cls in ERROR_STATUS:
            return ERROR_STATUS[error_cls]
    return 400


def create_app(session_factory: Callable[[], Session] | None = None) -> FastAPI:
    factory = session_factory or SessionLocal
    app = FastAPI(title="fleetline-api")
    app.state.core = FleetCore(factory)

    app.include_router(positions_router)
    app.include_router(jobs_router)
    app.include_router(notifications_router)

    @app.exception_handler(FleetError)
    async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning("api: %s %s -> %s (%s)", request.method, request.url.path, exc.code, exc)
        return JSONResponse(status_code=status_code, content={"status": "error", "message": exc.code})

    @app.on_event("startup")
    def startup() -> None:
        if session_factory is not None:
            return
        check_database_connection()
        if core_settings.ENV.lower() not in {"production", "prod"}:
            # Migrations own the schema in production
            Base.metadata.create_all(bind=engine)
        logger.info("api: fleet core ready env=%s", core_settings.ENV)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


configure_logging()
app = create_app()

"""Error kinds raised by the fleet core.

Every error is local and synchronous. The core never retries on the caller's
behalf; a raised error means no state changed, except OperationTimeout, after
which callers must re-read state.
"""

from __future__ import annotations


class FleetError(Exception):
    code = "fleet_error"

    def __init__(self, message: str | None = None, **context):
        self.context = context
        super().__init__(message or self.code)


class InvalidLocation(FleetError):
    code = "invalid_location"


class InvalidTransition(FleetError):
    code = "invalid_transition"

    def __init__(self, job_id: int, current: str, attempted: str):
        super().__init__(
            f"job {job_id}: cannot go from {current} to {attempted}",
            job_id=job_id,
            current=current,
            attempted=attempted,
        )
        self.job_id = job_id
        self.current = current
        self.attempted = attempted


class JobNotFound(FleetError):
    code = "job_not_found"


class BidNotFound(FleetError):
    code = "bid_not_found"


class BidNotPending(FleetError):
    code = "bid_not_pending"


class DuplicateBid(FleetError):
    code = "duplicate_bid"


class DuplicateRating(FleetError):
    code = "duplicate_rating"


class NotJobOwner(FleetError):
    code = "not_job_owner"


class OperationTimeout(FleetError):
    """The operation did not reach its commit point in time. State is unknown."""

    code = "timeout"

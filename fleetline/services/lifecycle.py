"""lifecycle.py

The only write path for job status and bid status.

Transition table (closed set, anything else raises InvalidTransition):

  open          --bid submitted-->       pending_bids
  pending_bids  --bid submitted-->       pending_bids
  open/pending_bids --bid accepted-->    bid_accepted
  bid_accepted  --carrier starts trip--> in_transit
  in_transit    --carrier delivers-->    completed
  any non-terminal --cancel-->           cancelled

Concurrency:
  - Writers for one job are serialized by a per-job lock inside this process.
  - Across processes, the job row is locked (SELECT ... FOR UPDATE) where the
    database supports it, and every write bumps jobs.version. A stale version
    rolls the transaction back; the guard is then re-evaluated against fresh
    state, so the loser of an accept race sees bid_accepted and gets
    InvalidTransition.
  - All rows an operation touches are written in one transaction. Events are
    published after commit and before the job lock is released, so every
    subscriber sees one job's events in commit order.
  - timeout bounds the wait for the job lock and the time to reach commit.
    Past it the transaction is rolled back and OperationTimeout is raised.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from fleetline.core.config import settings
from fleetline.core.errors import (
    BidNotFound,
    BidNotPending,
    DuplicateBid,
    DuplicateRating,
    InvalidTransition,
    JobNotFound,
    NotJobOwner,
    OperationTimeout,
)
from fleetline.logic.geo import validate_coordinates
from fleetline.models.job import Bid, BidStatus, Job, JobRating, JobStatus
from fleetline.repositories import job_repo
from fleetline.repositories.job_repo import BidSnapshot, JobSnapshot, Waypoint
from fleetline.services.events import (
    BidStatusChanged,
    BidSubmitted,
    EventBus,
    JobCreated,
    JobStatusChanged,
)
from fleetline.utils.locks import KeyedLocks, LockTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
BIDDABLE_STATUSES = frozenset({JobStatus.OPEN, JobStatus.AWAITING_BIDS})

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.OPEN: frozenset({JobStatus.AWAITING_BIDS, JobStatus.BID_ACCEPTED, JobStatus.CANCELLED}),
    JobStatus.AWAITING_BIDS: frozenset({JobStatus.AWAITING_BIDS, JobStatus.BID_ACCEPTED, JobStatus.CANCELLED}),
    JobStatus.BID_ACCEPTED: frozenset({JobStatus.IN_TRANSIT, JobStatus.CANCELLED}),
    JobStatus.IN_TRANSIT: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

# Carrier-driven steps reachable through advance()
ADVANCE_STEPS = frozenset({
    (JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT),
    (JobStatus.IN_TRANSIT, JobStatus.COMPLETED),
})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def _parse_positive(value, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} is not a number: {value!r}")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{field_name} is not a number: {value!r}") from None
    if not number.is_finite() or number <= 0:
        raise ValueError(f"{field_name} must be > 0")
    return number


def _touch(job: Job) -> None:
    # Forces an UPDATE so the version check covers writes that only touch bids
    job.updated_at = datetime.now(timezone.utc)


class LifecycleEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        bus: EventBus,
        *,
        default_timeout: float | None = None,
        max_retries: int | None = None,
    ):
        self._session_factory = session_factory
        self._bus = bus
        self._default_timeout = default_timeout if default_timeout is not None else settings.LIFECYCLE_TIMEOUT_SECONDS
        self._max_retries = max_retries if max_retries is not None else settings.LIFECYCLE_MAX_RETRIES
        self._locks = KeyedLocks()

    # ── Transaction plumbing ──────────────────────────────────────────────────

    def _execute(
        self,
        job_id: int,
        op_name: str,
        work: Callable[[Session, Job, list], T],
        timeout: float | None,
    ) -> T:
        timeout = self._default_timeout if timeout is None else timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            with self._locks.hold(job_id, timeout=timeout):
                result, events = self._transact(job_id, op_name, work, deadline)
                # Still under the job lock: the next writer's events queue behind these
                for event in events:
                    self._publish(event)
        except LockTimeout:
            logger.warning("lifecycle: %s job=%s timed out waiting for job lock", op_name, job_id)
            raise OperationTimeout(f"{op_name} on job {job_id} timed out", job_id=job_id) from None
        return result

    def _transact(self, job_id: int, op_name: str, work, deadline: float | None):
        attempt = 0
        while True:
            attempt += 1
            events: list = []
            with self._session_factory() as db:
                try:
                    job = job_repo.get_job(db, job_id, for_update=True)
                    if job is None:
                        raise JobNotFound(f"job {job_id} not found", job_id=job_id)
                    result = work(db, job, events)
                    db.flush()
                    if deadline is not None and time.monotonic() > deadline:
                        raise OperationTimeout(f"{op_name} on job {job_id} timed out", job_id=job_id)
                    db.commit()
                    return result, events
                except StaleDataError:
                    db.rollback()
                    if attempt > self._max_retries:
                        logger.warning(
                            "lifecycle: %s job=%s gave up after %d version conflicts",
                            op_name, job_id, attempt,
                        )
                        raise OperationTimeout(
                            f"{op_name} on job {job_id} kept conflicting", job_id=job_id
                        ) from None
                    logger.info(
                        "lifecycle: %s job=%s version conflict, re-reading (attempt %d)",
                        op_name, job_id, attempt,
                    )
                except Exception:
                    db.rollback()
                    raise

    def _publish(self, event) -> None:
        try:
            self._bus.publish(event)
        except Exception:
            logger.warning("lifecycle: publish failed topic=%s", event.topic, exc_info=True)

    @staticmethod
    def _require_owner(job: Job, shipper_id: str) -> None:
        if job.shipper_id != shipper_id:
            raise NotJobOwner(f"job {job.id} is not owned by {shipper_id}", job_id=job.id)

    # ── Job creation and reads ────────────────────────────────────────────────

    def create_job(
        self,
        shipper_id: str,
        *,
        pickup: Waypoint,
        delivery: Waypoint,
        requested_date: date,
        weight,
        equipment_type: str,
        notes: str | None = None,
    ) -> JobSnapshot:
        if not shipper_id:
            raise ValueError("shipper_id is required")
        pickup_lat, pickup_lng = validate_coordinates(pickup.lat, pickup.lng)
        delivery_lat, delivery_lng = validate_coordinates(delivery.lat, delivery.lng)
        weight_value = _parse_positive(weight, "weight")

        with self._session_factory() as db:
            job = Job(
                shipper_id=shipper_id,
                equipment_type=equipment_type,
                weight=weight_value,
                pickup_address=pickup.address,
                pickup_lat=pickup_lat,
                pickup_lng=pickup_lng,
                delivery_address=delivery.address,
                delivery_lat=delivery_lat,
                delivery_lng=delivery_lng,
                requested_date=requested_date,
                notes=notes,
                status=JobStatus.OPEN,
            )
            db.add(job)
            db.commit()
            snapshot = job_repo.job_snapshot(job)

        logger.info("lifecycle: created job=%s shipper=%s", snapshot.id, shipper_id)
        self._publish(JobCreated(
            job_id=snapshot.id,
            shipper_id=shipper_id,
            equipment_type=equipment_type,
        ))
        return snapshot

    def get_job(self, job_id: int) -> JobSnapshot:
        with self._session_factory() as db:
            job = job_repo.get_job(db, job_id)
            if job is None:
                raise JobNotFound(f"job {job_id} not found", job_id=job_id)
            return job_repo.job_snapshot(job, carrier_id=job_repo.assigned_carrier_id(db, job))

    def list_bids(self, job_id: int) -> list[BidSnapshot]:
        with self._session_factory() as db:
            if job_repo.get_job(db, job_id) is None:
                raise JobNotFound(f"job {job_id} not found", job_id=job_id)
            return [job_repo.bid_snapshot(bid) for bid in job_repo.list_bids(db, job_id)]

    def open_jobs(self) -> list[JobSnapshot]:
        with self._session_factory() as db:
            rows = (
                db.query(Job)
                .filter(Job.status.in_(tuple(BIDDABLE_STATUSES)))
                .order_by(Job.created_at.desc(), Job.id.desc())
                .all()
            )
            return [job_repo.job_snapshot(job) for job in rows]

    def active_jobs_for_carrier(self, carrier_id: str) -> list[JobSnapshot]:
        with self._session_factory() as db:
            return job_repo.active_jobs_for_carrier(db, carrier_id)

    # ── Bids ──────────────────────────────────────────────────────────────────

    def submit_bid(
        self,
        job_id: int,
        carrier_id: str,
        price,
        notes: str | None = None,
        *,
        timeout: float | None = None,
    ) -> int:
        price_value = _parse_positive(price, "price")
        if not carrier_id:
            raise ValueError("carrier_id is required")

        def work(db: Session, job: Job, events: list) -> int:
            previous = JobStatus(job.status)
            if not can_transition(previous, JobStatus.AWAITING_BIDS):
                raise InvalidTransition(job.id, previous.value, JobStatus.AWAITING_BIDS.value)
            if job_repo.has_bid_from(db, job.id, carrier_id):
                raise DuplicateBid(
                    f"carrier {carrier_id} already bid on job {job.id}",
                    job_id=job.id,
                    carrier_id=carrier_id,
                )

            bid = Bid(
                job_id=job.id,
                carrier_id=carrier_id,
                price=price_value,
                notes=notes,
                status=BidStatus.PENDING,
            )
            db.add(bid)
            if previous == JobStatus.OPEN:
                job.status = JobStatus.AWAITING_BIDS
            _touch(job)
            try:
                db.flush()
            except IntegrityError:
                raise DuplicateBid(
                    f"carrier {carrier_id} already bid on job {job.id}",
                    job_id=job.id,
                    carrier_id=carrier_id,
                ) from None

            events.append(BidSubmitted(
                job_id=job.id,
                bid_id=bid.id,
                shipper_id=job.shipper_id,
                carrier_id=carrier_id,
                price=price_value,
            ))
            if previous == JobStatus.OPEN:
                events.append(JobStatusChanged(
                    job_id=job.id,
                    shipper_id=job.shipper_id,
                    carrier_id=None,
                    from_status=previous,
                    to_status=JobStatus.AWAITING_BIDS,
                ))
            return bid.id

        bid_id = self._execute(job_id, "submit_bid", work, timeout)
        logger.info("lifecycle: bid=%s submitted job=%s carrier=%s price=%s", bid_id, job_id, carrier_id, price_value)
        return bid_id

    def accept_bid(
        self,
        job_id: int,
        bid_id: int,
        *,
        shipper_id: str,
        timeout: float | None = None,
    ) -> None:
        """Accept one bid, reject every other pending bid, assign the job. All or nothing."""

        def work(db: Session, job: Job, events: list) -> str:
            self._require_owner(job, shipper_id)
            previous = JobStatus(job.status)
            if not can_transition(previous, JobStatus.BID_ACCEPTED):
                raise InvalidTransition(job.id, previous.value, JobStatus.BID_ACCEPTED.value)

            target = job_repo.get_bid(db, job.id, bid_id)
            if target is None:
                raise BidNotFound(f"bid {bid_id} not found on job {job.id}", job_id=job.id, bid_id=bid_id)
            if BidStatus(target.status) != BidStatus.PENDING:
                raise BidNotPending(
                    f"bid {bid_id} is {BidStatus(target.status).value}",
                    job_id=job.id,
                    bid_id=bid_id,
                )

            job.status = JobStatus.BID_ACCEPTED
            job.accepted_bid_id = target.id
            # Job row first: a lost race fails the version check before any bid is written
            db.flush()

            target.status = BidStatus.ACCEPTED
            events.append(BidStatusChanged(
                job_id=job.id,
                bid_id=target.id,
                shipper_id=job.shipper_id,
                carrier_id=target.carrier_id,
                from_status=BidStatus.PENDING,
                to_status=BidStatus.ACCEPTED,
            ))
            for other in job_repo.list_bids(db, job.id):
                if other.id == target.id or BidStatus(other.status) != BidStatus.PENDING:
                    continue
                other.status = BidStatus.REJECTED
                events.append(BidStatusChanged(
                    job_id=job.id,
                    bid_id=other.id,
                    shipper_id=job.shipper_id,
                    carrier_id=other.carrier_id,
                    from_status=BidStatus.PENDING,
                    to_status=BidStatus.REJECTED,
                ))

            events.append(JobStatusChanged(
                job_id=job.id,
                shipper_id=job.shipper_id,
                carrier_id=target.carrier_id,
                from_status=previous,
                to_status=JobStatus.BID_ACCEPTED,
            ))
            return target.carrier_id

        carrier_id = self._execute(job_id, "accept_bid", work, timeout)
        logger.info("lifecycle: bid=%s accepted job=%s carrier=%s", bid_id, job_id, carrier_id)

    def reject_bid(
        self,
        job_id: int,
        bid_id: int,
        *,
        shipper_id: str,
        timeout: float | None = None,
    ) -> None:
        def work(db: Session, job: Job, events: list) -> None:
            self._require_owner(job, shipper_id)
            bid = job_repo.get_bid(db, job.id, bid_id)
            if bid is None:
                raise BidNotFound(f"bid {bid_id} not found on job {job.id}", job_id=job.id, bid_id=bid_id)
            if BidStatus(bid.status) != BidStatus.PENDING:
                raise BidNotPending(
                    f"bid {bid_id} is {BidStatus(bid.status).value}",
                    job_id=job.id,
                    bid_id=bid_id,
                )
            bid.status = BidStatus.REJECTED
            _touch(job)
            events.append(BidStatusChanged(
                job_id=job.id,
                bid_id=bid.id,
                shipper_id=job.shipper_id,
                carrier_id=bid.carrier_id,
                from_status=BidStatus.PENDING,
                to_status=BidStatus.REJECTED,
            ))

        self._execute(job_id, "reject_bid", work, timeout)
        logger.info("lifecycle: bid=%s rejected job=%s", bid_id, job_id)

    # ── Job status ────────────────────────────────────────────────────────────

    def advance(
        self,
        job_id: int,
        expected_from: JobStatus | str,
        to: JobStatus | str,
        *,
        carrier_id: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Guarded carrier step: start trip (bid_accepted→in_transit) or confirm delivery."""
        expected_from = JobStatus(expected_from)
        to = JobStatus(to)

        def work(db: Session, job: Job, events: list) -> None:
            current = JobStatus(job.status)
            step = (expected_from, to)
            if current != expected_from or step not in ADVANCE_STEPS or not can_transition(current, to):
                raise InvalidTransition(job.id, current.value, to.value)

            assigned = job_repo.assigned_carrier_id(db, job)
            if carrier_id is not None and carrier_id != assigned:
                raise NotJobOwner(f"job {job.id} is not assigned to {carrier_id}", job_id=job.id)

            job.status = to
            events.append(JobStatusChanged(
                job_id=job.id,
                shipper_id=job.shipper_id,
                carrier_id=assigned,
                from_status=current,
                to_status=to,
            ))

        self._execute(job_id, "advance", work, timeout)
        logger.info("lifecycle: job=%s advanced %s -> %s", job_id, expected_from.value, to.value)

    def cancel(
        self,
        job_id: int,
        *,
        actor_id: str | None = None,
        as_operator: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Cancel a non-terminal job. Bid rows keep their last state for audit."""

        def work(db: Session, job: Job, events: list) -> None:
            if actor_id is not None and not as_operator:
                self._require_owner(job, actor_id)
            current = JobStatus(job.status)
            if not can_transition(current, JobStatus.CANCELLED):
                raise InvalidTransition(job.id, current.value, JobStatus.CANCELLED.value)

            job.status = JobStatus.CANCELLED
            events.append(JobStatusChanged(
                job_id=job.id,
                shipper_id=job.shipper_id,
                carrier_id=job_repo.assigned_carrier_id(db, job),
                from_status=current,
                to_status=JobStatus.CANCELLED,
            ))

        self._execute(job_id, "cancel", work, timeout)
        logger.info("lifecycle: job=%s cancelled by=%s", job_id, actor_id or "system")

    # ── Ratings ───────────────────────────────────────────────────────────────

    def rate_job(
        self,
        job_id: int,
        *,
        shipper_id: str,
        score: int,
        comment: str | None = None,
        timeout: float | None = None,
    ) -> int:
        if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
            raise ValueError("score must be an integer from 1 to 5")

        def work(db: Session, job: Job, events: list) -> int:
            self._require_owner(job, shipper_id)
            current = JobStatus(job.status)
            if current != JobStatus.COMPLETED:
                raise InvalidTransition(job.id, current.value, "rated")
            if db.query(JobRating.id).filter(JobRating.job_id == job.id).first() is not None:
                raise DuplicateRating(f"job {job.id} already rated", job_id=job.id)

            rating = JobRating(
                job_id=job.id,
                shipper_id=shipper_id,
                carrier_id=job_repo.assigned_carrier_id(db, job),
                score=score,
                comment=comment,
            )
            db.add(rating)
            try:
                db.flush()
            except IntegrityError:
                raise DuplicateRating(f"job {job.id} already rated", job_id=job.id) from None
            return rating.id

        rating_id = self._execute(job_id, "rate_job", work, timeout)
        logger.info("lifecycle: job=%s rated score=%s", job_id, score)
        return rating_id

    def carrier_rating(self, carrier_id: str) -> dict[str, Any]:
        """Average score and count across a carrier's rated jobs."""
        with self._session_factory() as db:
            scores = [
                row.score
                for row in db.query(JobRating.score).filter(JobRating.carrier_id == carrier_id).all()
            ]
        if not scores:
            return {"carrier_id": carrier_id, "count": 0, "average": None}
        return {
            "carrier_id": carrier_id,
            "count": len(scores),
            "average": round(sum(scores) / len(scores), 2),
        }

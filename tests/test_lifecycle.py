import threading
import time
from decimal import Decimal

import pytest
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker

from conftest import DELIVERY, PICKUP, create_job
from fleetline.core.errors import (
    BidNotFound,
    BidNotPending,
    DuplicateBid,
    DuplicateRating,
    InvalidLocation,
    InvalidTransition,
    JobNotFound,
    NotJobOwner,
    OperationTimeout,
)
from fleetline.models.job import Bid, BidStatus, JobStatus
from fleetline.repositories.job_repo import Waypoint
from fleetline.services.events import BidStatusChanged, BidSubmitted, EventBus, JobCreated, JobStatusChanged
from fleetline.services.lifecycle import TRANSITIONS, LifecycleEngine, can_transition


@pytest.fixture
def engine(core):
    return core.lifecycle


def _accepted_count(session_factory, job_id):
    with session_factory() as db:
        return db.query(Bid).filter(Bid.job_id == job_id, Bid.status == BidStatus.ACCEPTED).count()


def _awarded_job(engine, carrier_id="carrier-b"):
    job = create_job(engine)
    bid_id = engine.submit_bid(job.id, carrier_id, Decimal("90"))
    engine.accept_bid(job.id, bid_id, shipper_id="shipper-1")
    return job.id, bid_id


class TestTransitionTable:
    def test_allowed(self):
        assert can_transition(JobStatus.OPEN, JobStatus.AWAITING_BIDS)
        assert can_transition(JobStatus.AWAITING_BIDS, JobStatus.AWAITING_BIDS)
        assert can_transition(JobStatus.AWAITING_BIDS, JobStatus.BID_ACCEPTED)
        assert can_transition(JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)
        assert can_transition(JobStatus.IN_TRANSIT, JobStatus.COMPLETED)
        assert can_transition(JobStatus.IN_TRANSIT, JobStatus.CANCELLED)

    def test_terminal_states_have_no_exits(self):
        for target in JobStatus:
            assert not can_transition(JobStatus.COMPLETED, target)
            assert not can_transition(JobStatus.CANCELLED, target)

    def test_no_skipping(self):
        assert not can_transition(JobStatus.OPEN, JobStatus.IN_TRANSIT)
        assert not can_transition(JobStatus.BID_ACCEPTED, JobStatus.COMPLETED)
        assert not can_transition(JobStatus.IN_TRANSIT, JobStatus.BID_ACCEPTED)


class TestCreateJob:
    def test_new_job_is_open(self, engine, recorded):
        job = create_job(engine)

        assert job.status == JobStatus.OPEN
        assert job.accepted_bid_id is None
        assert job.pickup == PICKUP
        assert job.delivery == DELIVERY
        assert isinstance(recorded[-1], JobCreated)

    def test_bad_waypoint_rejected(self, engine):
        with pytest.raises(InvalidLocation):
            create_job(engine, pickup=Waypoint(95.0, 46.7, "Nowhere"))

    def test_weight_must_be_positive(self, engine):
        with pytest.raises(ValueError):
            create_job(engine, weight=0)

    def test_unknown_job(self, engine):
        with pytest.raises(JobNotFound):
            engine.get_job(999)


class TestSubmitBid:
    def test_first_bid_moves_job_to_awaiting_bids(self, engine, recorded):
        job = create_job(engine)

        bid_id = engine.submit_bid(job.id, "carrier-a", Decimal("100"), "can load Monday")

        assert engine.get_job(job.id).status == JobStatus.AWAITING_BIDS
        [bid] = engine.list_bids(job.id)
        assert bid.id == bid_id
        assert bid.status == BidStatus.PENDING
        assert bid.notes == "can load Monday"
        status_events = [e for e in recorded if isinstance(e, JobStatusChanged)]
        assert [(e.from_status, e.to_status) for e in status_events] == [
            (JobStatus.OPEN, JobStatus.AWAITING_BIDS)
        ]
        assert any(isinstance(e, BidSubmitted) and e.bid_id == bid_id for e in recorded)

    def test_second_bid_keeps_awaiting_bids(self, engine, recorded):
        job = create_job(engine)
        engine.submit_bid(job.id, "carrier-a", 100)
        engine.submit_bid(job.id, "carrier-b", 90)

        assert engine.get_job(job.id).status == JobStatus.AWAITING_BIDS
        assert len([e for e in recorded if isinstance(e, JobStatusChanged)]) == 1

    def test_duplicate_bid(self, engine):
        job = create_job(engine)
        engine.submit_bid(job.id, "carrier-a", 100)

        with pytest.raises(DuplicateBid):
            engine.submit_bid(job.id, "carrier-a", 95)

        assert len(engine.list_bids(job.id)) == 1

    @pytest.mark.parametrize("price", [0, -5, "abc", float("nan")])
    def test_price_must_be_positive(self, engine, price):
        job = create_job(engine)

        with pytest.raises(ValueError):
            engine.submit_bid(job.id, "carrier-a", price)

        assert engine.get_job(job.id).status == JobStatus.OPEN

    def test_no_bids_after_award(self, engine):
        job_id, _ = _awarded_job(engine)

        with pytest.raises(InvalidTransition):
            engine.submit_bid(job_id, "carrier-c", 80)

    def test_bidding_follows_transition_table(self, engine, monkeypatch):
        job = create_job(engine)
        monkeypatch.setitem(TRANSITIONS, JobStatus.OPEN, frozenset({JobStatus.CANCELLED}))

        with pytest.raises(InvalidTransition):
            engine.submit_bid(job.id, "carrier-a", 100)
        assert engine.list_bids(job.id) == []

    def test_unknown_job(self, engine):
        with pytest.raises(JobNotFound):
            engine.submit_bid(999, "carrier-a", 100)


class TestAcceptBid:
    def test_accept_scenario(self, engine, session_factory):
        job = create_job(engine)
        bid_a = engine.submit_bid(job.id, "carrier-a", 100)
        assert engine.get_job(job.id).status == JobStatus.AWAITING_BIDS
        bid_b = engine.submit_bid(job.id, "carrier-b", 90)

        engine.accept_bid(job.id, bid_b, shipper_id="shipper-1")

        statuses = {bid.id: bid.status for bid in engine.list_bids(job.id)}
        assert statuses == {bid_a: BidStatus.REJECTED, bid_b: BidStatus.ACCEPTED}
        snapshot = engine.get_job(job.id)
        assert snapshot.status == JobStatus.BID_ACCEPTED
        assert snapshot.accepted_bid_id == bid_b
        assert snapshot.carrier_id == "carrier-b"
        assert _accepted_count(session_factory, job.id) == 1

    def test_events_follow_commit(self, engine, recorded):
        job = create_job(engine)
        bid_a = engine.submit_bid(job.id, "carrier-a", 100)
        bid_b = engine.submit_bid(job.id, "carrier-b", 90)
        recorded.clear()

        engine.accept_bid(job.id, bid_b, shipper_id="shipper-1")

        bid_changes = {(e.bid_id, e.to_status) for e in recorded if isinstance(e, BidStatusChanged)}
        assert bid_changes == {(bid_b, BidStatus.ACCEPTED), (bid_a, BidStatus.REJECTED)}
        [status_event] = [e for e in recorded if isinstance(e, JobStatusChanged)]
        assert status_event.to_status == JobStatus.BID_ACCEPTED
        assert status_event.carrier_id == "carrier-b"

    def test_already_rejected_bids_untouched(self, engine):
        job = create_job(engine)
        bid_a = engine.submit_bid(job.id, "carrier-a", 100)
        bid_b = engine.submit_bid(job.id, "carrier-b", 90)
        engine.reject_bid(job.id, bid_a, shipper_id="shipper-1")

        engine.accept_bid(job.id, bid_b, shipper_id="shipper-1")

        statuses = {bid.id: bid.status for bid in engine.list_bids(job.id)}
        assert statuses[bid_a] == BidStatus.REJECTED

    def test_only_owner_can_accept(self, engine):
        job = create_job(engine)
        bid_id = engine.submit_bid(job.id, "carrier-a", 100)

        with pytest.raises(NotJobOwner):
            engine.accept_bid(job.id, bid_id, shipper_id="shipper-2")

        assert engine.get_job(job.id).status == JobStatus.AWAITING_BIDS

    def test_unknown_bid(self, engine):
        job = create_job(engine)
        engine.submit_bid(job.id, "carrier-a", 100)

        with pytest.raises(BidNotFound):
            engine.accept_bid(job.id, 4242, shipper_id="shipper-1")

    def test_bid_from_other_job_not_found(self, engine):
        job_1 = create_job(engine)
        job_2 = create_job(engine)
        foreign = engine.submit_bid(job_2.id, "carrier-a", 100)

        with pytest.raises(BidNotFound):
            engine.accept_bid(job_1.id, foreign, shipper_id="shipper-1")

    def test_rejected_bid_not_pending(self, engine):
        job = create_job(engine)
        bid_id = engine.submit_bid(job.id, "carrier-a", 100)
        engine.reject_bid(job.id, bid_id, shipper_id="shipper-1")

        with pytest.raises(BidNotPending):
            engine.accept_bid(job.id, bid_id, shipper_id="shipper-1")

        job_after = engine.get_job(job.id)
        assert job_after.status == JobStatus.AWAITING_BIDS
        assert job_after.accepted_bid_id is None

    def test_second_accept_is_invalid_transition(self, engine, session_factory):
        job = create_job(engine)
        bid_a = engine.submit_bid(job.id, "carrier-a", 100)
        bid_b = engine.submit_bid(job.id, "carrier-b", 90)
        engine.accept_bid(job.id, bid_a, shipper_id="shipper-1")

        with pytest.raises(InvalidTransition):
            engine.accept_bid(job.id, bid_b, shipper_id="shipper-1")

        assert engine.get_job(job.id).accepted_bid_id == bid_a
        assert _accepted_count(session_factory, job.id) == 1

    def test_accept_on_cancelled_job(self, engine):
        job = create_job(engine)
        bid_id = engine.submit_bid(job.id, "carrier-a", 100)
        engine.cancel(job.id)

        with pytest.raises(InvalidTransition):
            engine.accept_bid(job.id, bid_id, shipper_id="shipper-1")

    def test_accept_follows_transition_table(self, engine, monkeypatch):
        job = create_job(engine)
        bid_id = engine.submit_bid(job.id, "carrier-a", 100)
        without_accept = frozenset({JobStatus.AWAITING_BIDS, JobStatus.CANCELLED})
        monkeypatch.setitem(TRANSITIONS, JobStatus.AWAITING_BIDS, without_accept)

        with pytest.raises(InvalidTransition):
            engine.accept_bid(job.id, bid_id, shipper_id="shipper-1")
        assert engine.list_bids(job.id)[0].status == BidStatus.PENDING


class TestAcceptRace:
    def test_concurrent_accepts_single_winner(self, file_session_factory):
        engine = LifecycleEngine(file_session_factory, EventBus(), default_timeout=10)
        job = create_job(engine)
        bid_a = engine.submit_bid(job.id, "carrier-a", 100)
        bid_b = engine.submit_bid(job.id, "carrier-b", 90)

        barrier = threading.Barrier(2)
        outcomes: dict[int, str] = {}

        def accept(bid_id):
            barrier.wait()
            try:
                engine.accept_bid(job.id, bid_id, shipper_id="shipper-1")
                outcomes[bid_id] = "ok"
            except InvalidTransition:
                outcomes[bid_id] = "invalid_transition"

        threads = [threading.Thread(target=accept, args=(bid,)) for bid in (bid_a, bid_b)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes.values()) == ["invalid_transition", "ok"]
        winner = next(bid for bid, outcome in outcomes.items() if outcome == "ok")
        snapshot = engine.get_job(job.id)
        assert snapshot.status == JobStatus.BID_ACCEPTED
        assert snapshot.accepted_bid_id == winner
        assert _accepted_count(file_session_factory, job.id) == 1

    def test_other_process_accepts_between_read_and_write(self, file_session_factory):
        # Two engines share the database but not their in-process locks
        winner = LifecycleEngine(file_session_factory, EventBus(), default_timeout=10)
        loser_sessions = sessionmaker(**file_session_factory.kw)
        loser = LifecycleEngine(loser_sessions, EventBus(), default_timeout=10, max_retries=3)
        job = create_job(winner)
        bid_a = winner.submit_bid(job.id, "carrier-a", 100)
        bid_b = winner.submit_bid(job.id, "carrier-b", 90)
        interleaved = []

        def accept_first(session, flush_context, instances):
            if not interleaved:
                interleaved.append(bid_a)
                winner.accept_bid(job.id, bid_a, shipper_id="shipper-1")

        event.listen(loser_sessions, "before_flush", accept_first)

        with pytest.raises(InvalidTransition):
            loser.accept_bid(job.id, bid_b, shipper_id="shipper-1")

        assert interleaved == [bid_a]
        snapshot = winner.get_job(job.id)
        assert snapshot.status == JobStatus.BID_ACCEPTED
        assert snapshot.accepted_bid_id == bid_a
        assert _accepted_count(file_session_factory, job.id) == 1
        statuses = {bid.id: bid.status for bid in winner.list_bids(job.id)}
        assert statuses == {bid_a: BidStatus.ACCEPTED, bid_b: BidStatus.REJECTED}

    def test_conflicts_past_retry_budget_time_out(self, file_session_factory):
        other = LifecycleEngine(file_session_factory, EventBus(), default_timeout=10)
        retrying_sessions = sessionmaker(**file_session_factory.kw)
        retrying = LifecycleEngine(retrying_sessions, EventBus(), default_timeout=10, max_retries=1)
        job = create_job(other)
        bid_b = other.submit_bid(job.id, "carrier-b", 90)
        to_reject = [other.submit_bid(job.id, carrier, 100) for carrier in ("carrier-c", "carrier-d")]

        def write_in_between(session, flush_context, instances):
            if to_reject:
                other.reject_bid(job.id, to_reject.pop(0), shipper_id="shipper-1")

        event.listen(retrying_sessions, "before_flush", write_in_between)

        with pytest.raises(OperationTimeout):
            retrying.accept_bid(job.id, bid_b, shipper_id="shipper-1")

        assert to_reject == []
        snapshot = other.get_job(job.id)
        assert snapshot.status == JobStatus.AWAITING_BIDS
        assert snapshot.accepted_bid_id is None
        assert _accepted_count(file_session_factory, job.id) == 0
        statuses = {bid.id: bid.status for bid in other.list_bids(job.id)}
        assert statuses[bid_b] == BidStatus.PENDING


class TestEventOrder:
    def test_next_writer_waits_for_published_events(self, file_session_factory):
        bus = EventBus()
        engine = LifecycleEngine(file_session_factory, bus, default_timeout=10)
        job = create_job(engine)
        bid_id = engine.submit_bid(job.id, "carrier-b", 90)

        publishing = threading.Event()
        statuses = []

        def slow_subscriber(changed):
            if changed.to_status == BidStatus.ACCEPTED:
                publishing.set()
                time.sleep(0.2)

        bus.add_handler(BidStatusChanged.topic, slow_subscriber)
        bus.add_handler(JobStatusChanged.topic, lambda changed: statuses.append(changed.to_status))

        accepter = threading.Thread(
            target=engine.accept_bid, args=(job.id, bid_id), kwargs={"shipper_id": "shipper-1"}
        )
        accepter.start()
        assert publishing.wait(5)
        engine.advance(job.id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)
        accepter.join(5)

        assert statuses == [JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT]


class TestRejectBid:
    def test_reject_leaves_job_status(self, engine):
        job = create_job(engine)
        bid_id = engine.submit_bid(job.id, "carrier-a", 100)

        engine.reject_bid(job.id, bid_id, shipper_id="shipper-1")

        assert engine.list_bids(job.id)[0].status == BidStatus.REJECTED
        assert engine.get_job(job.id).status == JobStatus.AWAITING_BIDS

    def test_reject_twice(self, engine):
        job = create_job(engine)
        bid_id = engine.submit_bid(job.id, "carrier-a", 100)
        engine.reject_bid(job.id, bid_id, shipper_id="shipper-1")

        with pytest.raises(BidNotPending):
            engine.reject_bid(job.id, bid_id, shipper_id="shipper-1")

    def test_reject_accepted_bid(self, engine):
        job_id, bid_id = _awarded_job(engine)

        with pytest.raises(BidNotPending):
            engine.reject_bid(job_id, bid_id, shipper_id="shipper-1")


class TestAdvance:
    def test_full_trip(self, engine):
        job_id, _ = _awarded_job(engine)

        engine.advance(job_id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT, carrier_id="carrier-b")
        engine.advance(job_id, "in_transit", "completed", carrier_id="carrier-b")

        assert engine.get_job(job_id).status == JobStatus.COMPLETED

    def test_wrong_expected_from(self, engine):
        job_id, _ = _awarded_job(engine)

        with pytest.raises(InvalidTransition):
            engine.advance(job_id, JobStatus.IN_TRANSIT, JobStatus.COMPLETED)

        assert engine.get_job(job_id).status == JobStatus.BID_ACCEPTED

    def test_advance_cannot_accept_or_cancel(self, engine):
        job = create_job(engine)

        with pytest.raises(InvalidTransition):
            engine.advance(job.id, JobStatus.OPEN, JobStatus.BID_ACCEPTED)
        with pytest.raises(InvalidTransition):
            engine.advance(job.id, JobStatus.OPEN, JobStatus.CANCELLED)

    def test_advance_follows_transition_table(self, engine, monkeypatch):
        job_id, _ = _awarded_job(engine)
        monkeypatch.setitem(TRANSITIONS, JobStatus.BID_ACCEPTED, frozenset({JobStatus.CANCELLED}))

        with pytest.raises(InvalidTransition):
            engine.advance(job_id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)
        assert engine.get_job(job_id).status == JobStatus.BID_ACCEPTED

    def test_only_assigned_carrier(self, engine):
        job_id, _ = _awarded_job(engine)

        with pytest.raises(NotJobOwner):
            engine.advance(job_id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT, carrier_id="carrier-x")

        assert engine.get_job(job_id).status == JobStatus.BID_ACCEPTED

    def test_active_jobs_for_carrier(self, engine):
        job_id, _ = _awarded_job(engine)
        create_job(engine)

        assert [j.id for j in engine.active_jobs_for_carrier("carrier-b")] == [job_id]
        engine.advance(job_id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)
        assert [j.status for j in engine.active_jobs_for_carrier("carrier-b")] == [JobStatus.IN_TRANSIT]
        engine.advance(job_id, JobStatus.IN_TRANSIT, JobStatus.COMPLETED)
        assert engine.active_jobs_for_carrier("carrier-b") == []


class TestCancel:
    @pytest.mark.parametrize("steps", [0, 1, 2, 3])
    def test_cancel_from_any_non_terminal(self, engine, steps):
        job = create_job(engine)
        if steps >= 1:
            bid_id = engine.submit_bid(job.id, "carrier-b", 90)
        if steps >= 2:
            engine.accept_bid(job.id, bid_id, shipper_id="shipper-1")
        if steps >= 3:
            engine.advance(job.id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)

        engine.cancel(job.id, actor_id="shipper-1")

        assert engine.get_job(job.id).status == JobStatus.CANCELLED

    def test_cancel_is_terminal(self, engine):
        job = create_job(engine)
        engine.cancel(job.id)

        with pytest.raises(InvalidTransition):
            engine.cancel(job.id)

    def test_cancel_keeps_bids(self, engine):
        job = create_job(engine)
        engine.submit_bid(job.id, "carrier-a", 100)
        job_id, bid_id = job.id, engine.submit_bid(job.id, "carrier-b", 90)

        engine.cancel(job_id)

        assert {b.status for b in engine.list_bids(job_id)} == {BidStatus.PENDING}
        assert bid_id in {b.id for b in engine.list_bids(job_id)}

    def test_cancel_completed_job(self, engine):
        job_id, _ = _awarded_job(engine)
        engine.advance(job_id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)
        engine.advance(job_id, JobStatus.IN_TRANSIT, JobStatus.COMPLETED)

        with pytest.raises(InvalidTransition):
            engine.cancel(job_id)

    def test_stranger_cannot_cancel(self, engine):
        job = create_job(engine)

        with pytest.raises(NotJobOwner):
            engine.cancel(job.id, actor_id="shipper-2")

        engine.cancel(job.id, actor_id="ops-1", as_operator=True)
        assert engine.get_job(job.id).status == JobStatus.CANCELLED


class TestTimeout:
    def test_lock_wait_times_out(self, engine):
        job = create_job(engine)

        with engine._locks.hold(job.id):
            with pytest.raises(OperationTimeout):
                engine.cancel(job.id, timeout=0.05)

        assert engine.get_job(job.id).status == JobStatus.OPEN
        assert len(engine._locks) == 0

    def test_job_locks_do_not_accumulate(self, engine):
        for _ in range(200):
            job = create_job(engine)
            engine.cancel(job.id)

        assert len(engine._locks) == 0


class TestRating:
    def _completed(self, engine):
        job_id, _ = _awarded_job(engine)
        engine.advance(job_id, JobStatus.BID_ACCEPTED, JobStatus.IN_TRANSIT)
        engine.advance(job_id, JobStatus.IN_TRANSIT, JobStatus.COMPLETED)
        return job_id

    def test_rate_completed_job(self, engine):
        job_id = self._completed(engine)

        engine.rate_job(job_id, shipper_id="shipper-1", score=4, comment="on time")

        assert engine.carrier_rating("carrier-b") == {"carrier_id": "carrier-b", "count": 1, "average": 4.0}

    def test_rate_once(self, engine):
        job_id = self._completed(engine)
        engine.rate_job(job_id, shipper_id="shipper-1", score=5)

        with pytest.raises(DuplicateRating):
            engine.rate_job(job_id, shipper_id="shipper-1", score=1)

    def test_rate_requires_completion(self, engine):
        job_id, _ = _awarded_job(engine)

        with pytest.raises(InvalidTransition):
            engine.rate_job(job_id, shipper_id="shipper-1", score=5)

    def test_rate_requires_owner(self, engine):
        job_id = self._completed(engine)

        with pytest.raises(NotJobOwner):
            engine.rate_job(job_id, shipper_id="shipper-2", score=5)

    @pytest.mark.parametrize("score", [0, 6, 3.5, True])
    def test_score_range(self, engine, score):
        with pytest.raises(ValueError):
            engine.rate_job(1, shipper_id="shipper-1", score=score)

    def test_unrated_carrier(self, engine):
        assert engine.carrier_rating("carrier-q")["average"] is None

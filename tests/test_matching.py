"""
Tests for the daily matching engine against a real (temporary) SQLite store.
Covers:
- The reference scenarios: full grouping, no overlap, capacity, forced match, empty date
- Dry runs leave storage untouched and are repeatable
- Ride commits are all-or-nothing and never double-book an opt-in
- Scorer, resolver and gateway failures stay scoped
- Participant accept/decline workflow
"""
from types import SimpleNamespace

import pytest
from sqlalchemy import false
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from db import get_session
from errors import AuthorizationError, CommitConflict, InputError, LocationResolutionError, ScorerError
from helpers import DAY, NEAR_A, NEAR_B, NEAR_C, SERVICE, RecordingGateway, make_engine, make_opt_in
from locations import DatabaseLocationResolver
import matching
from models import OptIn, OptInStatus, ParticipantStatus, Ride, RideParticipant, RideStatus, Role
from schemas import MatchOptions, ParticipantRef, ProposedGrouping, RouteEstimate
from scoring import RuleBasedScorer
import store


def status_of(opt_in_id):
    return store.get_opt_in(opt_in_id).status


def all_rides():
    with get_session() as session:
        return session.exec(select(Ride)).all()


def active_claims():
    with get_session() as session:
        return session.exec(
            select(RideParticipant).where(RideParticipant.active_opt_in_id != None)  # noqa: E711
        ).all()


def scenario_one():
    driver = make_opt_in("Dina", Role.DRIVER, NEAR_A, "08:30", "09:30", capacity=4)
    r1 = make_opt_in("Rafi", Role.RIDER, NEAR_B, "08:45", "09:15")
    r2 = make_opt_in("Sara", Role.RIDER, NEAR_C, "08:00", "08:40")
    return driver, r1, r2


class FixedConfidenceScorer:
    """Rule-based groupings re-labelled with a fixed confidence."""

    def __init__(self, settings, confidence):
        self.inner = RuleBasedScorer(settings)
        self.confidence = confidence

    def propose(self, target, candidates):
        return [g.model_copy(update={"confidence": self.confidence}) for g in self.inner.propose(target, candidates)]


class FailingScorer:
    def propose(self, target, candidates):
        raise ScorerError("scorer timed out after 10s")


class ScriptedScorer:
    def __init__(self, groupings):
        self.groupings = groupings

    def propose(self, target, candidates):
        return self.groupings


def grouping_of(*opt_ins, confidence=90.0):
    return ProposedGrouping(
        participants=[
            ParticipantRef(opt_in_id=o.id, user_id=o.user_id, role=o.role, pickup_location_id=o.pickup_location_id)
            for o in opt_ins
        ],
        route=RouteEstimate(pickup_order=[o.pickup_location_id for o in opt_ins], estimated_total_time=20,
                            estimated_cost_per_person=40.0),
        confidence=confidence,
        reasoning="scripted",
    )


# ────────────────────────── reference scenarios ─────────────────────────────

def test_driver_and_two_riders_share_one_ride():
    driver, r1, r2 = scenario_one()
    gateway = RecordingGateway()
    result = make_engine(gateway=gateway).match_for_date("2025-06-18", SERVICE)

    assert result.success
    assert result.matched == 3 and result.failed == 0
    assert len(result.rides) == 1
    ride = result.rides[0]
    assert ride.driver_user_id == driver.user_id
    assert sorted(ride.participant_opt_in_ids) == sorted([driver.id, r1.id, r2.id])
    assert ride.pickup_order[0] == driver.pickup_location_id
    assert ride.confidence >= 70

    rides = all_rides()
    assert len(rides) == 1 and rides[0].status == RideStatus.PROPOSED
    participants = store.ride_participants(rides[0].id)
    roles = {p.user_id: p.role for p in participants}
    assert roles[driver.user_id] == Role.DRIVER
    assert roles[r1.user_id] == roles[r2.user_id] == Role.RIDER
    assert all(p.status == ParticipantStatus.PENDING_ACCEPTANCE for p in participants)
    assert all(p.confirmation_deadline is not None for p in participants)
    assert {status_of(o.id) for o in (driver, r1, r2)} == {OptInStatus.MATCHED}
    assert len(gateway.events) == 1 and gateway.events[0].ride_id == rides[0].id


def test_rider_without_overlapping_driver_stays_pending():
    make_opt_in("Dina", Role.DRIVER, NEAR_A, "08:30", "09:30")
    late = make_opt_in("Late", Role.RIDER, NEAR_B, "12:00", "12:30")
    result = make_engine().match_for_date(DAY, SERVICE)

    assert result.rides == []
    assert status_of(late.id) == OptInStatus.PENDING_MATCH
    detail = next(d for d in result.details if d.opt_in_id == late.id)
    assert detail.status == "failed"


@pytest.mark.parametrize("start, end, expected", [
    ("09:40", "10:30", OptInStatus.PENDING_MATCH),  # starts 10 min after the driver's window
    ("09:31", "10:00", OptInStatus.PENDING_MATCH),  # 1 min gap
    ("09:30", "10:00", OptInStatus.PENDING_MATCH),  # touches the end, no shared minute
    ("09:20", "10:30", OptInStatus.MATCHED),        # 10 min shared
    ("09:15", "10:00", OptInStatus.MATCHED),        # exactly 15 min shared
    ("08:00", "08:31", OptInStatus.MATCHED),        # 1 min shared at the start
])
def test_rider_window_must_meet_drivers(start, end, expected):
    driver = make_opt_in("Dina", Role.DRIVER, NEAR_A, "08:30", "09:30")
    rider = make_opt_in("Rafi", Role.RIDER, NEAR_B, start, end)
    result = make_engine().match_for_date(DAY, SERVICE)

    assert status_of(rider.id) == expected
    assert status_of(driver.id) == expected
    assert len(result.rides) == (1 if expected == OptInStatus.MATCHED else 0)


def test_gapped_rider_left_out_of_driver_group():
    driver = make_opt_in("Dina", Role.DRIVER, NEAR_A, "08:30", "09:30")
    near = make_opt_in("Rafi", Role.RIDER, NEAR_B, "08:45", "09:15")
    gapped = make_opt_in("Gap", Role.RIDER, NEAR_C, "09:40", "10:30")
    result = make_engine().match_for_date(DAY, SERVICE)

    assert len(result.rides) == 1
    assert sorted(result.rides[0].participant_opt_in_ids) == sorted([driver.id, near.id])
    assert status_of(gapped.id) == OptInStatus.PENDING_MATCH


def test_scripted_gapped_rider_is_discarded():
    driver = make_opt_in("Dina", Role.DRIVER, NEAR_A, "08:30", "09:30")
    gapped = make_opt_in("Gap", Role.RIDER, NEAR_B, "09:40", "10:30")
    engine = make_engine(scorer=ScriptedScorer([grouping_of(driver, gapped)]))
    result = engine.match_for_date(DAY, SERVICE, MatchOptions(force_match=True))

    assert result.rides == [] and all_rides() == []
    assert {status_of(o.id) for o in (driver, gapped)} == {OptInStatus.PENDING_MATCH}


def test_capacity_one_driver_takes_at_most_one_rider():
    driver = make_opt_in("Solo", Role.DRIVER, NEAR_A, capacity=1)
    r1 = make_opt_in("R1", Role.RIDER, NEAR_B)
    r2 = make_opt_in("R2", Role.RIDER, NEAR_C)
    result = make_engine().match_for_date(DAY, SERVICE)

    assert len(result.rides) == 1
    assert len(result.rides[0].participant_opt_in_ids) == 2
    statuses = [status_of(r.id) for r in (r1, r2)]
    assert statuses.count(OptInStatus.MATCHED) == 1
    assert statuses.count(OptInStatus.PENDING_MATCH) == 1
    assert status_of(driver.id) == OptInStatus.MATCHED


def test_oversized_proposal_is_discarded():
    driver = make_opt_in("Solo", Role.DRIVER, NEAR_A, capacity=1)
    r1 = make_opt_in("R1", Role.RIDER, NEAR_B)
    r2 = make_opt_in("R2", Role.RIDER, NEAR_C)
    engine = make_engine(scorer=ScriptedScorer([grouping_of(driver, r1, r2)]))
    result = engine.match_for_date(DAY, SERVICE)

    assert result.rides == [] and all_rides() == []
    assert {status_of(o.id) for o in (driver, r1, r2)} == {OptInStatus.PENDING_MATCH}


def test_two_driver_proposal_is_discarded():
    d1 = make_opt_in("D1", Role.DRIVER, NEAR_A)
    d2 = make_opt_in("D2", Role.DRIVER, NEAR_B)
    r1 = make_opt_in("R1", Role.RIDER, NEAR_C)
    engine = make_engine(scorer=ScriptedScorer([grouping_of(d1, d2, r1)]))
    assert engine.match_for_date(DAY, SERVICE).rides == []


def test_force_match_bypasses_threshold():
    scenario_one()
    engine = make_engine()
    engine.scorer = FixedConfidenceScorer(engine.settings, 40)
    result = engine.match_for_date(DAY, SERVICE, MatchOptions(dry_run=True))
    assert result.rides == []
    assert any("below threshold" in (d.reason or "") for d in result.details)

    forced = engine.match_for_date(DAY, SERVICE, MatchOptions(force_match=True))
    assert len(forced.rides) == 1
    assert forced.rides[0].confidence == 40
    assert len(all_rides()) == 1


def test_force_match_still_enforces_roles():
    r1 = make_opt_in("R1", Role.RIDER, NEAR_A)
    r2 = make_opt_in("R2", Role.RIDER, NEAR_B)
    engine = make_engine(scorer=ScriptedScorer([grouping_of(r1, r2, confidence=10)]))
    result = engine.match_for_date(DAY, SERVICE, MatchOptions(force_match=True))
    assert result.rides == []


def test_empty_date_is_a_successful_no_op():
    result = make_engine().match_for_date("2025-06-19", SERVICE)
    assert result.success
    assert (result.processed, result.matched, result.failed) == (0, 0, 0)
    assert result.rides == [] and result.errors == []


def test_bad_date_is_rejected():
    with pytest.raises(InputError):
        make_engine().match_for_date("18/06/2025", SERVICE)


@pytest.mark.parametrize("ctx", [None, {"actor": "test"}, "service"])
def test_matching_requires_service_context(ctx):
    with pytest.raises(AuthorizationError):
        make_engine().match_for_date(DAY, ctx)


# ────────────────────────── dry run ─────────────────────────────────────────

def test_dry_run_writes_nothing_and_repeats():
    opt_ins = scenario_one()
    engine = make_engine()
    first = engine.match_for_date(DAY, SERVICE, MatchOptions(dry_run=True))
    second = engine.match_for_date(DAY, SERVICE, MatchOptions(dry_run=True))

    assert first.dry_run and len(first.rides) == 1
    assert first.rides[0].id is None
    assert first.model_dump() == second.model_dump()
    assert all_rides() == []
    assert {status_of(o.id) for o in opt_ins} == {OptInStatus.PENDING_MATCH}
    assert engine.gateway.events == []


# ────────────────────────── commit safety ───────────────────────────────────

def test_failed_participant_write_rolls_back_everything(monkeypatch):
    opt_ins = scenario_one()

    def broken(*args, **kwargs):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(store, "_insert_participants", broken)
    result = make_engine().match_for_date(DAY, SERVICE)

    assert result.rides == []
    assert result.retryable
    assert all_rides() == []
    assert active_claims() == []
    assert {status_of(o.id) for o in opt_ins} == {OptInStatus.PENDING_MATCH}


def test_commit_conflict_leaves_no_ride():
    driver, r1, r2 = scenario_one()
    store.commit_grouping(DAY, grouping_of(driver, r1), None)
    with pytest.raises(CommitConflict):
        store.commit_grouping(DAY, grouping_of(driver, r2), None)
    assert len(all_rides()) == 1
    assert status_of(r2.id) == OptInStatus.PENDING_MATCH


def test_opt_in_cancelled_mid_run_is_not_claimed():
    driver, r1, r2 = scenario_one()
    store.cancel_opt_in(r2.id)
    with pytest.raises(CommitConflict):
        store.commit_grouping(DAY, grouping_of(driver, r1, r2), None)
    assert all_rides() == []
    assert status_of(driver.id) == OptInStatus.PENDING_MATCH


def test_storage_rejects_second_live_opt_in_for_a_day():
    first = make_opt_in("Rafi", Role.RIDER, NEAR_B)
    duplicate = OptIn(user_id=first.user_id, commute_date=DAY, time_window_start=first.time_window_start,
                      time_window_end=first.time_window_end, pickup_location_id=first.pickup_location_id)
    with get_session() as session:
        session.add(duplicate)
        with pytest.raises(IntegrityError):
            session.commit()


def test_racing_opt_in_maps_to_input_error(monkeypatch):
    first = make_opt_in("Rafi", Role.RIDER, NEAR_B)
    # the duplicate read finds nothing, as when another process inserts in between
    with monkeypatch.context() as m:
        m.setattr(store, "select", lambda model: select(model).where(false()))
        with pytest.raises(InputError, match="already opted in"):
            store.create_opt_in(first.user_id, DAY, "07:00", "08:00", first.pickup_location_id)
    assert len(store.pending_for_date(DAY)) == 1


def test_cancelled_opt_in_frees_the_day():
    first = make_opt_in("Rafi", Role.RIDER, NEAR_B)
    store.cancel_opt_in(first.id)
    again = store.create_opt_in(first.user_id, DAY, "07:00", "08:00", first.pickup_location_id)
    assert again.status == OptInStatus.PENDING_MATCH


def test_no_opt_in_in_two_rides():
    make_opt_in("D1", Role.DRIVER, NEAR_A, capacity=2)
    make_opt_in("D2", Role.DRIVER, NEAR_B, capacity=2)
    for i, point in enumerate([NEAR_A, NEAR_B, NEAR_C, NEAR_A, NEAR_B]):
        make_opt_in(f"R{i}", Role.RIDER, point)
    engine = make_engine()
    engine.match_for_date(DAY, SERVICE)
    again = engine.match_for_date(DAY, SERVICE)

    claims = [c.active_opt_in_id for c in active_claims()]
    assert len(claims) == len(set(claims))
    assert again.rides == []
    for ride in all_rides():
        participants = store.ride_participants(ride.id)
        assert sum(p.role == Role.DRIVER for p in participants) == 1
        assert len(participants) - 1 <= 2


def test_notification_failure_keeps_ride():
    opt_ins = scenario_one()
    result = make_engine(gateway=RecordingGateway(fail=True)).match_for_date(DAY, SERVICE)
    assert len(result.rides) == 1
    assert len(all_rides()) == 1
    assert {status_of(o.id) for o in opt_ins} == {OptInStatus.MATCHED}


# ────────────────────────── scoped failures ─────────────────────────────────

def test_scorer_failure_is_retryable_and_writes_nothing():
    opt_ins = scenario_one()
    result = make_engine(scorer=FailingScorer()).match_for_date(DAY, SERVICE)
    assert result.retryable
    assert result.failed == 3 and result.matched == 0
    assert not result.success
    assert all_rides() == []
    assert {status_of(o.id) for o in opt_ins} == {OptInStatus.PENDING_MATCH}


def test_unresolvable_location_sits_out():
    driver, r1, r2 = scenario_one()

    class Resolver:
        inner = DatabaseLocationResolver()

        def resolve(self, location_id):
            if location_id == r2.pickup_location_id:
                raise LocationResolutionError("geocoder offline")
            return self.inner.resolve(location_id)

    result = make_engine(resolver=Resolver()).match_for_date(DAY, SERVICE)
    assert result.retryable
    assert len(result.rides) == 1
    assert r2.id not in result.rides[0].participant_opt_in_ids
    assert status_of(r2.id) == OptInStatus.PENDING_MATCH


def test_budget_exhaustion_returns_partial_result(monkeypatch):
    scenario_one()
    ticks = iter(range(0, 10000, 100))
    monkeypatch.setattr(matching, "time", SimpleNamespace(monotonic=lambda: next(ticks)))
    result = make_engine().match_for_date(DAY, SERVICE, MatchOptions(budget_seconds=1))
    assert result.partial
    assert result.skipped == 3
    assert all_rides() == []


# ────────────────────────── single opt-in ───────────────────────────────────

def test_single_opt_in_match_includes_target():
    driver, r1, r2 = scenario_one()
    result = make_engine().match_for_single_opt_in(r2.id, SERVICE)
    assert len(result.rides) == 1
    assert r2.id in result.rides[0].participant_opt_in_ids
    assert driver.id in result.rides[0].participant_opt_in_ids


def test_single_opt_in_already_matched_is_skipped():
    driver, r1, r2 = scenario_one()
    engine = make_engine()
    engine.match_for_date(DAY, SERVICE)
    result = engine.match_for_single_opt_in(r1.id, SERVICE)
    assert result.skipped == 1 and result.rides == []


# ────────────────────────── ride responses ──────────────────────────────────

def test_everyone_accepting_confirms_ride():
    opt_ins = scenario_one()
    ride_id = make_engine().match_for_date(DAY, SERVICE).rides[0].id
    for o in opt_ins:
        ride = store.respond_to_ride(ride_id, o.user_id, accept=True)
    assert ride.status == RideStatus.CONFIRMED


def test_decline_cancels_ride_and_reopens_others():
    driver, r1, r2 = scenario_one()
    engine = make_engine()
    ride_id = engine.match_for_date(DAY, SERVICE).rides[0].id

    ride = store.respond_to_ride(ride_id, r1.user_id, accept=False)
    assert ride.status == RideStatus.CANCELLED
    assert status_of(r1.id) == OptInStatus.CANCELLED
    assert status_of(driver.id) == OptInStatus.PENDING_MATCH
    assert status_of(r2.id) == OptInStatus.PENDING_MATCH
    assert active_claims() == []

    rematch = engine.match_for_date(DAY, SERVICE)
    assert len(rematch.rides) == 1
    assert sorted(rematch.rides[0].participant_opt_in_ids) == sorted([driver.id, r2.id])


def test_second_response_is_rejected():
    opt_ins = scenario_one()
    ride_id = make_engine().match_for_date(DAY, SERVICE).rides[0].id
    store.respond_to_ride(ride_id, opt_ins[0].user_id, accept=True)
    with pytest.raises(InputError):
        store.respond_to_ride(ride_id, opt_ins[0].user_id, accept=True)

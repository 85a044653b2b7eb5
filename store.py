"""Opt-in store and ride store: every read and write the matching core makes."""
import logging
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import select

from db import get_session, get_lock
from errors import CommitConflict, InputError, NotFound, StorageUnavailable, StorageWriteError
from geo import ensure_coordinates
from models import (
    OptIn,
    OptInStatus,
    ParticipantStatus,
    PickupLocation,
    Ride,
    RideParticipant,
    RideStatus,
    Role,
    ScheduledOptIn,
    User,
)
from schemas import ProposedGrouping

logger = logging.getLogger(__name__)

DAYS_OF_WEEK = ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY")


def parse_commute_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise InputError("commute date is required")
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InputError(f"invalid commute date {value!r}, expected YYYY-MM-DD")


def parse_clock(value) -> time:
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise InputError(f"invalid time {value!r}, expected HH:MM")


# ────────────────────────── users & locations ───────────────────────────────

def create_user(full_name: str, default_role: str = Role.RIDER, vehicle_capacity: Optional[int] = None,
                email: Optional[str] = None) -> User:
    if default_role not in (Role.DRIVER, Role.RIDER):
        raise InputError(f"unknown role {default_role!r}")
    if vehicle_capacity is not None and (isinstance(vehicle_capacity, bool) or not isinstance(vehicle_capacity, int)):
        raise InputError(f"vehicle capacity must be an integer, got {vehicle_capacity!r}")
    if default_role == Role.DRIVER and (vehicle_capacity is None or vehicle_capacity < 1):
        raise InputError("drivers need a vehicle capacity of at least 1")
    with get_session() as session:
        user = User(full_name=full_name, default_role=default_role, vehicle_capacity=vehicle_capacity, email=email)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user


def get_user(user_id: int) -> User:
    with get_session() as session:
        user = session.get(User, user_id)
    if user is None:
        raise NotFound(f"user {user_id} not found")
    return user


def users_by_id(user_ids: Iterable[int]) -> Dict[int, User]:
    ids = set(user_ids)
    if not ids:
        return {}
    with get_session() as session:
        rows = session.exec(select(User).where(User.id.in_(ids))).all()
    return {u.id: u for u in rows}


def create_pickup_location(user_id: int, name: str, lat: float, lng: float, description: str = "",
                           is_default: bool = False) -> PickupLocation:
    ensure_coordinates(lat, lng)
    get_user(user_id)
    with get_session() as session:
        if is_default:
            for other in session.exec(select(PickupLocation).where(PickupLocation.user_id == user_id)).all():
                other.is_default = False
                session.add(other)
        loc = PickupLocation(user_id=user_id, name=name, description=description, lat=lat, lng=lng,
                             is_default=is_default)
        session.add(loc)
        session.commit()
        session.refresh(loc)
        return loc


# ────────────────────────── opt-ins ─────────────────────────────────────────

def create_opt_in(user_id: int, commute_date, time_window_start, time_window_end, pickup_location_id: int,
                  role: Optional[str] = None, is_automatic: bool = False) -> OptIn:
    commute_date = parse_commute_date(commute_date)
    start, end = parse_clock(time_window_start), parse_clock(time_window_end)
    if start >= end:
        raise InputError("time window must end after it starts")
    user = get_user(user_id)
    role = role or user.default_role
    if role not in (Role.DRIVER, Role.RIDER):
        raise InputError(f"unknown role {role!r}")
    if role == Role.DRIVER and not user.vehicle_capacity:
        raise InputError("user has no vehicle capacity on file and cannot opt in as a driver")

    with get_lock(f"opt-ins:{user_id}"):
        with get_session() as session:
            loc = session.get(PickupLocation, pickup_location_id)
            if loc is None or loc.user_id != user_id:
                raise InputError(f"pickup location {pickup_location_id} does not belong to user {user_id}")
            existing = session.exec(
                select(OptIn).where(
                    OptIn.user_id == user_id,
                    OptIn.commute_date == commute_date,
                    OptIn.status != OptInStatus.CANCELLED,
                )
            ).first()
            if existing is not None:
                raise InputError(f"user {user_id} already opted in for {commute_date.isoformat()}")
            opt_in = OptIn(
                user_id=user_id,
                role=role,
                commute_date=commute_date,
                time_window_start=start,
                time_window_end=end,
                pickup_location_id=pickup_location_id,
                is_automatic=is_automatic,
            )
            session.add(opt_in)
            try:
                session.commit()
            except IntegrityError:
                # another process won the race for this user and day
                session.rollback()
                raise InputError(f"user {user_id} already opted in for {commute_date.isoformat()}")
            session.refresh(opt_in)
            return opt_in


def get_opt_in(opt_in_id: int) -> OptIn:
    with get_session() as session:
        opt_in = session.get(OptIn, opt_in_id)
    if opt_in is None:
        raise NotFound(f"opt-in {opt_in_id} not found")
    return opt_in


def cancel_opt_in(opt_in_id: int) -> OptIn:
    opt_in = get_opt_in(opt_in_id)
    with get_lock(f"opt-ins:{opt_in.user_id}"):
        with get_session() as session:
            result = session.execute(
                update(OptIn)
                .where(OptIn.id == opt_in_id, OptIn.status == OptInStatus.PENDING_MATCH)
                .values(status=OptInStatus.CANCELLED)
            )
            if result.rowcount != 1:
                session.rollback()
                raise InputError(f"opt-in {opt_in_id} is not pending and cannot be cancelled")
            session.commit()
    return get_opt_in(opt_in_id)


def pending_for_date(commute_date: date) -> List[OptIn]:
    try:
        with get_session() as session:
            return list(session.exec(
                select(OptIn)
                .where(OptIn.commute_date == commute_date, OptIn.status == OptInStatus.PENDING_MATCH)
                .order_by(OptIn.created_at, OptIn.id)
            ).all())
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"could not load opt-ins for {commute_date}: {exc}") from exc


def retry_candidates(commute_date: date, max_retries: int) -> List[OptIn]:
    try:
        with get_session() as session:
            return list(session.exec(
                select(OptIn)
                .where(
                    OptIn.commute_date == commute_date,
                    OptIn.status == OptInStatus.PENDING_MATCH,
                    OptIn.retry_count < max_retries,
                )
                .order_by(OptIn.created_at, OptIn.id)
            ).all())
    except SQLAlchemyError as exc:
        raise StorageUnavailable(f"could not load retry candidates for {commute_date}: {exc}") from exc


def mark_retry_attempt(opt_in_id: int, now: datetime) -> int:
    """Bump retry_count and stamp last_retry_at; returns the new count."""
    try:
        with get_session() as session:
            result = session.execute(
                update(OptIn)
                .where(OptIn.id == opt_in_id, OptIn.status == OptInStatus.PENDING_MATCH)
                .values(retry_count=OptIn.retry_count + 1, last_retry_at=now)
            )
            if result.rowcount != 1:
                session.rollback()
                raise CommitConflict(f"opt-in {opt_in_id} is no longer pending")
            session.commit()
            return session.get(OptIn, opt_in_id).retry_count
    except SQLAlchemyError as exc:
        raise StorageWriteError(f"could not record retry for opt-in {opt_in_id}: {exc}") from exc


def cancel_exhausted(opt_in_id: int) -> bool:
    with get_session() as session:
        result = session.execute(
            update(OptIn)
            .where(OptIn.id == opt_in_id, OptIn.status == OptInStatus.PENDING_MATCH)
            .values(status=OptInStatus.CANCELLED)
        )
        session.commit()
        return result.rowcount == 1


# ────────────────────────── rides ───────────────────────────────────────────

def _insert_participants(session, ride: Ride, grouping: ProposedGrouping, deadline: datetime):
    for p in grouping.participants:
        session.add(RideParticipant(
            ride_id=ride.id,
            user_id=p.user_id,
            opt_in_id=p.opt_in_id,
            pickup_location_id=p.pickup_location_id,
            role=p.role,
            confirmation_deadline=deadline,
            active_opt_in_id=p.opt_in_id,
        ))
    session.flush()


def commit_grouping(commute_date: date, grouping: ProposedGrouping, confirmation_deadline: datetime) -> Ride:
    """Create the ride, its participants and flip the opt-ins to MATCHED as one unit.

    The status flip only touches rows still PENDING_MATCH; if any opt-in was
    claimed or cancelled meanwhile, or another ride already holds an active
    participation for it, the whole write is rolled back and CommitConflict
    raised. Nothing of the ride survives a failed commit.
    """
    driver = next(p for p in grouping.participants if p.role == Role.DRIVER)
    opt_in_ids = grouping.opt_in_ids
    with get_session() as session:
        try:
            ride = Ride(
                commute_date=commute_date,
                driver_user_id=driver.user_id,
                status=RideStatus.PROPOSED,
                pickup_order=",".join(str(i) for i in grouping.route.pickup_order),
                estimated_total_time=grouping.route.estimated_total_time,
                estimated_distance_km=grouping.route.estimated_distance_km,
                estimated_cost_per_person=grouping.route.estimated_cost_per_person,
                confidence=grouping.confidence,
                reasoning=grouping.reasoning,
            )
            session.add(ride)
            session.flush()
            _insert_participants(session, ride, grouping, confirmation_deadline)
            claimed = session.execute(
                update(OptIn)
                .where(OptIn.id.in_(opt_in_ids), OptIn.status == OptInStatus.PENDING_MATCH)
                .values(status=OptInStatus.MATCHED)
            ).rowcount
            if claimed != len(opt_in_ids):
                raise CommitConflict(f"only {claimed} of {len(opt_in_ids)} opt-ins were still pending")
            session.commit()
        except CommitConflict:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            raise CommitConflict("an opt-in in this grouping already belongs to another ride") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageWriteError(f"ride write failed: {exc}") from exc
    return ride


def get_ride(ride_id: int) -> Ride:
    with get_session() as session:
        ride = session.get(Ride, ride_id)
    if ride is None:
        raise NotFound(f"ride {ride_id} not found")
    return ride


def ride_participants(ride_id: int) -> List[RideParticipant]:
    with get_session() as session:
        return list(session.exec(
            select(RideParticipant).where(RideParticipant.ride_id == ride_id).order_by(RideParticipant.id)
        ).all())


def respond_to_ride(ride_id: int, user_id: int, accept: bool) -> Ride:
    """Record a participant's answer. One decline cancels the ride, releases
    every claim and puts the other participants back into the matching pool."""
    with get_lock(f"ride:{ride_id}"):
        with get_session() as session:
            ride = session.get(Ride, ride_id)
            if ride is None:
                raise NotFound(f"ride {ride_id} not found")
            participants = session.exec(
                select(RideParticipant).where(RideParticipant.ride_id == ride_id)
            ).all()
            me = next((p for p in participants if p.user_id == user_id), None)
            if me is None:
                raise NotFound(f"user {user_id} is not part of ride {ride_id}")
            if ride.status != RideStatus.PROPOSED or me.status != ParticipantStatus.PENDING_ACCEPTANCE:
                raise InputError("ride is no longer awaiting this participant's response")

            if accept:
                me.status = ParticipantStatus.ACCEPTED
                if all(p.status == ParticipantStatus.ACCEPTED for p in participants):
                    ride.status = RideStatus.CONFIRMED
            else:
                me.status = ParticipantStatus.DECLINED
                ride.status = RideStatus.CANCELLED
                for p in participants:
                    p.active_opt_in_id = None
                    opt_in = session.get(OptIn, p.opt_in_id)
                    if opt_in is not None and opt_in.status == OptInStatus.MATCHED:
                        opt_in.status = OptInStatus.CANCELLED if p is me else OptInStatus.PENDING_MATCH
                        session.add(opt_in)
                    session.add(p)
            session.add(ride)
            session.commit()
            logger.info("ride %s: user %s %s, ride now %s", ride_id, user_id,
                        "accepted" if accept else "declined", ride.status)
            return ride


# ────────────────────────── recurring schedules ─────────────────────────────

def create_scheduled_opt_in(user_id: int, day_of_week: str, start_time, pickup_location_id: int) -> ScheduledOptIn:
    day = (day_of_week or "").upper()
    if day not in DAYS_OF_WEEK:
        raise InputError(f"unknown day of week {day_of_week!r}")
    get_user(user_id)
    with get_session() as session:
        loc = session.get(PickupLocation, pickup_location_id)
        if loc is None or loc.user_id != user_id:
            raise InputError(f"pickup location {pickup_location_id} does not belong to user {user_id}")
        sched = ScheduledOptIn(user_id=user_id, day_of_week=day, start_time=parse_clock(start_time),
                               pickup_location_id=pickup_location_id)
        session.add(sched)
        session.commit()
        session.refresh(sched)
        return sched


def active_schedules(day_of_week: str) -> List[ScheduledOptIn]:
    with get_session() as session:
        return list(session.exec(
            select(ScheduledOptIn)
            .where(ScheduledOptIn.day_of_week == day_of_week, ScheduledOptIn.is_active == True)  # noqa: E712
            .order_by(ScheduledOptIn.id)
        ).all())


def has_opt_in(user_id: int, commute_date: date) -> bool:
    with get_session() as session:
        return session.exec(
            select(OptIn.id).where(
                OptIn.user_id == user_id,
                OptIn.commute_date == commute_date,
                OptIn.status != OptInStatus.CANCELLED,
            )
        ).first() is not None


# ────────────────────────── retention ───────────────────────────────────────

def purge_before(cutoff: date, dry_run: bool = False) -> Dict[str, int]:
    """Delete finished rides and stale opt-ins dated before ``cutoff``."""
    with get_session() as session:
        ride_ids = list(session.exec(
            select(Ride.id).where(
                Ride.commute_date < cutoff,
                Ride.status.in_([RideStatus.COMPLETED, RideStatus.CANCELLED]),
            )
        ).all())
        stale_opt_ins = list(session.exec(
            select(OptIn.id).where(
                OptIn.commute_date < cutoff,
                OptIn.status.in_([OptInStatus.PENDING_MATCH, OptInStatus.CANCELLED]),
            )
        ).all())
        counts = {"old_rides": len(ride_ids), "expired_opt_ins": len(stale_opt_ins)}
        if dry_run:
            return counts
        if ride_ids:
            session.execute(delete(RideParticipant).where(RideParticipant.ride_id.in_(ride_ids)))
            session.execute(delete(Ride).where(Ride.id.in_(ride_ids)))
        if stale_opt_ins:
            still_referenced = set(session.exec(
                select(RideParticipant.opt_in_id).where(RideParticipant.opt_in_id.in_(stale_opt_ins))
            ).all())
            removable = [i for i in stale_opt_ins if i not in still_referenced]
            if removable:
                session.execute(delete(OptIn).where(OptIn.id.in_(removable)))
            counts["expired_opt_ins"] = len(removable)
        session.commit()
        return counts

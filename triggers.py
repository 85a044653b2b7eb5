"""Entry points that start matching work: opt-in creation, the scheduled
sweeps, manual runs, recurring-schedule expansion and data cleanup."""
import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from config import Settings, get_settings
from errors import CommutePoolError, InputError
from matching import MatchingEngine
from retry import RetryCoordinator
from schemas import CleanupResult, ExpansionResult, MatchOptions, MatchResult, RetryResult, ServiceContext
import store

logger = logging.getLogger(__name__)

SCHEDULER = ServiceContext(actor="scheduler")


def build_engine(settings: Optional[Settings] = None) -> MatchingEngine:
    return MatchingEngine(settings=settings or get_settings())


def next_business_day(today: date) -> date:
    day = today + timedelta(days=1)
    while day.weekday() >= 5:  # Saturday, Sunday
        day += timedelta(days=1)
    return day


def opt_in_created(opt_in_id: int, engine: Optional[MatchingEngine] = None) -> MatchResult:
    engine = engine or build_engine()
    logger.info("opt-in %s created, attempting immediate match", opt_in_id)
    return engine.match_for_single_opt_in(opt_in_id, SCHEDULER)


def scheduled_sweep(commute_date=None, engine: Optional[MatchingEngine] = None,
                    today: Optional[date] = None) -> List[MatchResult]:
    engine = engine or build_engine()
    if commute_date is not None:
        dates = [store.parse_commute_date(commute_date)]
    else:
        today = today or date.today()
        dates = [today, today + timedelta(days=1)]
    return [engine.match_for_date(d, SCHEDULER) for d in dates]


def manual_trigger(commute_date, dry_run: bool = False, force_match: bool = False,
                   engine: Optional[MatchingEngine] = None, actor: str = "manual") -> MatchResult:
    engine = engine or build_engine()
    return engine.match_for_date(
        commute_date, ServiceContext(actor=actor), MatchOptions(dry_run=dry_run, force_match=force_match)
    )


def retry_sweep(commute_date=None, max_retries: Optional[int] = None, dry_run: bool = False,
                engine: Optional[MatchingEngine] = None, clock=datetime.utcnow) -> RetryResult:
    engine = engine or build_engine()
    coordinator = RetryCoordinator(engine, settings=engine.settings, clock=clock)
    return coordinator.retry_for_date(
        commute_date or date.today(), SCHEDULER, max_retries=max_retries, options=MatchOptions(dry_run=dry_run)
    )


def _one_hour_later(start: time) -> time:
    end = datetime.combine(date.min, start) + timedelta(hours=1)
    if end.date() != date.min:
        return time(23, 59)
    return end.time()


def expand_scheduled_opt_ins(commute_date=None, dry_run: bool = False, engine: Optional[MatchingEngine] = None,
                             today: Optional[date] = None) -> ExpansionResult:
    """Turn recurring weekly schedules into concrete opt-ins for one day.

    Every created opt-in gets an immediate match attempt; a failed attempt
    is logged and left to the sweeps.
    """
    if commute_date is None:
        commute_date = next_business_day(today or date.today())
    commute_date = store.parse_commute_date(commute_date)
    day_name = store.DAYS_OF_WEEK[commute_date.weekday()]
    result = ExpansionResult(date=commute_date, dry_run=dry_run)

    schedules = store.active_schedules(day_name)
    result.total_scheduled = len(schedules)
    logger.info("expanding %d %s schedules for %s (dry_run=%s)", len(schedules), day_name, commute_date, dry_run)

    for sched in schedules:
        if store.has_opt_in(sched.user_id, commute_date):
            result.skipped += 1
            continue
        if dry_run:
            result.created += 1
            continue
        try:
            opt_in = store.create_opt_in(
                sched.user_id, commute_date, sched.start_time, _one_hour_later(sched.start_time),
                sched.pickup_location_id, is_automatic=True,
            )
        except CommutePoolError as exc:
            logger.warning("schedule %s not expanded: %s", sched.id, exc)
            result.errors.append(f"schedule {sched.id}: {exc}")
            continue
        result.created += 1
        result.opt_in_ids.append(opt_in.id)

    if result.opt_in_ids:
        engine = engine or build_engine()
        for opt_in_id in result.opt_in_ids:
            try:
                opt_in_created(opt_in_id, engine)
            except CommutePoolError as exc:
                logger.warning("immediate match for opt-in %s failed: %s", opt_in_id, exc)

    result.success = not result.errors
    return result


def cleanup_expired(days_to_keep: Optional[int] = None, dry_run: bool = False,
                    today: Optional[date] = None) -> CleanupResult:
    if days_to_keep is None:
        days_to_keep = get_settings().cleanup_days_to_keep
    if days_to_keep < 0:
        raise InputError("days_to_keep must not be negative")
    cutoff = (today or date.today()) - timedelta(days=days_to_keep)
    counts = store.purge_before(cutoff, dry_run=dry_run)
    logger.info("cleanup before %s (dry_run=%s): %s", cutoff, dry_run, counts)
    return CleanupResult(dry_run=dry_run, cutoff=cutoff, **counts)

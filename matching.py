"""Daily matching engine.

Greedy driver-anchored matcher over the pending opt-ins of one commute date.
Every target that is still unconsumed gets a candidate pool (the other
unconsumed opt-ins, minus its own user), the scorer proposes groupings, the
engine re-checks the hard constraints itself and commits the best grouping
that clears the confidence threshold. Opt-ins placed in a committed grouping
are removed from the pool for the rest of the run.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from config import Settings, get_settings
from errors import (
    AuthorizationError,
    CommitConflict,
    LocationResolutionError,
    ScorerError,
    StorageWriteError,
)
from locations import DatabaseLocationResolver
from models import OptIn, OptInStatus, RideStatus, Role
from notifications import NotificationGateway, build_gateway
from schemas import (
    Candidate,
    GroupingReport,
    MatchOptions,
    MatchResult,
    ParticipantRef,
    ProposedGrouping,
    RideProposedEvent,
    RideSummary,
    ServiceContext,
)
from scoring import Scorer, build_scorer, common_overlap_minutes, estimate_route, meets_driver
import store

logger = logging.getLogger(__name__)


def require_service_context(ctx):
    if not isinstance(ctx, ServiceContext):
        raise AuthorizationError("matching writes across users and needs a ServiceContext")


class MatchingEngine:
    def __init__(self, scorer: Optional[Scorer] = None, resolver=None,
                 gateway: Optional[NotificationGateway] = None, settings: Optional[Settings] = None,
                 clock=datetime.utcnow):
        self.settings = settings or get_settings()
        self.scorer = scorer or build_scorer(self.settings)
        self.resolver = resolver or DatabaseLocationResolver()
        self.gateway = gateway or build_gateway(self.settings)
        self.clock = clock

    # ────────────────────────── public operations ───────────────────────────

    def match_for_date(self, commute_date, ctx: ServiceContext, options: Optional[MatchOptions] = None) -> MatchResult:
        require_service_context(ctx)
        commute_date = store.parse_commute_date(commute_date)
        options = options or MatchOptions()
        result = MatchResult(date=commute_date, dry_run=options.dry_run)

        pending = store.pending_for_date(commute_date)
        logger.info("matching %s: %d pending opt-ins (dry_run=%s, force=%s, actor=%s)",
                    commute_date, len(pending), options.dry_run, options.force_match, ctx.actor)
        if not pending:
            return result.finalize()

        pool, unresolved = self._build_pool(pending)
        for opt_in_id, (name, reason) in unresolved.items():
            self._record_unresolved(result, opt_in_id, name, reason)
        self._run(list(pool.values()), pool, options, result)
        self._log_summary(result)
        return result.finalize()

    def match_for_single_opt_in(self, opt_in_id: int, ctx: ServiceContext,
                                options: Optional[MatchOptions] = None) -> MatchResult:
        require_service_context(ctx)
        options = options or MatchOptions()
        target = store.get_opt_in(opt_in_id)
        result = MatchResult(date=target.commute_date, dry_run=options.dry_run)
        if target.status != OptInStatus.PENDING_MATCH:
            result.add_detail(target.id, "", "skipped", f"opt-in is {target.status}")
            return result.finalize()

        pool, unresolved = self._build_pool(store.pending_for_date(target.commute_date))
        if target.id in unresolved:
            name, reason = unresolved[target.id]
            self._record_unresolved(result, target.id, name, reason)
            return result.finalize()
        if target.id not in pool:
            result.add_detail(target.id, "", "skipped", "opt-in left the pending pool")
            return result.finalize()
        self._run([pool[target.id]], pool, options, result)
        self._log_summary(result)
        return result.finalize()

    # ────────────────────────── run internals ───────────────────────────────

    def _build_pool(self, pending: Sequence[OptIn]):
        """Resolve pickup coordinates and driver capacity for every pending opt-in.

        Returns the candidate pool plus the opt-ins whose location could not be
        resolved; those sit this run out and stay PENDING_MATCH.
        """
        users = store.users_by_id(o.user_id for o in pending)
        pool: Dict[int, Candidate] = {}
        unresolved = {}
        for opt_in in pending:
            user = users.get(opt_in.user_id)
            name = user.full_name if user else ""
            try:
                loc = self.resolver.resolve(opt_in.pickup_location_id)
            except LocationResolutionError as exc:
                logger.warning("opt-in %s left out: %s", opt_in.id, exc)
                unresolved[opt_in.id] = (name, str(exc))
                continue
            pool[opt_in.id] = Candidate(
                opt_in_id=opt_in.id,
                user_id=opt_in.user_id,
                user_name=name,
                role=opt_in.role,
                commute_date=opt_in.commute_date,
                window_start=opt_in.time_window_start,
                window_end=opt_in.time_window_end,
                pickup_location_id=opt_in.pickup_location_id,
                lat=loc.lat,
                lng=loc.lng,
                label=loc.label,
                vehicle_capacity=user.vehicle_capacity if user and opt_in.role == Role.DRIVER else None,
            )
        return pool, unresolved

    @staticmethod
    def _record_unresolved(result: MatchResult, opt_in_id, name, reason):
        result.errors.append(f"opt-in {opt_in_id}: {reason}")
        result.retryable = True
        result.add_detail(opt_in_id, name, "failed", reason)

    def _run(self, targets: List[Candidate], pool: Dict[int, Candidate], options: MatchOptions,
             result: MatchResult):
        budget = options.budget_seconds or self.settings.match_budget_seconds
        deadline = time.monotonic() + budget if budget else None
        consumed = set()
        reasons = {}

        for index, target in enumerate(targets):
            if target.opt_in_id in consumed:
                continue
            if deadline is not None and time.monotonic() >= deadline:
                result.partial = True
                for left in targets[index:]:
                    if left.opt_in_id not in consumed:
                        consumed.add(left.opt_in_id)
                        reasons.pop(left.opt_in_id, None)
                        result.add_detail(left.opt_in_id, left.user_name, "skipped", "run budget exhausted")
                logger.warning("matching %s stopped early: budget of %ss exhausted", result.date, budget)
                break

            candidates = [
                c for c in pool.values()
                if c.opt_in_id not in consumed and c.opt_in_id != target.opt_in_id and c.user_id != target.user_id
            ]
            committed, reason = self._match_target(target, candidates, pool, consumed, options, result)
            if committed:
                consumed.update(committed)
                for opt_in_id in committed:
                    reasons.pop(opt_in_id, None)
            else:
                reasons[target.opt_in_id] = reason

        # a failed target can still be picked up by a later target, so
        # failures are only reported for opt-ins that ended the run unplaced
        for target in targets:
            if target.opt_in_id not in consumed:
                result.add_detail(target.opt_in_id, target.user_name, "failed",
                                  reasons.get(target.opt_in_id, "no compatible grouping"))

    def _match_target(self, target, candidates, pool, consumed, options, result):
        """Score, validate and commit for one target.

        Returns ``(committed_opt_in_ids, failure_reason)``.
        """
        try:
            proposals = self.scorer.propose(target, candidates)
        except ScorerError as exc:
            logger.warning("scorer failed for opt-in %s: %s", target.opt_in_id, exc)
            result.errors.append(f"opt-in {target.opt_in_id}: {exc}")
            result.retryable = True
            return [], "scorer unavailable"

        threshold = 0.0 if options.force_match else self.settings.confidence_threshold
        best = None
        top_confidence = None
        for proposal in proposals:
            grouping = self._enforce(target, proposal, pool, consumed)
            if grouping is None:
                continue
            report = GroupingReport(
                target_opt_in_id=target.opt_in_id,
                opt_in_ids=grouping.opt_in_ids,
                confidence=grouping.confidence,
                reasoning=grouping.reasoning,
            )
            result.groupings.append(report)
            top_confidence = max(top_confidence or 0.0, grouping.confidence)
            if grouping.confidence >= threshold and (best is None or grouping.confidence > best[0].confidence):
                best = (grouping, report)

        if best is None:
            if top_confidence is None:
                return [], "no compatible grouping"
            return [], f"best confidence {top_confidence:g} below threshold {threshold:g}"

        grouping, report = best
        members = [pool[i] for i in grouping.opt_in_ids]
        if options.dry_run:
            summary = self._summary(None, target.commute_date, grouping)
        else:
            try:
                ride = store.commit_grouping(
                    target.commute_date,
                    grouping,
                    self.clock() + timedelta(hours=self.settings.confirmation_deadline_hours),
                )
            except (CommitConflict, StorageWriteError) as exc:
                logger.warning("grouping for opt-in %s not committed: %s", target.opt_in_id, exc)
                result.errors.append(f"opt-in {target.opt_in_id}: {exc}")
                result.retryable = True
                return [], f"commit failed: {exc}"
            summary = self._summary(ride.id, target.commute_date, grouping)
            self._notify(summary)

        report.accepted = True
        result.rides.append(summary)
        for member in members:
            result.add_detail(member.opt_in_id, member.user_name, "matched",
                              "would match (dry run)" if options.dry_run else f"ride {summary.id}")
        return [m.opt_in_id for m in members], None

    def _enforce(self, target: Candidate, proposal: ProposedGrouping, pool, consumed) -> Optional[ProposedGrouping]:
        """Re-derive a proposal from stored data; None when it breaks a hard constraint.

        Roles, capacity and pickup locations come from the pool, never from
        the scorer, and the route and fare are re-planned with the configured
        rates.
        """
        ids = proposal.opt_in_ids
        if target.opt_in_id not in ids or len(set(ids)) != len(ids):
            return self._discard(target, proposal, "target missing or duplicated")
        if any(i not in pool or (i in consumed and i != target.opt_in_id) for i in ids):
            return self._discard(target, proposal, "unknown or already placed opt-in")
        members = [pool[i] for i in ids]
        if len({m.user_id for m in members}) != len(members):
            return self._discard(target, proposal, "user appears twice")
        if any(m.commute_date != target.commute_date for m in members):
            return self._discard(target, proposal, "mixed commute dates")
        drivers = [m for m in members if m.role == Role.DRIVER]
        if len(drivers) != 1:
            return self._discard(target, proposal, f"{len(drivers)} drivers")
        driver = drivers[0]
        riders = [m for m in members if m is not driver]
        if not riders or len(riders) > (driver.vehicle_capacity or 0):
            return self._discard(target, proposal, f"{len(riders)} riders for capacity {driver.vehicle_capacity}")
        if not all(meets_driver(driver, r) for r in riders):
            return self._discard(target, proposal, "rider window misses the driver's")
        if common_overlap_minutes(members, self.settings.time_grace_minutes) < self.settings.min_overlap_minutes:
            return self._discard(target, proposal, "time windows do not overlap enough")

        # route and fare always come from the configured cost model
        route = estimate_route(driver, riders, self.settings)
        return ProposedGrouping(
            participants=[
                ParticipantRef(opt_in_id=m.opt_in_id, user_id=m.user_id, role=m.role,
                               pickup_location_id=m.pickup_location_id)
                for m in [driver] + riders
            ],
            route=route,
            confidence=proposal.confidence,
            reasoning=proposal.reasoning,
        )

    @staticmethod
    def _discard(target, proposal, why):
        logger.debug("discarding grouping %s for opt-in %s: %s", proposal.opt_in_ids, target.opt_in_id, why)
        return None

    def _summary(self, ride_id, commute_date, grouping: ProposedGrouping) -> RideSummary:
        driver = next(p for p in grouping.participants if p.role == Role.DRIVER)
        return RideSummary(
            id=ride_id,
            commute_date=commute_date,
            driver_user_id=driver.user_id,
            status=RideStatus.PROPOSED,
            participant_opt_in_ids=grouping.opt_in_ids,
            participant_user_ids=[p.user_id for p in grouping.participants],
            pickup_order=grouping.route.pickup_order,
            estimated_total_time=grouping.route.estimated_total_time,
            estimated_distance_km=grouping.route.estimated_distance_km,
            estimated_cost_per_person=grouping.route.estimated_cost_per_person,
            confidence=grouping.confidence,
            reasoning=grouping.reasoning,
        )

    def _notify(self, summary: RideSummary):
        event = RideProposedEvent(ride_id=summary.id, commute_date=summary.commute_date,
                                  participant_user_ids=summary.participant_user_ids)
        try:
            self.gateway.publish(event)
        except Exception:
            # delivery is best effort; the ride stands
            logger.exception("notification for ride %s failed", summary.id)

    @staticmethod
    def _log_summary(result: MatchResult):
        logger.info("matching %s done: %d rides, %d matched, %d failed, %d skipped%s",
                    result.date, len(result.rides), result.matched, result.failed, result.skipped,
                    " (partial)" if result.partial else "")

"""Compatibility scoring: propose driver-anchored groupings for a target opt-in.

Two interchangeable backends share the ``propose(target, candidates)`` call:

* ``RuleBasedScorer``: deterministic heuristic over time-window overlap,
  pickup spread and route efficiency.
* ``RemoteScorer``: delegates to an external reasoning service over HTTP and
  validates the reply against ``ScorerResponse``. Its output is advisory; the
  engine re-checks every hard constraint before accepting a grouping.
"""
import logging
from datetime import time
from typing import List, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from config import Settings, get_settings
from errors import ScorerError
from geo import haversine_km, max_pairwise_km, plan_route
from models import Role
from pricing import cost_per_person, trip_minutes
from schemas import (
    Candidate,
    Destination,
    ParticipantRef,
    ProposedGrouping,
    RouteEstimate,
    ScorerRequest,
    ScorerResponse,
)

logger = logging.getLogger(__name__)


class Scorer(Protocol):
    def propose(self, target: Candidate, candidates: Sequence[Candidate]) -> List[ProposedGrouping]:
        ...


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def common_overlap_minutes(members: Sequence[Candidate], grace_minutes: int = 0) -> int:
    """Length of the window shared by every member, each widened by ``grace_minutes``
    on both ends. Negative when the windows do not meet."""
    start = max(_minutes(m.window_start) for m in members) - grace_minutes
    end = min(_minutes(m.window_end) for m in members) + grace_minutes
    return end - start


def meets_driver(driver: Candidate, rider: Candidate) -> bool:
    """True when the rider's own window shares time with the driver's, grace aside."""
    return common_overlap_minutes([driver, rider]) > 0


def estimate_route(driver: Candidate, riders: Sequence[Candidate], settings: Settings) -> RouteEstimate:
    """Pickup order, trip time and per-person cost for a driver plus riders."""
    destination = (settings.destination_lat, settings.destination_lng)
    planned = plan_route((driver.lat, driver.lng), [(r.lat, r.lng) for r in riders], destination)
    participants = len(riders) + 1
    return RouteEstimate(
        pickup_order=[driver.pickup_location_id] + [riders[i].pickup_location_id for i in planned.order],
        estimated_total_time=trip_minutes(planned.distance_km, settings.average_speed_kmh),
        estimated_distance_km=round(planned.distance_km, 3),
        estimated_cost_per_person=cost_per_person(
            planned.distance_km, participants, settings.base_fare, settings.per_km_rate
        ),
    )


def _ref(c: Candidate) -> ParticipantRef:
    return ParticipantRef(
        opt_in_id=c.opt_in_id, user_id=c.user_id, role=c.role, pickup_location_id=c.pickup_location_id
    )


class RuleBasedScorer:
    WEIGHT_TIME = 0.4
    WEIGHT_SPATIAL = 0.4
    WEIGHT_ROUTE = 0.2
    FULL_OVERLAP_MINUTES = 45  # overlap at which the time component saturates

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def propose(self, target: Candidate, candidates: Sequence[Candidate]) -> List[ProposedGrouping]:
        if target.role == Role.DRIVER:
            anchors = [target]
        else:
            anchors = sorted((c for c in candidates if c.role == Role.DRIVER), key=lambda c: c.opt_in_id)
        groupings = []
        for driver in anchors:
            grouping = self._group_around(driver, target, candidates)
            if grouping is not None:
                groupings.append(grouping)
        groupings.sort(key=lambda g: (-g.confidence, g.participants[0].opt_in_id))
        return groupings

    def _group_around(self, driver: Candidate, target: Candidate, candidates: Sequence[Candidate]):
        s = self.settings
        capacity = driver.vehicle_capacity or 0
        if capacity < 1:
            return None
        members = [driver] if driver.opt_in_id == target.opt_in_id else [driver, target]
        if not all(meets_driver(driver, m) for m in members[1:]):
            return None
        if common_overlap_minutes(members, s.time_grace_minutes) < s.min_overlap_minutes:
            return None

        taken_users = {m.user_id for m in members}
        origin = (driver.lat, driver.lng)
        reach = 2 * s.max_pickup_separation_km
        riders = [
            c for c in candidates
            if c.role == Role.RIDER and c.user_id not in taken_users and c.opt_in_id != target.opt_in_id
        ]
        riders.sort(key=lambda c: (haversine_km(origin, (c.lat, c.lng)), c.opt_in_id))
        for rider in riders:
            if len(members) - 1 >= capacity:
                break
            if rider.user_id in taken_users:
                continue
            if haversine_km(origin, (rider.lat, rider.lng)) > reach:
                break
            if not meets_driver(driver, rider):
                continue
            if common_overlap_minutes(members + [rider], s.time_grace_minutes) >= s.min_overlap_minutes:
                members.append(rider)
                taken_users.add(rider.user_id)

        if len(members) < 2:
            return None
        return self._score(members, capacity)

    def _score(self, members: List[Candidate], capacity: int) -> ProposedGrouping:
        s = self.settings
        driver, riders = members[0], members[1:]
        overlap = common_overlap_minutes(members, s.time_grace_minutes)
        time_score = min(1.0, overlap / self.FULL_OVERLAP_MINUTES)

        spread = max_pairwise_km([(m.lat, m.lng) for m in members])
        ratio = spread / s.max_pickup_separation_km if s.max_pickup_separation_km > 0 else 2.0
        # 1.0 -> 0.5 inside the preferred radius, 0.5 -> 0.0 out to twice it
        spatial_score = max(0.0, 1.0 - 0.5 * ratio)

        route = estimate_route(driver, riders, s)
        destination = (s.destination_lat, s.destination_lng)
        direct = haversine_km((driver.lat, driver.lng), destination)
        route_score = 1.0 if route.estimated_distance_km <= 0 else min(1.0, direct / route.estimated_distance_km)

        confidence = 100 * (
            self.WEIGHT_TIME * time_score + self.WEIGHT_SPATIAL * spatial_score + self.WEIGHT_ROUTE * route_score
        )
        reasoning = (
            f"{len(riders)} rider(s) with driver {driver.user_name or driver.user_id}: "
            f"{overlap} min shared window, pickups within {spread:.1f} km, "
            f"{len(riders)}/{capacity} seats, {route.estimated_distance_km:.1f} km route"
        )
        return ProposedGrouping(
            participants=[_ref(m) for m in members],
            route=route,
            confidence=round(max(0.0, min(100.0, confidence)), 1),
            reasoning=reasoning,
        )


class RemoteScorer:
    """Structured request/response client for an external scoring service."""

    def __init__(self, url: str, timeout: float = 10.0, settings: Optional[Settings] = None,
                 client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self.settings = settings or get_settings()
        self._client = client or httpx.Client(timeout=timeout)

    def build_request(self, target: Candidate, candidates: Sequence[Candidate]) -> ScorerRequest:
        s = self.settings
        return ScorerRequest(
            target=target,
            candidates=list(candidates),
            destination=Destination(lat=s.destination_lat, lng=s.destination_lng),
            min_overlap_minutes=s.min_overlap_minutes,
            max_pickup_separation_km=s.max_pickup_separation_km,
        )

    def propose(self, target: Candidate, candidates: Sequence[Candidate]) -> List[ProposedGrouping]:
        body = self.build_request(target, candidates).model_dump(mode="json")
        try:
            resp = self._client.post(self.url, json=body, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except httpx.TimeoutException as exc:
            raise ScorerError(f"scorer timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ScorerError(f"scorer request failed: {exc}") from exc
        except ValueError as exc:
            raise ScorerError("scorer returned a non-JSON body") from exc
        try:
            return ScorerResponse.model_validate(payload).groupings
        except ValidationError as exc:
            logger.warning("Scorer response rejected: %s", exc.errors()[:3])
            raise ScorerError("scorer response failed schema validation") from exc


def build_scorer(settings: Optional[Settings] = None) -> Scorer:
    settings = settings or get_settings()
    if settings.scorer_backend == "rules":
        return RuleBasedScorer(settings)
    if settings.scorer_backend == "remote":
        if not settings.scorer_url:
            raise ValueError("COMMUTE_SCORER_URL is required for the remote scorer backend")
        return RemoteScorer(settings.scorer_url, settings.scorer_timeout_seconds, settings)
    raise ValueError(f"unknown scorer backend {settings.scorer_backend!r}")

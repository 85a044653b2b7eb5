from typing import List, NamedTuple, Sequence, Tuple
from math import radians, sin, cos, sqrt, atan2

from errors import InputError

Point = Tuple[float, float]


def haversine_km(a: Point, b: Point) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    R = 6371.0
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    c = 2 * atan2(sqrt(a_), sqrt(1 - a_))
    return R * c


def valid_coordinates(lat, lng) -> bool:
    try:
        return -90.0 <= float(lat) <= 90.0 and -180.0 <= float(lng) <= 180.0
    except (TypeError, ValueError):
        return False


def ensure_coordinates(lat, lng):
    if not valid_coordinates(lat, lng):
        raise InputError(f"invalid coordinates ({lat}, {lng})")


def max_pairwise_km(points: Sequence[Point]) -> float:
    spread = 0.0
    for i, a in enumerate(points):
        for b in points[i + 1:]:
            spread = max(spread, haversine_km(a, b))
    return spread


class PlannedRoute(NamedTuple):
    order: List[int]  # indexes into the stops passed in
    distance_km: float


def plan_route(start: Point, stops: Sequence[Point], destination: Point) -> PlannedRoute:
    """Nearest-neighbour pickup order from ``start`` through ``stops`` to ``destination``.

    Ties on distance resolve to the lower index so the order is stable for
    identical inputs.
    """
    unvisited = list(range(len(stops)))
    order = []
    current = start
    total = 0.0
    while unvisited:
        nearest = min(unvisited, key=lambda i: (haversine_km(current, stops[i]), i))
        total += haversine_km(current, stops[nearest])
        current = stops[nearest]
        order.append(nearest)
        unvisited.remove(nearest)
    total += haversine_km(current, destination)
    return PlannedRoute(order=order, distance_km=total)

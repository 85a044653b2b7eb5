from math import ceil


def cost_per_person(distance_km: float, participants: int, base_fare: float, per_km_rate: float) -> float:
    """Shared-trip fare split evenly:
    price = (base_fare + per_km_rate * distance) / participants
    Both rates come from Settings so every estimate in a deployment uses the same constants.
    """
    if participants < 1:
        raise ValueError("a trip needs at least one participant")
    raw = (base_fare + per_km_rate * max(0.0, distance_km)) / participants
    return round(raw, 2)


def trip_minutes(distance_km: float, average_speed_kmh: float) -> int:
    if average_speed_kmh <= 0:
        return 0
    return int(ceil(distance_km / average_speed_kmh * 60))

"""Builders shared by the test modules."""
from datetime import date, time

from config import Settings
from matching import MatchingEngine
from models import Role
from schemas import ServiceContext
import store

DAY = date(2025, 6, 18)  # a Wednesday
SERVICE = ServiceContext(actor="test")

# pickup points a few hundred metres apart, ~8 km from campus
NEAR_A = (23.7465, 90.3760)
NEAR_B = (23.7480, 90.3775)
NEAR_C = (23.7450, 90.3745)


def make_opt_in(name, role=Role.RIDER, point=NEAR_A, start="08:30", end="09:30", capacity=None,
                commute_date=DAY):
    if role == Role.DRIVER and capacity is None:
        capacity = 4
    user = store.create_user(name, default_role=role, vehicle_capacity=capacity)
    loc = store.create_pickup_location(user.id, f"{name} pickup", point[0], point[1])
    return store.create_opt_in(user.id, commute_date, time.fromisoformat(start), time.fromisoformat(end), loc.id)


def settings_for(**overrides):
    return Settings(**overrides)


class RecordingGateway:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def publish(self, event):
        if self.fail:
            raise RuntimeError("gateway down")
        self.events.append(event)


def make_engine(scorer=None, resolver=None, gateway=None, **overrides):
    return MatchingEngine(
        scorer=scorer, resolver=resolver, gateway=gateway or RecordingGateway(),
        settings=settings_for(**overrides),
    )

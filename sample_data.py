from datetime import date, time, timedelta
import random

from db import init_db
from models import Role
import store

# pickup areas north of campus
AREAS = [
    ("Bashundhara R/A", 23.8193, 90.4310),
    ("Uttara Sector 7", 23.8700, 90.3990),
    ("Banani", 23.7937, 90.4066),
    ("Gulshan 2", 23.7945, 90.4143),
    ("Mirpur 10", 23.8069, 90.3687),
    ("Dhanmondi 27", 23.7561, 90.3745),
]


def seed(commute_date=None, drivers=4, riders=16, rng_seed=7):
    """Create drivers, riders, their pickup points and opt-ins for one day."""
    init_db()
    rng = random.Random(rng_seed)
    commute_date = commute_date or date.today() + timedelta(days=1)
    opt_in_ids = []
    for i in range(drivers + riders):
        is_driver = i < drivers
        user = store.create_user(
            f"{'driver' if is_driver else 'rider'}{i + 1}",
            default_role=Role.DRIVER if is_driver else Role.RIDER,
            vehicle_capacity=rng.choice([3, 4]) if is_driver else None,
        )
        name, lat, lng = rng.choice(AREAS)
        loc = store.create_pickup_location(
            user.id, name,
            lat + (rng.random() - 0.5) * 0.01,
            lng + (rng.random() - 0.5) * 0.01,
            is_default=True,
        )
        start_minute = rng.choice([0, 15, 30, 45])
        start = time(8 if rng.random() < 0.7 else 9, start_minute)
        end = time(start.hour + 1, start_minute)
        opt_in = store.create_opt_in(user.id, commute_date, start, end, loc.id)
        opt_in_ids.append(opt_in.id)
    print(f"Seeded {drivers} drivers and {riders} riders for {commute_date}")
    return {"date": commute_date, "opt_in_ids": opt_in_ids}


if __name__ == "__main__":
    seed()

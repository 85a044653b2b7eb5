from typing import NamedTuple

from db import get_session
from errors import LocationResolutionError
from geo import valid_coordinates
from models import PickupLocation


class ResolvedLocation(NamedTuple):
    lat: float
    lng: float
    label: str


class DatabaseLocationResolver:
    """Reads pickup locations straight from storage.

    Fails closed: a missing row or out-of-range coordinates raise
    LocationResolutionError instead of handing back unusable coordinates.
    """

    def resolve(self, location_id: int) -> ResolvedLocation:
        with get_session() as session:
            loc = session.get(PickupLocation, location_id)
        if loc is None:
            raise LocationResolutionError(f"pickup location {location_id} not found")
        if not valid_coordinates(loc.lat, loc.lng):
            raise LocationResolutionError(f"pickup location {location_id} has invalid coordinates")
        label = f"{loc.name} - {loc.description}" if loc.description else loc.name
        return ResolvedLocation(lat=loc.lat, lng=loc.lng, label=label)

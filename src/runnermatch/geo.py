"""Geographic primitives shared by the models and the candidate locator."""

from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict, Field

EARTH_RADIUS_METERS = 6_371_000.0


class Location(BaseModel):
    """A WGS84 coordinate pair in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


def haversine_distance(a: Location, b: Location) -> float:
    """Great-circle distance in meters between two locations.

    Args:
        a: First location.
        b: Second location.

    Returns:
        Distance in meters on a sphere of radius ``EARTH_RADIUS_METERS``.
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Rounding can push h a hair past 1 for antipodal points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


def bounding_box(center: Location, radius_m: float) -> tuple[float, float, float, float]:
    """Latitude/longitude box enclosing a circle around ``center``.

    Used as a coarse database prefilter; the exact haversine check is
    applied afterwards.

    Returns:
        (min_lat, max_lat, min_lon, max_lon) in degrees.
    """
    dlat = math.degrees(radius_m / EARTH_RADIUS_METERS)
    cos_lat = math.cos(math.radians(center.latitude))
    if cos_lat < 1e-9:
        dlon = 180.0
    else:
        dlon = min(180.0, math.degrees(radius_m / (EARTH_RADIUS_METERS * cos_lat)))
    return (
        max(-90.0, center.latitude - dlat),
        min(90.0, center.latitude + dlat),
        max(-180.0, center.longitude - dlon),
        min(180.0, center.longitude + dlon),
    )

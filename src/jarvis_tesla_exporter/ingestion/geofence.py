"""Geofence matching for the location label."""

from __future__ import annotations

import math
from collections.abc import Iterable

from jarvis_tesla_exporter._constants import EARTH_RADIUS_METERS, LOCATION_OTHER
from jarvis_tesla_exporter.config import Geofence


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points, in metres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def locate(latitude: float | None, longitude: float | None, geofences: Iterable[Geofence]) -> str:
    """Name of the first geofence containing the position, else ``Other``.

    A position outside every fence, or no position at all, maps to ``Other``.
    The radius is exclusive.
    """
    if latitude is None or longitude is None:
        return LOCATION_OTHER
    for fence in geofences:
        if haversine_meters(latitude, longitude, fence.latitude, fence.longitude) < fence.radius_meters:
            return fence.location
    return LOCATION_OTHER

"""
Geo math for impossible-travel detection.
"""

import math
from dataclasses import dataclass
from datetime import datetime

from .models import SerializableMixin
from .primitives import clamp

EARTH_RADIUS_KM = 6371.0

# Fastest plausible travel (commercial flight)
MAX_TRAVEL_SPEED_KMH = 900.0

# Travel is impossible when it took less than this share of the minimum time
FEASIBILITY_RATIO = 0.8

# Distance at which the geo-velocity risk saturates
MAX_RISK_DISTANCE_KM = 5000.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


@dataclass(frozen=True)
class GeoVelocityCheck(SerializableMixin):
    is_possible: bool
    distance_km: float
    time_diff_hours: float
    required_time_hours: float
    risk_score: float
    previous_country: str = ""
    current_country: str = ""


def check_travel(
    previous_lat: float,
    previous_lon: float,
    previous_at: datetime,
    current_lat: float,
    current_lon: float,
    current_at: datetime,
    previous_country: str = "",
    current_country: str = "",
) -> GeoVelocityCheck:
    """
    Decide whether moving between two sightings was physically feasible.

    Out-of-order timestamps are treated as zero elapsed time.
    """
    distance = haversine_km(previous_lat, previous_lon, current_lat, current_lon)
    elapsed_hours = max(0.0, (current_at - previous_at).total_seconds() / 3600)
    required_hours = distance / MAX_TRAVEL_SPEED_KMH
    is_possible = elapsed_hours >= required_hours * FEASIBILITY_RATIO

    return GeoVelocityCheck(
        is_possible=is_possible,
        distance_km=distance,
        time_diff_hours=elapsed_hours,
        required_time_hours=required_hours,
        risk_score=0.0 if is_possible else clamp(distance / MAX_RISK_DISTANCE_KM),
        previous_country=previous_country,
        current_country=current_country,
    )

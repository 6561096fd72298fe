"""
Calcul de distance orthodromique (formule de haversine) sur coordonnées WGS84.
"""

import math
from typing import Optional

from app.schemas.active_visit import Coordinates

# Rayon terrestre moyen en mètres
EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance en mètres entre deux points (degrés décimaux)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return EARTH_RADIUS_M * c


def distance_between(a: Optional[Coordinates], b: Optional[Coordinates]) -> Optional[float]:
    """Distance en mètres, ou None si l'une des positions est absente."""
    if a is None or b is None:
        return None
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def within_radius(distance_m: Optional[float], radius_m: float) -> bool:
    """Intervalle fermé [0, radius_m] ; une distance inconnue n'est jamais dans le rayon."""
    if distance_m is None:
        return False
    return 0.0 <= distance_m <= radius_m

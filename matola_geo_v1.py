"""
Matola - Geo Validator
Version: 1.0.0

Coarse geofence for the serviced region (Malawi bounding box) and
great-circle distance between two points.
"""

import logging
import math
from typing import Any, Optional, Tuple

from matola_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    OutOfRegion,
)

logger = logging.getLogger("matola.geo")

# Malawi bounding box
REGION_BOUNDS = {
    'north': -9.2,
    'south': -17.8,
    'east': 35.9,
    'west': 28.2,
}

EARTH_RADIUS_KM = 6371.0

# Town centres used to place USSD shipments, which only carry place names
KNOWN_LOCATIONS = {
    'lilongwe': (-13.9626, 33.7741),
    'blantyre': (-15.7861, 35.0058),
    'limbe': (-15.8167, 35.0500),
    'mzuzu': (-11.4656, 34.0207),
    'zomba': (-15.3860, 35.3188),
    'kasungu': (-13.0333, 33.4833),
    'mangochi': (-14.4782, 35.2645),
    'salima': (-13.7804, 34.4587),
    'karonga': (-9.9333, 33.9333),
    'nkhotakota': (-12.9274, 34.2961),
    'dedza': (-14.3779, 34.3332),
    'ntcheu': (-14.8203, 34.6359),
    'mchinji': (-13.7984, 32.8802),
    'liwonde': (-15.0667, 35.2333),
    'balaka': (-14.9793, 34.9558),
    'mulanje': (-16.0316, 35.5000),
}


def lookup_location(name: str) -> Optional[Tuple[float, float]]:
    """(lat, lng) of a known town, matched case-insensitively."""
    return KNOWN_LOCATIONS.get((name or "").strip().casefold())


def is_region_coordinate(lat: float, lng: float) -> bool:
    """True iff the point lies inside the bounding box (edges included)."""
    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return (
        REGION_BOUNDS['south'] <= lat <= REGION_BOUNDS['north']
        and REGION_BOUNDS['west'] <= lng <= REGION_BOUNDS['east']
    )


def validate_shipment_coordinates(origin_lat: float, origin_lng: float, dest_lat: float, dest_lng: float) -> bool:
    """Raise OutOfRegion if origin or destination is outside the region."""
    if not is_region_coordinate(origin_lat, origin_lng):
        logger.info(f"Origin ({origin_lat}, {origin_lng}) outside region")
        raise OutOfRegion("Origin coordinates outside Malawi")

    if not is_region_coordinate(dest_lat, dest_lng):
        logger.info(f"Destination ({dest_lat}, {dest_lng}) outside region")
        raise OutOfRegion("Destination coordinates outside Malawi")

    return True


def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine great-circle distance in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    a = min(1.0, max(0.0, a))  # float noise at antipodes
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c

# ============================================
# INVARIANT
# ============================================

class ShipmentCoordinatesInRegion(Invariant):
    """Origin and destination must both be inside the serviced region."""

    error_class = OutOfRegion
    code = "OUT_OF_REGION"

    def __init__(self):
        super().__init__(
            id="shp_001_coordinates_in_region",
            statement="Shipment origin and destination must lie within Malawi",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="shipment_service"
        )

    def pre_check(self, shipment: Any = None, **kwargs) -> bool:
        return (
            is_region_coordinate(shipment.origin.lat, shipment.origin.lng)
            and is_region_coordinate(shipment.destination.lat, shipment.destination.lng)
        )

    def describe(self, shipment: Any = None, **kwargs) -> str:
        if not is_region_coordinate(shipment.origin.lat, shipment.origin.lng):
            return "Origin coordinates outside Malawi"
        return "Destination coordinates outside Malawi"

"""Geohash cells, cell neighbourhoods and great-circle distance."""

from __future__ import annotations

import math
from typing import Set, Tuple

import pygeohash as pgh

from nearmatch.domain.proximity.exceptions import InvalidCoordinate

EARTH_RADIUS_M = 6_371_000
METERS_PER_DEGREE_LAT = 111_320.0

# Base32 alphabet used by geohash (no a, i, l, o)
BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_CHARS = frozenset(BASE32)

BBox = Tuple[float, float, float, float]


def validate(lat: float, lng: float) -> None:
    """Raise InvalidCoordinate unless (lat, lng) is a finite point on the globe."""
    try:
        lat_f = float(lat)
        lng_f = float(lng)
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"non_numeric:{lat!r},{lng!r}") from None
    if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
        raise InvalidCoordinate("non_finite")
    if not -90.0 <= lat_f <= 90.0:
        raise InvalidCoordinate(f"latitude_out_of_range:{lat_f}")
    if not -180.0 <= lng_f <= 180.0:
        raise InvalidCoordinate(f"longitude_out_of_range:{lng_f}")


def _check_geohash(geohash: str) -> None:
    if not geohash:
        raise InvalidCoordinate("empty_geohash")
    if not _BASE32_CHARS.issuperset(geohash):
        raise InvalidCoordinate(f"invalid_geohash:{geohash}")


def encode(lat: float, lng: float, precision: int) -> str:
    """Geohash of `precision` characters; nearby points share longer prefixes."""
    validate(lat, lng)
    if precision < 1:
        raise ValueError("precision must be >= 1")
    return pgh.encode(float(lat), float(lng), precision=precision)


def decode_bbox(geohash: str) -> BBox:
    """Return (lat_min, lat_max, lng_min, lng_max) of the cell."""
    _check_geohash(geohash)
    lat, lng, lat_err, lng_err = pgh.decode_exactly(geohash)
    return lat - lat_err, lat + lat_err, lng - lng_err, lng + lng_err


def decode(geohash: str) -> Tuple[float, float]:
    """Decode a geohash to the (lat, lng) centre of its cell."""
    lat_min, lat_max, lng_min, lng_max = decode_bbox(geohash)
    return (lat_min + lat_max) / 2, (lng_min + lng_max) / 2


def _wrap_lng(lng: float) -> float:
    return ((lng + 180.0) % 360.0) - 180.0


def _east_west(geohash: str, bbox: BBox, direction: str) -> str:
    _lat_min, _lat_max, lng_min, lng_max = bbox
    at_edge = lng_max >= 180.0 if direction == "right" else lng_min <= -180.0
    if not at_edge:
        return pgh.get_adjacent(geohash, direction)
    # step across the antimeridian explicitly
    lat_c, lng_c = decode(geohash)
    step = lng_max - lng_min
    return encode(lat_c, _wrap_lng(lng_c + (step if direction == "right" else -step)), len(geohash))


def neighbors(geohash: str) -> Set[str]:
    """
    Return the cell itself plus its 8 adjacent cells at the same precision.

    Longitude wraps around the antimeridian; rows past a pole do not exist
    and are skipped, so polar cells have fewer than 9 entries.
    """
    bbox = decode_bbox(geohash)
    lat_min, lat_max = bbox[0], bbox[1]

    row = [geohash, _east_west(geohash, bbox, "left"), _east_west(geohash, bbox, "right")]
    cells = set(row)
    if lat_max < 90.0:
        cells.update(pgh.get_adjacent(cell, "top") for cell in row)
    if lat_min > -90.0:
        cells.update(pgh.get_adjacent(cell, "bottom") for cell in row)
    return cells


def cell_height_m(precision: int) -> float:
    """North/south extent of a cell in meters (independent of latitude)."""
    lat_bits = (5 * precision) // 2
    return (180.0 / (2 ** lat_bits)) * METERS_PER_DEGREE_LAT


def distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Return the great-circle distance between two points in meters."""
    validate(lat1, lng1)
    validate(lat2, lng2)
    if lat1 == lat2 and lng1 == lng2:
        return 0.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # float noise can push `a` a hair above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


__all__ = [
    "BASE32",
    "EARTH_RADIUS_M",
    "cell_height_m",
    "decode",
    "decode_bbox",
    "distance_m",
    "encode",
    "neighbors",
    "validate",
]

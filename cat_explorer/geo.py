"""Great-circle helpers for sighting coordinates.

Everything here works on :class:`GeoPoint` (latitude first). The ``[longitude,
latitude]`` ordering only exists on the wire and in the stored geography and is
converted with :meth:`GeoPoint.from_lnglat`, :meth:`GeoPoint.to_lnglat` and
:meth:`GeoPoint.to_ewkt`.
"""

import math
from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence, TypeVar

from .errors import ValidationError

EARTH_RADIUS_KM = 6371.0
WGS84_SRID = 4326

T = TypeVar("T")


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self):
        for label, value, bound in (("latitude", self.latitude, 90.0), ("longitude", self.longitude, 180.0)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{label} must be a number")
            if not math.isfinite(value) or abs(value) > bound:
                raise ValidationError(f"{label} must be within [-{bound:g}, {bound:g}]")
        object.__setattr__(self, "latitude", float(self.latitude))
        object.__setattr__(self, "longitude", float(self.longitude))

    @classmethod
    def from_lnglat(cls, coordinates: Sequence[float]) -> "GeoPoint":
        if coordinates is None or isinstance(coordinates, (str, bytes)) or len(coordinates) != 2:
            raise ValidationError("location.coordinates must be [longitude, latitude]")
        lng, lat = coordinates
        return cls(latitude=lat, longitude=lng)

    def to_lnglat(self) -> List[float]:
        return [self.longitude, self.latitude]

    def to_ewkt(self) -> str:
        # WKT points are x y, i.e. longitude first
        return f"SRID={WGS84_SRID};POINT({self.longitude:.9f} {self.latitude:.9f})"


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = math.radians(b.latitude - a.latitude)
    d_lng = math.radians(b.longitude - a.longitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def sort_by_distance(items: Iterable[T], origin: GeoPoint, key: Callable[[T], GeoPoint]) -> List[T]:
    """Order already-fetched items nearest-first relative to ``origin`` (stable)."""
    return sorted(items, key=lambda item: haversine_km(origin, key(item)))

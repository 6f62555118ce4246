import math

import pytest

from cat_explorer.errors import ValidationError
from cat_explorer.geo import GeoPoint, haversine_km, sort_by_distance

NEW_YORK = GeoPoint(latitude=40.7484, longitude=-73.9857)
LOS_ANGELES = GeoPoint(latitude=34.0522, longitude=-118.2437)
LONDON = GeoPoint(latitude=51.5074, longitude=-0.1278)


def test_new_york_to_los_angeles():
    assert haversine_km(NEW_YORK, LOS_ANGELES) == pytest.approx(3936, rel=0.01)


@pytest.mark.parametrize("a,b", [
    (NEW_YORK, LOS_ANGELES),
    (LONDON, NEW_YORK),
    (GeoPoint(0, 179.9), GeoPoint(0, -179.9)),
    (GeoPoint(-89.5, 10), GeoPoint(89.5, -170)),
])
def test_distance_is_symmetric(a, b):
    assert haversine_km(a, b) == haversine_km(b, a)


@pytest.mark.parametrize("point", [NEW_YORK, LONDON, GeoPoint(90, 0), GeoPoint(0, -180)])
def test_distance_to_self_is_zero(point):
    assert haversine_km(point, point) == pytest.approx(0.0, abs=1e-9)


def test_distance_across_antimeridian_is_short():
    assert haversine_km(GeoPoint(0, 179.95), GeoPoint(0, -179.95)) == pytest.approx(11.1, rel=0.01)


def test_geopoint_wire_order():
    point = GeoPoint.from_lnglat([-73.9857, 40.7484])
    assert point == NEW_YORK
    assert point.to_lnglat() == [-73.9857, 40.7484]


@pytest.mark.parametrize("lat,lng", [(91, 0), (-90.5, 0), (0, 180.1), (math.nan, 0), (0, math.inf), ("1", 2), (True, 0)])
def test_geopoint_rejects_invalid(lat, lng):
    with pytest.raises(ValidationError):
        GeoPoint(latitude=lat, longitude=lng)


@pytest.mark.parametrize("coordinates", [None, [], [1.0], [1.0, 2.0, 3.0], "1,2"])
def test_from_lnglat_requires_pair(coordinates):
    with pytest.raises(ValidationError):
        GeoPoint.from_lnglat(coordinates)


def test_sort_by_distance_orders_nearest_first():
    places = [("la", LOS_ANGELES), ("london", LONDON), ("ny", NEW_YORK)]
    ordered = sort_by_distance(places, NEW_YORK, key=lambda item: item[1])
    assert [name for name, _ in ordered] == ["ny", "london", "la"]


def test_to_ewkt_is_longitude_first():
    assert NEW_YORK.to_ewkt() == "SRID=4326;POINT(-73.985700000 40.748400000)"

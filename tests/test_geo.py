"""
Tests for great-circle distance and geofence checks.

Tests cover:
- Zero and symmetric distances
- Antipodal points (half the earth's circumference)
- Geofence boundary handling
"""
from __future__ import annotations

import math
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fuelanchor_settlement.exceptions import ValidationError
from fuelanchor_settlement.geo import EARTH_RADIUS_M, haversine_distance_m, within_geofence
from fuelanchor_settlement.models import GeoPoint, Station


def _station(location: GeoPoint, radius_m: float = 100.0) -> Station:
    return Station(
        station_id="st_1",
        name="Test",
        wallet_identity="G" + "A" * 55,
        location=location,
        geofence_radius_m=radius_m,
    )


class TestHaversine:
    """Tests for haversine_distance_m."""

    def test_same_point_is_zero(self):
        """Should return zero for identical points."""
        point = GeoPoint(6.5244, 3.3792)
        assert haversine_distance_m(point, point) == 0.0

    def test_symmetric(self):
        """Should not depend on argument order."""
        a = GeoPoint(6.5244, 3.3792)
        b = GeoPoint(9.0765, 7.3986)
        assert haversine_distance_m(a, b) == pytest.approx(haversine_distance_m(b, a))

    def test_antipodal_points(self):
        """Should return half the circumference for antipodes."""
        a = GeoPoint(0.0, 0.0)
        b = GeoPoint(0.0, 180.0)
        assert haversine_distance_m(a, b) == pytest.approx(math.pi * EARTH_RADIUS_M)

    def test_one_degree_latitude(self):
        """Should be about 111.2km per degree of latitude."""
        distance = haversine_distance_m(GeoPoint(0.0, 0.0), GeoPoint(1.0, 0.0))
        assert distance == pytest.approx(111_195, rel=1e-3)


class TestWithinGeofence:
    """Tests for within_geofence."""

    def test_inside(self):
        """Should accept a driver at the station."""
        location = GeoPoint(6.5244, 3.3792)
        inside, distance = within_geofence(location, _station(location))
        assert inside is True
        assert distance == 0.0

    def test_outside(self):
        """Should reject a driver about 1km away from a 100m fence."""
        station = _station(GeoPoint(6.5244, 3.3792))
        # ~0.009 degrees of latitude is ~1km
        inside, distance = within_geofence(GeoPoint(6.5334, 3.3792), station)
        assert inside is False
        assert 950 < distance < 1050

    def test_boundary_counts_as_inside(self):
        """Should treat a distance equal to the radius as inside."""
        station_location = GeoPoint(0.0, 0.0)
        driver = GeoPoint(0.0, 0.001)
        exact = haversine_distance_m(driver, station_location)
        inside, _ = within_geofence(driver, _station(station_location, radius_m=exact))
        assert inside is True


class TestGeoPointValidation:
    """Tests for GeoPoint.validate."""

    @pytest.mark.parametrize(
        "latitude,longitude",
        [(91.0, 0.0), (-90.5, 0.0), (0.0, 180.1), (float("nan"), 0.0), (0.0, float("inf"))],
    )
    def test_rejects_out_of_range(self, latitude, longitude):
        """Should reject coordinates outside the valid ranges."""
        with pytest.raises(ValidationError):
            GeoPoint(latitude, longitude).validate()

    def test_accepts_extremes(self):
        """Should accept the poles and the antimeridian."""
        assert GeoPoint(90.0, -180.0).validate() == GeoPoint(90.0, -180.0)

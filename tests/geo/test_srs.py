"""Tests for spatial references, extents and vertical datums."""

import numpy as np
import pytest

from geo.srs import GeoExtent, SpatialReference, VerticalDatum
from shared.constants import NO_DATA_VALUE


@pytest.fixture
def wgs84():
    return SpatialReference.create('wgs84')


@pytest.fixture
def merc():
    return SpatialReference.create('spherical-mercator')


class TestSpatialReference:
    def test_aliases(self, wgs84, merc):
        assert wgs84.is_geographic
        assert not merc.is_geographic
        assert SpatialReference.create('EPSG:4326') == wgs84
        assert wgs84.is_horiz_equivalent_to(SpatialReference.create('global-geodetic'))

    def test_radius(self, wgs84):
        assert wgs84.radius_equator == pytest.approx(6378137.0)

    def test_vertical_equivalence(self, wgs84):
        egm = wgs84.with_vertical_datum(VerticalDatum('egm96'))
        assert wgs84.is_horiz_equivalent_to(egm)
        assert not wgs84.is_vert_equivalent_to(egm)
        assert egm.is_vert_equivalent_to(wgs84.with_vertical_datum(VerticalDatum('egm96')))

    def test_transform_units(self, wgs84, merc):
        metres_per_degree = 2 * np.pi * 6378137.0 / 360.0
        assert wgs84.transform_units(1.0, merc) == pytest.approx(metres_per_degree)
        assert merc.transform_units(metres_per_degree, wgs84) == pytest.approx(1.0)
        assert wgs84.transform_units(3.0, wgs84) == 3.0

    def test_point_transform_roundtrip(self, wgs84, merc):
        xs, ys = wgs84.transform(np.array([0.0, 10.0]), np.array([0.0, 20.0]), merc)
        assert xs[0] == pytest.approx(0.0, abs=1e-6)
        lon, lat = merc.to_geographic(xs, ys)
        assert lon.tolist() == pytest.approx([0.0, 10.0])
        assert lat.tolist() == pytest.approx([0.0, 20.0])


class TestGeoExtent:
    def test_intersection(self, wgs84):
        a = GeoExtent(wgs84, 0, 0, 10, 10)
        b = GeoExtent(wgs84, 5, 5, 20, 20)
        inter = a.intersection(b)
        assert (inter.xmin, inter.ymin, inter.xmax, inter.ymax) == (5, 5, 10, 10)
        assert a.intersects(b)

    def test_disjoint(self, wgs84):
        a = GeoExtent(wgs84, 0, 0, 10, 10)
        b = GeoExtent(wgs84, 20, 20, 30, 30)
        assert a.intersection(b) is None
        assert not a.intersects(b)

    def test_contains(self, wgs84):
        ext = GeoExtent(wgs84, 0, 0, 10, 10)
        assert ext.contains(10, 0)
        assert not ext.contains(10.1, 0)

    def test_transform_clamps_poles(self, wgs84, merc):
        world = GeoExtent(wgs84, -180, -90, 180, 90)
        projected = world.transform(merc)
        assert np.isfinite([projected.ymin, projected.ymax]).all()
        assert projected.xmax == pytest.approx(20037508.34, rel=1e-6)


class TestVerticalDatum:
    def test_constant_offset_shift(self, wgs84):
        """Datum 10 m above the ellipsoid: heights gain 10 m; no-data is kept."""
        grid = np.array([[1.0, NO_DATA_VALUE], [3.0, 4.0]], dtype=np.float32)
        ext = GeoExtent(wgs84, 0, 0, 1, 1)
        VerticalDatum.transform(VerticalDatum('high', offset_m=10.0), None, ext, grid)
        assert grid[0, 0] == pytest.approx(11.0)
        assert grid[0, 1] == NO_DATA_VALUE
        assert grid[1, 1] == pytest.approx(14.0)

    def test_geoid_function(self, wgs84):
        """Geoid heights are evaluated at each sample's longitude."""
        vd = VerticalDatum('lon', geoid=lambda lon, lat: lon)
        grid = np.zeros((2, 3), dtype=np.float32)
        ext = GeoExtent(wgs84, 0, 0, 2, 1)
        VerticalDatum.transform(None, vd, ext, grid)
        assert grid[0].tolist() == pytest.approx([0.0, -1.0, -2.0])

    def test_same_datum_is_noop(self, wgs84):
        grid = np.ones((2, 2), dtype=np.float32)
        vd = VerticalDatum('a', offset_m=5.0)
        VerticalDatum.transform(vd, VerticalDatum('a', offset_m=5.0), GeoExtent(wgs84, 0, 0, 1, 1), grid)
        assert (grid == 1.0).all()

"""Spatial references, vertical datums and extents built on pyproj."""

from __future__ import annotations

import hashlib
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import cached_property, lru_cache

import numpy as np
from pyproj import CRS, Transformer

from shared.constants import EARTH_RADIUS_M, MERCATOR_MAX_LAT_DEG, NO_DATA_VALUE

logger = logging.getLogger(__name__)

_SRS_ALIASES = {
    'wgs84': 'EPSG:4326',
    'global-geodetic': 'EPSG:4326',
    'spherical-mercator': 'EPSG:3857',
    'web-mercator': 'EPSG:3857',
}


@lru_cache(maxsize=64)
def _transformer(src: CRS, dst: CRS) -> Transformer:
    """Cached always_xy transformer between two CRS."""
    return Transformer.from_crs(src, dst, always_xy=True)


@dataclass(frozen=True)
class VerticalDatum:
    """Reference surface for elevation values.

    ``geoid`` maps (lon, lat) arrays in degrees to the height of the datum
    surface above the ellipsoid in metres. Without it the datum is a
    constant ``offset_m`` above the ellipsoid.
    """

    name: str
    geoid: Callable[[np.ndarray, np.ndarray], np.ndarray] | None = field(
        default=None, compare=False, repr=False
    )
    offset_m: float = field(default=0.0, compare=False)

    def geoid_height(self, lon: np.ndarray, lat: np.ndarray) -> np.ndarray:
        if self.geoid is not None:
            return np.asarray(self.geoid(lon, lat), dtype=np.float64)
        return np.full(np.shape(lon), self.offset_m, dtype=np.float64)

    @staticmethod
    def transform(
        from_vd: VerticalDatum | None,
        to_vd: VerticalDatum | None,
        extent: GeoExtent,
        grid: np.ndarray,
    ) -> None:
        """Shift a (rows, cols) grid covering ``extent`` between datums in place.

        ``None`` stands for the ellipsoid itself. No-data samples are left
        untouched.
        """
        if from_vd == to_vd:
            return
        rows, cols = grid.shape
        xs = extent.xmin + (extent.width / max(cols - 1, 1)) * np.arange(cols)
        ys = extent.ymin + (extent.height / max(rows - 1, 1)) * np.arange(rows)
        gx, gy = np.meshgrid(xs, ys)
        lon, lat = extent.srs.to_geographic(gx, gy)

        shift = np.zeros(grid.shape, dtype=np.float64)
        if from_vd is not None:
            shift += from_vd.geoid_height(lon, lat)
        if to_vd is not None:
            shift -= to_vd.geoid_height(lon, lat)

        valid = grid != NO_DATA_VALUE
        grid[valid] = (grid[valid] + shift[valid]).astype(grid.dtype)
        logger.debug(
            'Vertical datum shift %s -> %s over %d samples',
            from_vd.name if from_vd else 'ellipsoid',
            to_vd.name if to_vd else 'ellipsoid',
            int(valid.sum()),
        )


@dataclass(frozen=True, eq=False)
class SpatialReference:
    """Horizontal CRS plus optional vertical datum."""

    crs: CRS
    vertical_datum: VerticalDatum | None = None

    @classmethod
    def create(
        cls, init: str, vertical_datum: VerticalDatum | None = None
    ) -> SpatialReference:
        """Build from an alias (``wgs84``, ``spherical-mercator``) or any pyproj input."""
        crs = CRS.from_user_input(_SRS_ALIASES.get(init.lower(), init))
        return cls(crs=crs, vertical_datum=vertical_datum)

    @cached_property
    def horiz_signature(self) -> str:
        return hashlib.md5(self.crs.to_wkt().encode('utf-8')).hexdigest()[:12]

    @property
    def is_geographic(self) -> bool:
        return bool(self.crs.is_geographic)

    @cached_property
    def radius_equator(self) -> float:
        ellipsoid = self.crs.ellipsoid
        if ellipsoid is None:
            return EARTH_RADIUS_M
        return float(ellipsoid.semi_major_metre)

    def is_horiz_equivalent_to(self, other: SpatialReference) -> bool:
        return self.horiz_signature == other.horiz_signature

    def is_vert_equivalent_to(self, other: SpatialReference) -> bool:
        return self.vertical_datum == other.vertical_datum

    def with_vertical_datum(self, vertical_datum: VerticalDatum | None) -> SpatialReference:
        return SpatialReference(crs=self.crs, vertical_datum=vertical_datum)

    def transform_units(self, value: float, to_srs: SpatialReference) -> float:
        """Convert a linear distance between degree and metre based systems."""
        if self.is_geographic == to_srs.is_geographic:
            return value
        metres_per_degree = 2.0 * math.pi * self.radius_equator / 360.0
        if self.is_geographic:
            return value * metres_per_degree
        return value / metres_per_degree

    def transform(
        self, xs: np.ndarray, ys: np.ndarray, to_srs: SpatialReference
    ) -> tuple[np.ndarray, np.ndarray]:
        """Transform point arrays into ``to_srs``."""
        if self.is_horiz_equivalent_to(to_srs):
            return np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64)
        tx, ty = _transformer(self.crs, to_srs.crs).transform(xs, ys)
        return np.asarray(tx, dtype=np.float64), np.asarray(ty, dtype=np.float64)

    def to_geographic(self, xs: np.ndarray, ys: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Longitude/latitude (degrees) of points in this system."""
        if self.is_geographic:
            return np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64)
        lon, lat = _transformer(self.crs, self.crs.geodetic_crs).transform(xs, ys)
        return np.asarray(lon, dtype=np.float64), np.asarray(lat, dtype=np.float64)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SpatialReference):
            return NotImplemented
        return (
            self.horiz_signature == other.horiz_signature
            and self.vertical_datum == other.vertical_datum
        )

    def __hash__(self) -> int:
        return hash((self.horiz_signature, self.vertical_datum))

    def __repr__(self) -> str:
        vd = self.vertical_datum.name if self.vertical_datum else None
        return f'SpatialReference({self.crs.to_string()!r}, vdatum={vd!r})'


@dataclass(frozen=True)
class GeoExtent:
    """Axis-aligned bounding box in a spatial reference."""

    srs: SpatialReference
    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def is_valid(self) -> bool:
        return self.xmax >= self.xmin and self.ymax >= self.ymin

    def contains(self, x: float, y: float) -> bool:
        return self.xmin <= x <= self.xmax and self.ymin <= y <= self.ymax

    def intersects(self, other: GeoExtent) -> bool:
        if not self.srs.is_horiz_equivalent_to(other.srs):
            other = other.transform(self.srs)
        return not (
            other.xmin > self.xmax
            or other.xmax < self.xmin
            or other.ymin > self.ymax
            or other.ymax < self.ymin
        )

    def intersection(self, other: GeoExtent) -> GeoExtent | None:
        if not self.srs.is_horiz_equivalent_to(other.srs):
            other = other.transform(self.srs)
        result = GeoExtent(
            self.srs,
            max(self.xmin, other.xmin),
            max(self.ymin, other.ymin),
            min(self.xmax, other.xmax),
            min(self.ymax, other.ymax),
        )
        return result if result.is_valid else None

    def transform(self, to_srs: SpatialReference) -> GeoExtent:
        """Bounding box of this extent in another system."""
        if self.srs.is_horiz_equivalent_to(to_srs):
            return GeoExtent(to_srs, self.xmin, self.ymin, self.xmax, self.ymax)
        ymin, ymax = self.ymin, self.ymax
        if self.srs.is_geographic and not to_srs.is_geographic:
            # Mercator-like targets are undefined at the poles
            ymin = max(ymin, -MERCATOR_MAX_LAT_DEG)
            ymax = min(ymax, MERCATOR_MAX_LAT_DEG)
        left, bottom, right, top = _transformer(self.srs.crs, to_srs.crs).transform_bounds(
            self.xmin, ymin, self.xmax, ymax, densify_pts=21
        )
        return GeoExtent(to_srs, left, bottom, right, top)

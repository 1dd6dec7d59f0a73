"""Tiling schemes (profiles) and tile addresses."""

from __future__ import annotations

import functools
import hashlib
import logging
import math
from dataclasses import dataclass, replace
from functools import cached_property

from geo.srs import GeoExtent, SpatialReference, VerticalDatum
from shared.constants import (
    EXTENT_EPSILON,
    MAX_LOD,
    MERCATOR_HALF_WORLD_M,
    MIN_SOURCE_TILE_SIZE,
)

logger = logging.getLogger(__name__)


def next_power_of_2(n: int) -> int:
    """Smallest power of two >= n (n >= 1)."""
    return 1 << max(int(n) - 1, 0).bit_length()


@dataclass(frozen=True, eq=False)
class Profile:
    """A global subdivision of space into tiles at each LOD.

    LOD 0 has ``tiles_wide`` x ``tiles_high`` tiles; every LOD doubles both.
    Tile rows are counted from the top (``ymax``) edge.
    """

    srs: SpatialReference
    xmin: float
    ymin: float
    xmax: float
    ymax: float
    tiles_wide: int = 1
    tiles_high: int = 1

    @classmethod
    def create(cls, name: str, vertical_datum: VerticalDatum | None = None) -> Profile:
        """Named well-known profiles."""
        key = name.lower()
        if key in ('global-geodetic', 'geodetic'):
            srs = SpatialReference.create('wgs84', vertical_datum)
            return cls(srs, -180.0, -90.0, 180.0, 90.0, tiles_wide=2, tiles_high=1)
        if key in ('spherical-mercator', 'mercator'):
            srs = SpatialReference.create('spherical-mercator', vertical_datum)
            h = MERCATOR_HALF_WORLD_M
            return cls(srs, -h, -h, h, h, tiles_wide=1, tiles_high=1)
        msg = f'Unknown profile: {name}'
        raise ValueError(msg)

    @property
    def extent(self) -> GeoExtent:
        return GeoExtent(self.srs, self.xmin, self.ymin, self.xmax, self.ymax)

    @cached_property
    def horiz_signature(self) -> str:
        text = (
            f'{self.srs.horiz_signature}:{self.xmin:.9g},{self.ymin:.9g},'
            f'{self.xmax:.9g},{self.ymax:.9g}:{self.tiles_wide}x{self.tiles_high}'
        )
        return hashlib.md5(text.encode('utf-8')).hexdigest()[:12]

    @cached_property
    def full_signature(self) -> str:
        vd = self.srs.vertical_datum
        return f'{self.horiz_signature}-{vd.name}' if vd else self.horiz_signature

    def is_horiz_equivalent_to(self, other: Profile | None) -> bool:
        return other is not None and self.horiz_signature == other.horiz_signature

    def with_vertical_datum(self, vertical_datum: VerticalDatum | None) -> Profile:
        return replace(self, srs=self.srs.with_vertical_datum(vertical_datum))

    def num_tiles(self, lod: int) -> tuple[int, int]:
        factor = 1 << lod
        return self.tiles_wide * factor, self.tiles_high * factor

    def tile_dimensions(self, lod: int) -> tuple[float, float]:
        nx, ny = self.num_tiles(lod)
        return (self.xmax - self.xmin) / nx, (self.ymax - self.ymin) / ny

    def tile_extent(self, lod: int, x: int, y: int) -> GeoExtent:
        w, h = self.tile_dimensions(lod)
        xmin = self.xmin + w * x
        ymax = self.ymax - h * y
        return GeoExtent(self.srs, xmin, ymax - h, xmin + w, ymax)

    def equivalent_lod(self, other: Profile, lod: int) -> int:
        """LOD in this profile whose tile height best matches ``other`` at ``lod``."""
        if self.is_horiz_equivalent_to(other):
            return lod
        _, other_h = other.tile_dimensions(lod)
        if other_h <= 0.0:
            return lod
        target_h = other.srs.transform_units(other_h, self.srs)

        best_lod = 0
        delta = math.inf
        for current in range(MAX_LOD + 1):
            _, h = self.tile_dimensions(current)
            d = abs(h - target_h)
            if d >= delta:
                break
            delta = d
            best_lod = current
        return best_lod

    def intersecting_tiles(self, extent: GeoExtent, lod: int) -> list[TileKey]:
        """All tiles of this profile at ``lod`` overlapping ``extent``."""
        local = extent.transform(self.srs)
        clipped = local.intersection(self.extent)
        if clipped is None:
            return []

        tw, th = self.tile_dimensions(lod)
        nx, ny = self.num_tiles(lod)
        eps = EXTENT_EPSILON * 1e3

        col_min = math.floor((clipped.xmin - self.xmin) / tw + eps)
        col_max = math.ceil((clipped.xmax - self.xmin) / tw - eps) - 1
        row_min = math.floor((self.ymax - clipped.ymax) / th + eps)
        row_max = math.ceil((self.ymax - clipped.ymin) / th - eps) - 1

        col_min = min(max(col_min, 0), nx - 1)
        row_min = min(max(row_min, 0), ny - 1)
        col_max = min(max(col_max, col_min), nx - 1)
        row_max = min(max(row_max, row_min), ny - 1)

        return [
            TileKey(lod, x, y, self)
            for y in range(row_min, row_max + 1)
            for x in range(col_min, col_max + 1)
        ]

    def intersecting_tiles_for_key(self, key: TileKey) -> list[TileKey]:
        """Tiles of this profile covering a key that may come from another profile."""
        if self.is_horiz_equivalent_to(key.profile):
            return [key]
        lod = self.equivalent_lod(key.profile, key.lod)
        return self.intersecting_tiles(key.extent, lod)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Profile):
            return NotImplemented
        return self.full_signature == other.full_signature

    def __hash__(self) -> int:
        return hash(self.full_signature)


@functools.total_ordering
@dataclass(frozen=True)
class TileKey:
    """Tile address: level of detail, column, row and tiling scheme."""

    lod: int
    x: int
    y: int
    profile: Profile

    @property
    def path(self) -> str:
        return f'{self.lod}/{self.x}/{self.y}'

    def _sort_key(self) -> tuple[int, int, int, str]:
        return (self.lod, self.x, self.y, self.profile.full_signature)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, TileKey):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    @cached_property
    def extent(self) -> GeoExtent:
        return self.profile.tile_extent(self.lod, self.x, self.y)

    def parent_key(self) -> TileKey | None:
        if self.lod == 0:
            return None
        return TileKey(self.lod - 1, self.x >> 1, self.y >> 1, self.profile)

    def ancestor_key(self, lod: int) -> TileKey:
        if lod >= self.lod:
            return self
        shift = self.lod - lod
        return TileKey(lod, self.x >> shift, self.y >> shift, self.profile)

    def with_profile(self, profile: Profile) -> TileKey:
        return TileKey(self.lod, self.x, self.y, profile)

    def map_resolution(
        self,
        target_size: int,
        source_size: int,
        minimum_source_size: int = MIN_SOURCE_TILE_SIZE,
    ) -> TileKey:
        """Ancestor whose source tile best serves a ``target_size`` output grid.

        A source tile larger than the output holds enough samples to cover a
        coarser (larger) area, so walk up one LOD per doubling of the target.
        """
        if self.lod == 0 or target_size >= source_size:
            return self
        minimum_source_size = minimum_source_size or MIN_SOURCE_TILE_SIZE

        lod = self.lod
        target_pot = next_power_of_2(target_size)
        while target_pot < source_size and lod > 0:
            if target_pot >= minimum_source_size:
                lod -= 1
            target_pot *= 2
        return self.ancestor_key(lod)

    def __repr__(self) -> str:
        return f'TileKey({self.path}, {self.profile.horiz_signature})'

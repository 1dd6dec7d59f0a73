"""Elevation grids, normal maps and georeferenced heightfields.

Grids are numpy float32, row-major, row 0 at the southern edge (``ymin``)
and column 0 at the western edge (``xmin``) of their extent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import cv2
import numpy as np

from shared.constants import (
    HEIGHTFIELD_MAX_SIZE,
    HEIGHTFIELD_MIN_SIZE,
    NO_DATA_VALUE,
    Interpolation,
)

if TYPE_CHECKING:
    from geo.srs import GeoExtent, SpatialReference

logger = logging.getLogger(__name__)

_UP = np.array([0.0, 0.0, 1.0], dtype=np.float32)


@dataclass
class Heightfield:
    """Fixed-size grid of elevation samples."""

    width: int
    height: int
    samples: np.ndarray
    no_data_value: float = NO_DATA_VALUE

    @classmethod
    def allocate(
        cls, width: int, height: int, fill: float = NO_DATA_VALUE
    ) -> Heightfield:
        samples = np.full(width * height, fill, dtype=np.float32)
        return cls(width=width, height=height, samples=samples)

    @classmethod
    def from_grid(cls, grid: np.ndarray) -> Heightfield:
        """Wrap a (rows, cols) array; the data is copied as float32."""
        arr = np.array(grid, dtype=np.float32)
        rows, cols = arr.shape
        return cls(width=cols, height=rows, samples=arr.reshape(-1))

    @property
    def grid(self) -> np.ndarray:
        """(height, width) view of the samples."""
        return self.samples.reshape(self.height, self.width)

    def copy(self) -> Heightfield:
        return Heightfield(
            width=self.width,
            height=self.height,
            samples=self.samples.copy(),
            no_data_value=self.no_data_value,
        )

    def freeze(self) -> Heightfield:
        """Mark the samples read-only; shared cache entries must never change."""
        self.samples.flags.writeable = False
        return self


@dataclass
class NormalMap:
    """Per-sample unit normals and a parallel confidence grid."""

    width: int
    height: int
    normals: np.ndarray
    confidence: np.ndarray

    @classmethod
    def allocate(cls, width: int, height: int) -> NormalMap:
        normals = np.tile(_UP, (height, width, 1))
        confidence = np.zeros((height, width), dtype=np.float32)
        return cls(width=width, height=height, normals=normals, confidence=confidence)

    def freeze(self) -> NormalMap:
        self.normals.flags.writeable = False
        self.confidence.flags.writeable = False
        return self


def validate_heightfield(hf: Heightfield | None) -> bool:
    """Basic sanity check of grid dimensions and sample count."""
    if hf is None:
        return False
    if not (HEIGHTFIELD_MIN_SIZE <= hf.height <= HEIGHTFIELD_MAX_SIZE):
        logger.warning('row count = %d', hf.height)
        return False
    if not (HEIGHTFIELD_MIN_SIZE <= hf.width <= HEIGHTFIELD_MAX_SIZE):
        logger.warning('col count = %d', hf.width)
        return False
    if hf.samples.size != hf.width * hf.height:
        logger.warning(
            'mismatched data size: %d samples for %dx%d',
            hf.samples.size,
            hf.width,
            hf.height,
        )
        return False
    return True


def normalize_no_data_values(
    hf: Heightfield,
    no_data_value: float,
    min_valid_value: float,
    max_valid_value: float,
) -> int:
    """Rewrite NaN, source no-data and out-of-range samples to the sentinel.

    Returns the number of rewritten samples.
    """
    s = hf.samples
    with np.errstate(invalid='ignore'):
        bad = (
            np.isnan(s)
            | (s == np.float32(no_data_value))
            | (s < min_valid_value)
            | (s > max_valid_value)
        )
    # samples already holding the sentinel are not counted as replaced
    replaced = int(np.count_nonzero(bad & (s != NO_DATA_VALUE)))
    s[bad] = NO_DATA_VALUE
    if replaced:
        logger.debug('Replaced %d samples with NO_DATA_VALUE', replaced)
    return replaced


def resolve_invalid_heights(hf: Heightfield, fill_value: float = 0.0) -> int:
    """Fill every no-data sample with its nearest valid neighbour.

    A grid without any valid sample is filled with ``fill_value``.
    Returns the number of filled samples.
    """
    grid = hf.grid
    invalid = grid == NO_DATA_VALUE
    count = int(np.count_nonzero(invalid))
    if count == 0:
        return 0
    if count == invalid.size:
        grid[...] = fill_value
        return count

    # zero pixels are the valid samples; labels index them in raster order
    _, labels = cv2.distanceTransformWithLabels(
        invalid.astype(np.uint8),
        cv2.DIST_L2,
        5,
        labelType=cv2.DIST_LABEL_PIXEL,
    )
    valid_values = grid[~invalid]
    grid[invalid] = valid_values[labels[invalid] - 1]
    return count


@dataclass(frozen=True)
class GeoHeightfield:
    """A heightfield with the extent it covers (and optional normals)."""

    heightfield: Heightfield
    extent: GeoExtent
    normal_map: NormalMap | None = field(default=None, compare=False)

    @property
    def width(self) -> int:
        return self.heightfield.width

    @property
    def height(self) -> int:
        return self.heightfield.height

    @property
    def x_resolution(self) -> float:
        return self.extent.width / (self.width - 1)

    @property
    def y_resolution(self) -> float:
        return self.extent.height / (self.height - 1)

    def _to_pixels(
        self,
        xs: np.ndarray,
        ys: np.ndarray,
        srs: SpatialReference | None,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        xs = np.atleast_1d(np.asarray(xs, dtype=np.float64))
        ys = np.atleast_1d(np.asarray(ys, dtype=np.float64))
        if srs is not None and not srs.is_horiz_equivalent_to(self.extent.srs):
            xs, ys = srs.transform(xs, ys, self.extent.srs)
        ext = self.extent
        col = (xs - ext.xmin) / ext.width * (self.width - 1)
        row = (ys - ext.ymin) / ext.height * (self.height - 1)
        tol = 1e-6
        inside = (
            (col >= -tol)
            & (col <= self.width - 1 + tol)
            & (row >= -tol)
            & (row <= self.height - 1 + tol)
        )
        return col, row, inside

    def sample(
        self,
        xs: np.ndarray,
        ys: np.ndarray,
        srs: SpatialReference | None = None,
        interpolation: Interpolation = Interpolation.BILINEAR,
    ) -> np.ndarray:
        """Elevations at points given in ``srs`` (defaults to the extent's own).

        Points outside the extent, or surrounded only by no-data, sample as
        ``NO_DATA_VALUE``.
        """
        col, row, inside = self._to_pixels(xs, ys, srs)
        out = np.full(col.shape, NO_DATA_VALUE, dtype=np.float32)
        if not inside.any():
            return out

        w, h = self.width, self.height
        c = np.clip(col[inside], 0.0, w - 1)
        r = np.clip(row[inside], 0.0, h - 1)
        grid = self.heightfield.grid

        if interpolation == Interpolation.NEAREST:
            out[inside] = grid[np.rint(r).astype(np.intp), np.rint(c).astype(np.intp)]
            return out

        c0 = np.floor(c).astype(np.intp)
        r0 = np.floor(r).astype(np.intp)
        c1 = np.minimum(c0 + 1, w - 1)
        r1 = np.minimum(r0 + 1, h - 1)
        values = np.stack(
            [grid[r0, c0], grid[r0, c1], grid[r1, c0], grid[r1, c1]]
        ).astype(np.float64)

        if interpolation == Interpolation.AVERAGE:
            weights = np.ones_like(values)
        else:
            fc = c - c0
            fr = r - r0
            weights = np.stack(
                [(1 - fc) * (1 - fr), fc * (1 - fr), (1 - fc) * fr, fc * fr]
            )

        weights = np.where(values != NO_DATA_VALUE, weights, 0.0)
        total = weights.sum(axis=0)
        blended = np.where(values != NO_DATA_VALUE, values, 0.0) * weights
        with np.errstate(invalid='ignore', divide='ignore'):
            result = np.where(total > 0.0, blended.sum(axis=0) / total, NO_DATA_VALUE)
        out[inside] = result.astype(np.float32)
        return out

    def sample_normals(
        self,
        xs: np.ndarray,
        ys: np.ndarray,
        srs: SpatialReference | None = None,
    ) -> np.ndarray:
        """Nearest-sample normals, (n, 3); up-facing where unknown."""
        col, row, inside = self._to_pixels(xs, ys, srs)
        out = np.tile(_UP, (col.shape[0], 1))
        if self.normal_map is None or not inside.any():
            return out
        c = np.rint(np.clip(col[inside], 0, self.width - 1)).astype(np.intp)
        r = np.rint(np.clip(row[inside], 0, self.height - 1)).astype(np.intp)
        out[inside] = self.normal_map.normals[r, c]
        return out

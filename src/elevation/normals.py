"""Surface normal synthesis for composited elevation grids."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import numpy as np

from shared.constants import MAX_LOD, NO_DATA_VALUE

if TYPE_CHECKING:
    from elevation.heightfield import Heightfield, NormalMap
    from geo.srs import GeoExtent


def _sample_spacing(
    extent: GeoExtent, width: int, height: int
) -> tuple[np.ndarray, float]:
    """Linear spacing between samples: per-row dx (height, 1) and dy."""
    res_x = extent.width / (width - 1)
    res_y = extent.height / (height - 1)
    if not extent.srs.is_geographic:
        return np.full((height, 1), res_x), res_y

    m_per_deg = 2.0 * math.pi * extent.srs.radius_equator / 360.0
    lat = extent.ymin + res_y * np.arange(height)
    dx = res_x * m_per_deg * np.cos(np.radians(lat))
    return dx.reshape(height, 1), res_y * m_per_deg


def raw_normals(extent: GeoExtent, hf: Heightfield) -> np.ndarray:
    """Unnormalised central-difference normals, shape (height, width, 3).

    Missing neighbours (grid edge or no-data) drop out of the difference,
    which then becomes one-sided. No-data samples get an up vector.
    """
    grid = hf.grid.astype(np.float64)
    h, w = grid.shape
    dx, dy = _sample_spacing(extent, w, h)
    valid = grid != NO_DATA_VALUE

    has_w = np.zeros_like(valid)
    has_e = np.zeros_like(valid)
    has_s = np.zeros_like(valid)
    has_n = np.zeros_like(valid)
    has_w[:, 1:] = valid[:, :-1]
    has_e[:, :-1] = valid[:, 1:]
    has_s[1:, :] = valid[:-1, :]
    has_n[:-1, :] = valid[1:, :]

    h_w = grid.copy()
    h_e = grid.copy()
    h_s = grid.copy()
    h_n = grid.copy()
    h_w[:, 1:] = np.where(has_w[:, 1:], grid[:, :-1], grid[:, 1:])
    h_e[:, :-1] = np.where(has_e[:, :-1], grid[:, 1:], grid[:, :-1])
    h_s[1:, :] = np.where(has_s[1:, :], grid[:-1, :], grid[1:, :])
    h_n[:-1, :] = np.where(has_n[:-1, :], grid[1:, :], grid[:-1, :])

    ex = dx * (has_e.astype(np.float64) + has_w)
    ez = np.where(valid, h_e - h_w, 0.0)
    ny = dy * (has_n.astype(np.float64) + has_s)
    nz = np.where(valid, h_n - h_s, 0.0)

    # (east - west) x (north - south)
    normals = np.stack([-ez * ny, -ex * nz, ex * ny], axis=-1)
    normals[~valid] = (0.0, 0.0, 1.0)
    return normals


def create_normal_map(
    extent: GeoExtent,
    hf: Heightfield,
    delta_lod: np.ndarray,
    normal_map: NormalMap,
) -> None:
    """Fill ``normal_map`` with unit normals for ``hf``.

    ``delta_lod`` (height, width) holds, per sample, how many LODs coarser
    the winning source tile was than the output. Where it is positive the
    normal is taken only at that coarser grid's true sample positions
    (every ``2**delta`` pixels) and bilinearly interpolated in between;
    sampling neighbours there would produce faceting.
    """
    base = raw_normals(extent, hf)
    h, w = hf.height, hf.width
    result = base.copy()

    delta = np.minimum(np.asarray(delta_lod, dtype=np.int64).reshape(h, w), MAX_LOD)
    coarse = delta > 0
    if coarse.any():
        t, s = np.nonzero(coarse)
        step = np.left_shift(1, delta[t, s])

        s0 = s - s % step
        t0 = t - t % step
        s1 = np.where(s % step == 0, s0, np.minimum(s0 + step, w - 1))
        t1 = np.where(t % step == 0, t0, np.minimum(t0 + step, h - 1))

        same_col = s0 == s1
        same_row = t0 == t1
        ws0 = np.where(same_col, 1, s1 - s)[:, None]
        ws1 = np.where(same_col, 0, s - s0)[:, None]
        wt0 = np.where(same_row, 1, t1 - t)[:, None]
        wt1 = np.where(same_row, 0, t - t0)[:, None]

        south = base[t0, s0] * ws0 + base[t0, s1] * ws1
        north = base[t1, s0] * ws0 + base[t1, s1] * ws1
        result[t, s] = south * wt0 + north * wt1

    length = np.linalg.norm(result, axis=-1, keepdims=True)
    up = np.array([0.0, 0.0, 1.0])
    with np.errstate(invalid='ignore', divide='ignore'):
        unit = np.where(length > 0.0, result / length, up)

    normal_map.normals[...] = unit.astype(np.float32)
    normal_map.confidence[...] = 0.0

"""Mosaicking of native source tiles into a tile of a foreign profile."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from elevation.heightfield import Heightfield, NormalMap
from shared.constants import NO_DATA_VALUE, Interpolation
from shared.progress import check_canceled

if TYPE_CHECKING:
    from elevation.heightfield import GeoHeightfield
    from elevation.layer import ElevationLayer
    from geo.profile import TileKey
    from shared.progress import ProgressToken

logger = logging.getLogger(__name__)


def _native_keys(layer: ElevationLayer, key: TileKey) -> list[TileKey]:
    """Native tiles covering ``key``.

    A LOD 0 request maps to a LOD that may be finer than anything the
    source has; walk coarser until some tile is expected to carry data.
    """
    profile = layer.profile
    tiles = profile.intersecting_tiles_for_key(key)
    if key.lod == 0 and tiles:
        lod = tiles[0].lod
        while lod > 0 and not any(layer.may_have_data(t) for t in tiles):
            lod -= 1
            tiles = profile.intersecting_tiles(key.extent, lod)
    return tiles


async def _fetch_native_tiles(
    layer: ElevationLayer, keys: list[TileKey], progress: ProgressToken | None
) -> list[GeoHeightfield]:
    tiles = []
    for native in keys:
        if not layer.is_key_in_legal_range(native):
            continue
        geo = await layer.create_heightfield(native, progress)
        check_canceled(progress)
        if geo is not None:
            tiles.append(geo)
    return tiles


async def assemble_heightfield(
    layer: ElevationLayer, key: TileKey, progress: ProgressToken | None = None
) -> tuple[Heightfield, NormalMap] | None:
    """Build a grid for ``key`` from the layer's native tiles.

    The output takes the largest native dimensions. Per sample, tiles are
    tried finest first and the first one with data there wins; no blending
    across resolutions. Samples nobody covers stay no-data with an up
    normal. Raises OperationCanceled if the token fires mid-way.

    Normals are carried over from native tiles that have a normal map.
    Tiles resolved from a source have none, so these normals are up
    vectors; the compositor derives its own from the heights.
    """
    keys = _native_keys(layer, key)
    if not keys:
        return None
    tiles = await _fetch_native_tiles(layer, keys, progress)
    if not tiles:
        logger.debug('Assemble %s: no native tiles with data', key)
        return None

    width = max(t.width for t in tiles)
    height = max(t.height for t in tiles)
    tiles.sort(key=lambda t: t.x_resolution)

    hf = Heightfield.allocate(width, height)
    normal_map = NormalMap.allocate(width, height)
    grid = hf.grid

    ext = key.extent
    dx = ext.width / (width - 1)
    dy = ext.height / (height - 1)
    xs = ext.xmin + dx * np.arange(width)
    ys = ext.ymin + dy * np.arange(height)
    gx, gy = np.meshgrid(xs, ys)
    # all native tiles share the layer's SRS: transform the whole grid once
    lx, ly = ext.srs.transform(gx, gy, layer.profile.srs)

    for c in range(width):
        check_canceled(progress)
        pending = np.ones(height, dtype=bool)
        for tile in tiles:
            rows = np.nonzero(pending)[0]
            if rows.size == 0:
                break
            values = tile.sample(
                lx[rows, c], ly[rows, c], interpolation=Interpolation.BILINEAR
            )
            hit = values != NO_DATA_VALUE
            if not hit.any():
                continue
            won = rows[hit]
            grid[won, c] = values[hit]
            normal_map.normals[won, c] = tile.sample_normals(lx[won, c], ly[won, c])
            pending[won] = False

    logger.debug(
        'Assembled %s from %d native tiles (%dx%d)', key, len(tiles), width, height
    )
    return hf, normal_map

"""Multi-layer elevation compositing.

Base layers compete per sample (highest priority with data wins); offset
layers are added on top of the winner. The stack is an ordered list whose
index is the priority: the last layer wins conflicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from elevation.heightfield import Heightfield, NormalMap, resolve_invalid_heights
from elevation.normals import create_normal_map
from shared.constants import (
    DEFAULT_TILE_SIZE,
    MAX_WORKING_SET,
    NO_DATA_VALUE,
    Interpolation,
)
from shared.diagnostics import log_memory_usage
from shared.progress import OperationCanceled, check_canceled

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from elevation.heightfield import GeoHeightfield
    from elevation.layer import ElevationLayer
    from geo.profile import Profile, TileKey
    from shared.progress import ProgressToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedContribution:
    """A layer taking part in one composite, and the key it will be queried with."""

    layer: ElevationLayer
    mapped_key: TileKey
    key: TileKey
    index: int

    @property
    def is_fallback(self) -> bool:
        return self.key != self.mapped_key


class _WorkingSet:
    """Lazily fetched contender grids of one composite call."""

    def __init__(self, size: int, limit: int) -> None:
        self.limit = limit
        self.fields: list[GeoHeightfield | None] = [None] * size
        self.actual_keys: list[TileKey | None] = [None] * size
        self.failed = [False] * size
        self.held = 0

    def store(self, i: int, geo: GeoHeightfield, actual_key: TileKey) -> None:
        self.fields[i] = geo
        self.actual_keys[i] = actual_key
        self.held += 1

    def trim(self) -> None:
        if self.held < self.limit:
            return
        logger.debug('Dropping %d held heightfields', self.held)
        self.fields = [None] * len(self.fields)
        self.actual_keys = [None] * len(self.actual_keys)
        self.held = 0
        log_memory_usage('composite working set dropped')


class ElevationLayerStack:
    """Ordered collection of elevation layers; index = priority.

    Usage:
        stack = ElevationLayerStack([terrain, bathymetry])
        hf, normals, real = await stack.composite(key)
    """

    def __init__(
        self,
        layers: Iterable[ElevationLayer] | None = None,
        *,
        tile_size: int = DEFAULT_TILE_SIZE,
        max_working_set: int = MAX_WORKING_SET,
    ) -> None:
        self._layers: list[ElevationLayer] = list(layers or [])
        self.tile_size = tile_size
        self.max_working_set = max(1, max_working_set)

    def __iter__(self) -> Iterator[ElevationLayer]:
        return iter(self._layers)

    def __len__(self) -> int:
        return len(self._layers)

    def __getitem__(self, index: int) -> ElevationLayer:
        return self._layers[index]

    @property
    def layers(self) -> list[ElevationLayer]:
        return list(self._layers)

    def add(self, layer: ElevationLayer) -> None:
        """Append as the highest-priority layer."""
        self._layers.append(layer)

    def remove(self, layer: ElevationLayer) -> None:
        self._layers.remove(layer)

    def move(self, layer: ElevationLayer, index: int) -> None:
        self._layers.remove(layer)
        self._layers.insert(index, layer)

    def index_of(self, layer: ElevationLayer) -> int:
        return self._layers.index(layer)

    def find(self, name: str) -> ElevationLayer | None:
        return next((layer for layer in self._layers if layer.name == name), None)

    async def close(self) -> None:
        for layer in self._layers:
            await layer.source.close()

    def _contributions(
        self, key: TileKey, key_to_use: TileKey, width: int
    ) -> tuple[list[ResolvedContribution], list[ResolvedContribution], int]:
        """(contenders, offsets, fallback count), highest priority first."""
        contenders: list[ResolvedContribution] = []
        offsets: list[ResolvedContribution] = []
        num_fallback = 0

        for index in range(len(self._layers) - 1, -1, -1):
            layer = self._layers[index]
            if not (layer.enabled and layer.visible):
                continue
            # the max data level is not checked here: such layers stay for fallback
            if key.lod < layer.min_level:
                continue
            mapped = key_to_use.map_resolution(width, layer.tile_size)
            best = layer.best_available_tile_key(mapped)
            if best is None:
                continue
            contribution = ResolvedContribution(layer, mapped, best, index)
            if contribution.is_fallback:
                num_fallback += 1
            (offsets if layer.is_offset else contenders).append(contribution)

        return contenders, offsets, num_fallback

    async def _fetch_with_fallback(
        self, contribution: ResolvedContribution, progress: ProgressToken | None
    ) -> tuple[GeoHeightfield | None, TileKey | None]:
        """Grid for the contribution's key, else for the nearest ancestor that has one."""
        layer = contribution.layer
        actual: TileKey | None = contribution.key
        while actual is not None and layer.is_key_in_legal_range(actual):
            geo = await layer.create_heightfield(actual, progress)
            check_canceled(progress)
            if geo is not None:
                return geo, actual
            actual = actual.parent_key()
        return None, None

    async def _populate(
        self,
        hf: Heightfield,
        normal_map: NormalMap | None,
        key: TileKey,
        hae_profile: Profile | None,
        interpolation: Interpolation,
        progress: ProgressToken | None,
    ) -> bool:
        check_canceled(progress)
        key_to_use = key if hae_profile is None else key.with_profile(hae_profile)

        contenders, offsets, num_fallback = self._contributions(key, key_to_use, hf.width)
        if not contenders and not offsets:
            return False
        if len(contenders) + len(offsets) == num_fallback:
            logger.debug('%s: every layer would supply fallback data only', key)
            return False

        width, height = hf.width, hf.height
        grid = hf.grid
        delta_lod = np.zeros((height, width), dtype=np.int16)
        working = _WorkingSet(len(contenders), self.max_working_set)
        real_data = False
        requires_resample = True

        if len(contenders) == 1 and not offsets:
            geo, actual = await self._fetch_with_fallback(contenders[0], progress)
            if geo is None:
                working.failed[0] = True
            else:
                working.store(0, geo, actual)
                if actual == key_to_use and (geo.width, geo.height) == (width, height):
                    grid[...] = geo.heightfield.grid
                    requires_resample = False
                    real_data = True

        if requires_resample:
            real_data = await self._resample(
                grid, delta_lod, key, key_to_use, contenders, offsets,
                working, interpolation, progress,
            )

        if normal_map is not None:
            check_canceled(progress)
            create_normal_map(key.extent, hf, delta_lod, normal_map)

        filled = resolve_invalid_heights(hf)
        if filled:
            logger.debug('%s: filled %d no-data samples', key, filled)
        check_canceled(progress)
        return real_data

    async def _resample(
        self,
        grid: np.ndarray,
        delta_lod: np.ndarray,
        key: TileKey,
        key_to_use: TileKey,
        contenders: list[ResolvedContribution],
        offsets: list[ResolvedContribution],
        working: _WorkingSet,
        interpolation: Interpolation,
        progress: ProgressToken | None,
    ) -> bool:
        height, width = grid.shape
        ext = key.extent
        dx = ext.width / (width - 1)
        dy = ext.height / (height - 1)
        ys = ext.ymin + dy * np.arange(height)
        srs = key_to_use.profile.srs

        offset_fields: list[GeoHeightfield | None] = [None] * len(offsets)
        offset_failed = [False] * len(offsets)
        real_data = False

        for c in range(width):
            check_canceled(progress)
            xs = np.full(height, ext.xmin + dx * c)
            resolved = np.full(height, -1, dtype=np.int64)
            pending = np.ones(height, dtype=bool)

            for i, contender in enumerate(contenders):
                if not pending.any():
                    break
                if working.failed[i]:
                    continue
                if working.fields[i] is None:
                    geo, actual = await self._fetch_with_fallback(contender, progress)
                    if geo is None:
                        working.failed[i] = True
                        continue
                    working.store(i, geo, actual)
                geo = working.fields[i]
                actual = working.actual_keys[i]

                rows = np.nonzero(pending)[0]
                values = geo.sample(xs[rows], ys[rows], srs, interpolation)
                hit = values != NO_DATA_VALUE
                won = rows[hit]
                if won.size:
                    grid[won, c] = values[hit]
                    resolved[won] = contender.index
                    pending[won] = False
                    delta_lod[won, c] = key.lod - actual.lod
                    if actual == contender.mapped_key:
                        real_data = True

                working.trim()

            # lowest priority first; the last applied offset owns the LOD delta
            for j in range(len(offsets) - 1, -1, -1):
                offset = offsets[j]
                if offset_failed[j]:
                    continue
                applies = (resolved < 0) | (offset.index >= resolved)
                if not applies.any():
                    continue
                geo = offset_fields[j]
                if geo is None:
                    geo = await offset.layer.create_heightfield(offset.key, progress)
                    check_canceled(progress)
                    if geo is None:
                        offset_failed[j] = True
                        continue
                    offset_fields[j] = geo

                rows = np.nonzero(applies)[0]
                values = geo.sample(xs[rows], ys[rows], srs, interpolation)
                hit = values != NO_DATA_VALUE
                won = rows[hit]
                if won.size:
                    base = grid[won, c]
                    grid[won, c] = np.where(base == NO_DATA_VALUE, 0.0, base) + values[hit]
                    delta_lod[won, c] = key.lod - offset.key.lod
                    if not offset.is_fallback:
                        real_data = True

        return real_data

    async def populate_heightfield_and_normal_map(
        self,
        hf: Heightfield,
        normal_map: NormalMap | None,
        key: TileKey,
        hae_profile: Profile | None = None,
        interpolation: Interpolation = Interpolation.BILINEAR,
        progress: ProgressToken | None = None,
    ) -> bool:
        """Fill ``hf`` (and ``normal_map``) in place for ``key``.

        Returns True if at least one sample came from non-fallback data.
        On cancellation returns False; the grid contents are then undefined.
        """
        try:
            return await self._populate(
                hf, normal_map, key, hae_profile, interpolation, progress
            )
        except OperationCanceled:
            logger.debug('Composite of %s cancelled', key)
            return False

    async def composite(
        self,
        key: TileKey,
        interpolation: Interpolation = Interpolation.BILINEAR,
        hae_profile: Profile | None = None,
        progress: ProgressToken | None = None,
        *,
        tile_size: int | None = None,
        normals: bool = True,
    ) -> tuple[Heightfield | None, NormalMap | None, bool]:
        """Allocate and fill a ``tile_size`` grid for ``key``.

        Returns ``(None, None, False)`` when cancelled. When no layer has real
        data for the key the grid is returned untouched (all no-data) with
        ``False``.
        """
        size = tile_size or self.tile_size
        hf = Heightfield.allocate(size, size)
        normal_map = NormalMap.allocate(size, size) if normals else None
        try:
            real_data = await self._populate(
                hf, normal_map, key, hae_profile, interpolation, progress
            )
        except OperationCanceled:
            logger.debug('Composite of %s cancelled', key)
            return None, None, False
        return hf, normal_map, real_data


async def composite(
    stack: ElevationLayerStack,
    key: TileKey,
    interpolation: Interpolation = Interpolation.BILINEAR,
    hae_profile: Profile | None = None,
    progress: ProgressToken | None = None,
    *,
    tile_size: int | None = None,
    normals: bool = True,
) -> tuple[Heightfield | None, NormalMap | None, bool]:
    """Composite ``key`` from every enabled layer of ``stack``."""
    return await stack.composite(
        key,
        interpolation,
        hae_profile,
        progress,
        tile_size=tile_size,
        normals=normals,
    )

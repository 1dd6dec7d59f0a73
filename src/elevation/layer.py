"""Single-source elevation layer: tile resolution through the cache tiers."""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from elevation.assembler import assemble_heightfield
from elevation.codec import InvalidTileError, decode_heightfield, encode_heightfield
from elevation.heightfield import (
    GeoHeightfield,
    Heightfield,
    NormalMap,
    normalize_no_data_values,
    validate_heightfield,
)
from geo.srs import VerticalDatum
from shared.constants import MAX_LOD
from shared.progress import OperationCanceled, check_canceled
from tiles.gate import ProducerGate
from tiles.memory import MemoryCache

if TYPE_CHECKING:
    from domain.models import CachePolicy, ElevationLayerOptions
    from elevation.sources import ElevationSource
    from geo.profile import Profile, TileKey
    from shared.progress import ProgressToken
    from tiles.cache import TileCache

logger = logging.getLogger(__name__)


class LayerStatus(str, Enum):
    OK = 'ok'
    ERROR = 'error'


class ElevationLayer:
    """One elevation data source plus its caching and sanitising policy.

    ``create_heightfield`` resolves a tile in this order: memory cache,
    persistent cache (fresh entries only), the source itself (or a mosaic
    of its native tiles when the requested profile differs), and finally
    an expired persistent entry if nothing fresher could be produced.

    Usage:
        layer = ElevationLayer(options, source, tile_cache=cache)
        geo = await layer.create_heightfield(key, progress=token)
    """

    def __init__(
        self,
        options: ElevationLayerOptions,
        source: ElevationSource,
        *,
        tile_cache: TileCache | None = None,
        vertical_datum: VerticalDatum | None = None,
    ) -> None:
        self.options = options
        self.source = source
        self.tile_cache = tile_cache
        self._enabled = options.enabled
        self.status = LayerStatus.OK
        self.status_message = ''
        self.revision = 0

        profile = source.profile
        if vertical_datum is None and options.vertical_datum:
            vertical_datum = VerticalDatum(options.vertical_datum)
        if vertical_datum is not None:
            profile = profile.with_vertical_datum(vertical_datum)
            logger.info(
                'Layer %s: vertical datum overridden to %s', self.name, vertical_datum.name
            )
        self.profile: Profile = profile

        self.memory_cache: MemoryCache[GeoHeightfield] = MemoryCache(
            options.memory_cache_size
        )
        self._gate = ProducerGate()

    def __repr__(self) -> str:
        return f'ElevationLayer({self.name!r}, offset={self.is_offset})'

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def is_offset(self) -> bool:
        return self.options.offset

    @property
    def min_level(self) -> int:
        return self.options.min_level

    @property
    def max_level(self) -> int:
        return MAX_LOD if self.options.max_level is None else self.options.max_level

    @property
    def max_data_level(self) -> int:
        if self.options.max_data_level is None:
            return MAX_LOD
        return self.options.max_data_level

    @property
    def tile_size(self) -> int:
        return self.options.tile_size or self.source.tile_size

    @property
    def no_data_value(self) -> float:
        return self.options.no_data_value

    @property
    def min_valid_value(self) -> float:
        return self.options.min_valid_value

    @property
    def max_valid_value(self) -> float:
        return self.options.max_valid_value

    @property
    def cache_policy(self) -> CachePolicy:
        return self.options.cache_policy

    @property
    def cache_id(self) -> str:
        return self.options.effective_cache_id

    # enabled and visible are one flag for elevation data
    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = bool(value)

    @property
    def visible(self) -> bool:
        return self._enabled

    @visible.setter
    def visible(self, value: bool) -> None:
        self._enabled = bool(value)

    @property
    def is_open(self) -> bool:
        return self.status == LayerStatus.OK

    def disable(self, msg: str) -> None:
        """Put the layer into a lasting error state."""
        self.status = LayerStatus.ERROR
        self.status_message = msg
        logger.error('Layer %s disabled: %s', self.name, msg)

    def dirty(self) -> None:
        """Invalidate in-process cached tiles (the source changed)."""
        self.revision += 1
        self.memory_cache.clear()
        logger.debug('Layer %s revision -> %d', self.name, self.revision)

    def is_key_in_legal_range(self, key: TileKey) -> bool:
        lod = self.profile.equivalent_lod(key.profile, key.lod)
        return self.min_level <= lod <= self.max_level

    def best_available_tile_key(self, key: TileKey) -> TileKey | None:
        """``key`` itself, or its ancestor at the finest LOD the data reaches.

        None when the key is outside the legal range or no data extent
        usable at this LOD covers it.
        """
        if not self.is_key_in_legal_range(key):
            return None
        local_lod = self.profile.equivalent_lod(key.profile, key.lod)

        extents = self.source.data_extents
        if not extents:
            top = self.max_data_level
        else:
            top = -1
            key_extent = key.extent
            for de in extents:
                if local_lod < de.min_level or not de.extent.intersects(key_extent):
                    continue
                top = max(top, min(de.max_level, self.max_data_level))
            if top < 0:
                return None

        if local_lod <= top:
            return key
        return key.ancestor_key(max(key.lod - (local_lod - top), 0))

    def may_have_data(self, key: TileKey) -> bool:
        return self.best_available_tile_key(key) == key

    def _memory_key(self, key: TileKey) -> str:
        return f'{self.revision}/{key.path}/{key.profile.full_signature}'

    @staticmethod
    def _persistent_key(key: TileKey) -> str:
        return f'{key.path}-{key.profile.full_signature}'

    async def create_heightfield(
        self, key: TileKey, progress: ProgressToken | None = None
    ) -> GeoHeightfield | None:
        """Resolve one tile; None means no data (or cancelled, or disabled)."""
        if not self.enabled or not self.is_open:
            return None

        mem_key = self._memory_key(key)
        cached = self.memory_cache.get(mem_key)
        if cached is not None:
            return cached

        try:
            return await self._gate.run(
                mem_key,
                lambda: self._produce(key, mem_key, progress),
                progress=progress,
            )
        except OperationCanceled:
            logger.debug('Layer %s: %s cancelled', self.name, key)
            return None

    def _read_persistent(self, key: TileKey) -> tuple[Heightfield | None, Heightfield | None]:
        """(fresh, expired) entries from the persistent tier."""
        policy = self.cache_policy
        if self.tile_cache is None or not policy.readable:
            return None, None
        record = self.tile_cache.get(self.cache_id, self._persistent_key(key))
        if record is None:
            return None, None
        try:
            hf = decode_heightfield(record.data)
        except InvalidTileError as e:
            logger.warning('Layer %s: discarding cached %s: %s', self.name, key, e)
            return None, None
        if not validate_heightfield(hf):
            logger.warning('Layer %s: cached %s failed validation', self.name, key)
            return None, None
        if policy.is_expired(record.last_modified):
            logger.debug('Layer %s: cached %s is expired', self.name, key)
            return None, hf
        return hf, None

    async def _fetch_native(
        self, key: TileKey, progress: ProgressToken | None
    ) -> Heightfield | None:
        try:
            return await self.source.fetch(key, progress)
        except OperationCanceled:
            raise
        except Exception as e:
            # a failing backend means "no data here", never a failed composite
            logger.warning('Layer %s: source failed for %s: %s', self.name, key, e)
            return None

    async def _produce(
        self, key: TileKey, mem_key: str, progress: ProgressToken | None
    ) -> GeoHeightfield | None:
        policy = self.cache_policy
        hf, expired = self._read_persistent(key)
        normals: NormalMap | None = None
        fresh = False

        if hf is None:
            # expired entries are a fallback for a failed fetch only
            if policy.cache_only:
                logger.debug('Layer %s: %s not in cache (cache only)', self.name, key)
                return None
            if not self.is_key_in_legal_range(key):
                logger.debug('Layer %s: %s outside legal range', self.name, key)
                return None

            if key.profile.is_horiz_equivalent_to(self.profile):
                hf = await self._fetch_native(key, progress)
            else:
                assembled = await assemble_heightfield(self, key, progress)
                if assembled is not None:
                    hf, normals = assembled

            check_canceled(progress)

            if hf is not None and not validate_heightfield(hf):
                logger.warning('Layer %s: produced invalid tile %s', self.name, key)
                hf = None
                normals = None

            if hf is not None:
                fresh = True
                # a source may hand out grids it keeps using; assembled ones are ours
                if normals is None:
                    hf = hf.copy()
                if not key.profile.srs.is_vert_equivalent_to(self.profile.srs):
                    VerticalDatum.transform(
                        self.profile.srs.vertical_datum,
                        key.profile.srs.vertical_datum,
                        key.extent,
                        hf.grid,
                    )
                normalize_no_data_values(
                    hf, self.no_data_value, self.min_valid_value, self.max_valid_value
                )
                if self.tile_cache is not None and policy.writable:
                    check_canceled(progress)
                    self.tile_cache.put(
                        self.cache_id, self._persistent_key(key), encode_heightfield(hf)
                    )

        if hf is None and expired is not None:
            logger.info('Layer %s: serving expired cache entry for %s', self.name, key)
            hf = expired

        if hf is None:
            return None

        check_canceled(progress)
        if not fresh:
            logger.debug('Layer %s: %s from persistent cache', self.name, key)
        result = GeoHeightfield(
            hf.freeze(), key.extent, normals.freeze() if normals is not None else None
        )
        self.memory_cache.put(mem_key, result)
        return result


async def resolve_tile(
    layer: ElevationLayer, key: TileKey, progress: ProgressToken | None = None
) -> GeoHeightfield | None:
    """Resolve one tile of one layer through its cache tiers."""
    return await layer.create_heightfield(key, progress)

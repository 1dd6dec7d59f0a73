"""Raw elevation data sources.

A source cuts single tiles of its own profile; it knows nothing about
caching, compositing or other profiles.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass
from http import HTTPStatus
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING

import aiohttp
import numpy as np
from PIL import Image

from elevation.heightfield import GeoHeightfield, Heightfield
from geo.profile import Profile
from geo.srs import GeoExtent
from shared.constants import (
    DEFAULT_SOURCE_TILE_SIZE,
    HTTP_5XX_MAX,
    HTTP_5XX_MIN,
    HTTP_BACKOFF_FACTOR,
    HTTP_RETRIES_DEFAULT,
    HTTP_TIMEOUT_DEFAULT,
    MAX_LOD,
    TERRAIN_RGB_BASE_M,
    TERRAIN_RGB_STEP_M,
    TERRAIN_RGB_TILE_SIZE,
    TERRAIN_RGB_URL,
    Interpolation,
)
from shared.progress import check_canceled

if TYPE_CHECKING:
    from domain.models import SourceOptions
    from geo.profile import TileKey
    from shared.progress import ProgressToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataExtent:
    """Area where a source has data, and the LOD range it has it at."""

    extent: GeoExtent
    min_level: int = 0
    max_level: int = MAX_LOD


class ElevationSource(ABC):
    """Backend producing one tile of elevation samples at a time."""

    def __init__(
        self,
        profile: Profile,
        tile_size: int,
        data_extents: list[DataExtent] | None = None,
    ) -> None:
        self.profile = profile
        self.tile_size = tile_size
        self.data_extents = list(data_extents or [])

    @abstractmethod
    async def fetch(
        self, key: TileKey, progress: ProgressToken | None = None
    ) -> Heightfield | None:
        """Samples for a key of ``self.profile``; None means no data there."""

    async def close(self) -> None:  # noqa: B027
        """Release network or file resources."""


def decode_terrain_rgb(img: Image.Image) -> np.ndarray:
    """
    Decode a Terrain-RGB image into a 2-D array of heights in metres.

    elevation = -10000 + (R*256*256 + G*256 + B) * 0.1

    Row 0 of the result is the northern edge of the tile.
    """
    arr = np.asarray(img.convert('RGB'), dtype=np.float32)
    r = arr[:, :, 0]
    g = arr[:, :, 1]
    b = arr[:, :, 2]
    elevation = TERRAIN_RGB_BASE_M + (r * 65536.0 + g * 256.0 + b) * TERRAIN_RGB_STEP_M
    return elevation.astype(np.float32)


class TerrainRgbSource(ElevationSource):
    """Mapbox-style Terrain-RGB PNG tiles in the spherical-mercator profile.

    Usage:
        async with aiohttp.ClientSession() as session:
            source = TerrainRgbSource(api_key=token, session=session)
            hf = await source.fetch(key)
    """

    def __init__(
        self,
        *,
        url: str = TERRAIN_RGB_URL,
        api_key: str = '',
        max_data_level: int = 15,
        session: aiohttp.ClientSession | None = None,
        async_timeout: float = HTTP_TIMEOUT_DEFAULT,
        retries: int = HTTP_RETRIES_DEFAULT,
        backoff: float = HTTP_BACKOFF_FACTOR,
    ) -> None:
        profile = Profile.create('spherical-mercator')
        super().__init__(
            profile,
            TERRAIN_RGB_TILE_SIZE,
            [DataExtent(profile.extent, 0, max_data_level)],
        )
        self.url = url
        self.api_key = api_key
        self._session = session
        self._owns_session = session is None
        self.async_timeout = async_timeout
        self.retries = max(1, retries)
        self.backoff = backoff

    def _session_or_create(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def _download(self, key: TileKey, progress: ProgressToken | None) -> bytes | None:
        """PNG bytes of a tile; None on 404. Retries on 429/5xx.

        The access token is never logged; messages use the path without query.
        """
        path = self.url.format(z=key.lod, x=key.x, y=key.y)
        url = f'{path}?access_token={self.api_key}' if self.api_key else path
        client = self._session_or_create()

        last_exc: Exception | None = None
        for attempt in range(self.retries):
            check_canceled(progress)
            try:
                timeout = aiohttp.ClientTimeout(total=self.async_timeout)
                resp = await client.get(url, timeout=timeout)
                try:
                    sc = resp.status
                    if sc == HTTPStatus.OK:
                        return await resp.read()
                    if sc == HTTPStatus.NOT_FOUND:
                        return None
                    if sc in (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN):
                        msg = f'Access denied (HTTP {sc}) for terrain tile {key.path} path={path}'
                        raise PermissionError(msg)
                    is_rate_or_5xx = (sc == HTTPStatus.TOO_MANY_REQUESTS) or (
                        HTTP_5XX_MIN <= sc < HTTP_5XX_MAX
                    )
                    if is_rate_or_5xx:
                        last_exc = RuntimeError(
                            f'HTTP {sc} while fetching terrain tile {key.path} path={path}'
                        )
                    else:
                        last_exc = RuntimeError(
                            f'Unexpected HTTP {sc} for terrain tile {key.path} path={path}'
                        )
                finally:
                    with suppress(Exception):
                        resp.release()
            except PermissionError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exc = e
            await asyncio.sleep(self.backoff**attempt)
        msg = f'Failed to fetch terrain tile {key.path}: {last_exc}'
        raise RuntimeError(msg)

    async def fetch(
        self, key: TileKey, progress: ProgressToken | None = None
    ) -> Heightfield | None:
        data = await self._download(key, progress)
        if data is None:
            return None
        img = Image.open(BytesIO(data))
        elevation = decode_terrain_rgb(img)
        # heightfield rows run south to north
        return Heightfield.from_grid(np.flipud(elevation))


class RasterSource(ElevationSource):
    """In-memory DEM cut into tiles of a profile.

    ``dem`` row 0 is the northern edge of ``bounds`` (image order); samples
    are taken at tile-grid positions with the given interpolation.
    """

    def __init__(
        self,
        dem: np.ndarray,
        bounds: tuple[float, float, float, float],
        profile: Profile,
        *,
        tile_size: int = DEFAULT_SOURCE_TILE_SIZE,
        max_data_level: int = MAX_LOD,
        interpolation: Interpolation = Interpolation.BILINEAR,
    ) -> None:
        extent = GeoExtent(profile.srs, *bounds)
        super().__init__(profile, tile_size, [DataExtent(extent, 0, max_data_level)])
        self.interpolation = interpolation
        self._raster = GeoHeightfield(Heightfield.from_grid(np.flipud(dem)), extent)

    @classmethod
    def from_file(cls, path: str | Path, bounds, profile: Profile, **kwargs) -> RasterSource:
        """Load a DEM saved with ``numpy.save``."""
        dem = np.load(Path(path), allow_pickle=False)
        if dem.ndim != 2:
            msg = f'DEM must be 2-D, got shape {dem.shape}'
            raise ValueError(msg)
        logger.info('Loaded DEM %s: %dx%d', path, dem.shape[1], dem.shape[0])
        return cls(dem, tuple(bounds), profile, **kwargs)

    async def fetch(
        self, key: TileKey, progress: ProgressToken | None = None
    ) -> Heightfield | None:
        check_canceled(progress)
        ext = key.extent
        if not ext.intersects(self._raster.extent):
            return None
        n = self.tile_size
        xs = ext.xmin + ext.width / (n - 1) * np.arange(n)
        ys = ext.ymin + ext.height / (n - 1) * np.arange(n)
        gx, gy = np.meshgrid(xs, ys)
        values = self._raster.sample(
            gx.ravel(), gy.ravel(), ext.srs, interpolation=self.interpolation
        )
        return Heightfield(width=n, height=n, samples=values)


def create_source(options: SourceOptions) -> ElevationSource:
    """Build a source from its configuration section."""
    if options.type == 'terrain-rgb':
        return TerrainRgbSource(
            url=options.url,
            api_key=options.api_key,
            max_data_level=options.max_data_level,
        )
    if options.type == 'raster':
        return RasterSource.from_file(
            options.path,
            options.bounds,
            Profile.create(options.profile),
            tile_size=options.tile_size,
            max_data_level=options.max_data_level,
        )
    msg = f'Unknown source type: {options.type}'
    raise ValueError(msg)

"""Tests for elevation sources."""

from __future__ import annotations

from io import BytesIO
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import numpy as np
import pytest
from PIL import Image

from domain.models import SourceOptions
from elevation.sources import (
    RasterSource,
    TerrainRgbSource,
    create_source,
    decode_terrain_rgb,
)
from geo.profile import Profile, TileKey
from geo.srs import SpatialReference

# Terrain-RGB pixels for 0 m and 100 m
RGB_ZERO = (1, 134, 160)
RGB_HUNDRED = (1, 138, 136)


def _create_test_png() -> bytes:
    """2x2 PNG: top row 100 m, bottom row 0 m."""
    img = Image.new('RGB', (2, 2))
    img.putpixel((0, 0), RGB_HUNDRED)
    img.putpixel((1, 0), RGB_HUNDRED)
    img.putpixel((0, 1), RGB_ZERO)
    img.putpixel((1, 1), RGB_ZERO)
    buf = BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()


def _mock_response(status: int, body: bytes = b'') -> MagicMock:
    resp = MagicMock()
    resp.status = status
    resp.read = AsyncMock(return_value=body)
    return resp


def _mock_session(*responses) -> MagicMock:
    session = MagicMock()
    session.closed = False
    session.get = AsyncMock(side_effect=list(responses))
    return session


@pytest.fixture
def merc_key():
    return TileKey(3, 4, 2, Profile.create('spherical-mercator'))


@pytest.fixture
def small_profile():
    """One 4x4 degree tile at LOD 0, origin at (0, 0)."""
    return Profile(SpatialReference.create('wgs84'), 0.0, 0.0, 4.0, 4.0, 1, 1)


class TestDecodeTerrainRgb:
    def test_known_values(self):
        """Test pixel encoding of 0 m and 100 m."""
        img = Image.open(BytesIO(_create_test_png()))
        elevation = decode_terrain_rgb(img)
        assert elevation.shape == (2, 2)
        assert elevation[0].tolist() == pytest.approx([100.0, 100.0], abs=0.01)
        assert elevation[1].tolist() == pytest.approx([0.0, 0.0], abs=0.01)


class TestTerrainRgbSource:
    def test_profile(self):
        """Test source uses spherical mercator and caps its data level."""
        source = TerrainRgbSource(max_data_level=12)
        assert source.profile == Profile.create('spherical-mercator')
        assert source.tile_size == 256
        assert source.data_extents[0].max_level == 12

    @pytest.mark.asyncio
    async def test_fetch_flips_rows(self, merc_key):
        """Test decoded rows run south to north."""
        session = _mock_session(_mock_response(200, _create_test_png()))
        source = TerrainRgbSource(api_key='secret', session=session)

        hf = await source.fetch(merc_key)

        assert (hf.width, hf.height) == (2, 2)
        assert hf.grid[0].tolist() == pytest.approx([0.0, 0.0], abs=0.01)
        assert hf.grid[1].tolist() == pytest.approx([100.0, 100.0], abs=0.01)
        url = session.get.call_args.args[0]
        assert '/3/4/2.pngraw' in url
        assert url.endswith('access_token=secret')

    @pytest.mark.asyncio
    async def test_not_found_is_no_data(self, merc_key):
        """Test 404 means no data rather than an error."""
        source = TerrainRgbSource(session=_mock_session(_mock_response(404)))
        assert await source.fetch(merc_key) is None

    @pytest.mark.asyncio
    async def test_forbidden_raises(self, merc_key):
        """Test auth errors are not retried."""
        session = _mock_session(_mock_response(403))
        source = TerrainRgbSource(session=session, retries=3)
        with pytest.raises(PermissionError, match='Access denied'):
            await source.fetch(merc_key)
        assert session.get.await_count == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self, merc_key):
        """Test 5xx is retried and then succeeds."""
        session = _mock_session(
            _mock_response(503), _mock_response(200, _create_test_png())
        )
        source = TerrainRgbSource(session=session, retries=3)
        with patch('elevation.sources.asyncio.sleep', new=AsyncMock()) as sleep:
            hf = await source.fetch(merc_key)
        assert hf is not None
        assert session.get.await_count == 2
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, merc_key):
        """Test persistent failures raise after the last attempt."""
        session = _mock_session(
            _mock_response(500),
            aiohttp.ClientConnectionError('reset'),
        )
        source = TerrainRgbSource(session=session, retries=2)
        with patch('elevation.sources.asyncio.sleep', new=AsyncMock()):
            with pytest.raises(RuntimeError):
                await source.fetch(merc_key)
        assert session.get.await_count == 2

    @pytest.mark.asyncio
    async def test_close_keeps_foreign_session(self):
        """Test a session passed in is not closed by the source."""
        session = _mock_session()
        session.close = AsyncMock()
        source = TerrainRgbSource(session=session)
        await source.close()
        session.close.assert_not_awaited()


class TestRasterSource:
    @pytest.fixture
    def dem(self):
        # row 0 = north
        return np.array([[7.0, 8.0, 9.0], [4.0, 5.0, 6.0], [1.0, 2.0, 3.0]])

    @pytest.mark.asyncio
    async def test_tile_matching_raster(self, small_profile, dem):
        """Test a tile equal to the raster bounds returns its samples."""
        source = RasterSource(dem, (0.0, 0.0, 2.0, 2.0), small_profile, tile_size=3)
        # LOD 1, column 0, row 1 is the south-west quarter
        hf = await source.fetch(TileKey(1, 0, 1, small_profile))
        assert hf.grid.tolist() == [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0], [7.0, 8.0, 9.0]]

    @pytest.mark.asyncio
    async def test_interpolates_inside(self, small_profile, dem):
        source = RasterSource(dem, (0.0, 0.0, 2.0, 2.0), small_profile, tile_size=3)
        hf = await source.fetch(TileKey(2, 1, 2, small_profile))
        # x and y in [1, 2]
        assert hf.grid[0].tolist() == pytest.approx([5.0, 5.5, 6.0])

    @pytest.mark.asyncio
    async def test_outside_raster(self, small_profile, dem):
        source = RasterSource(dem, (0.0, 0.0, 2.0, 2.0), small_profile, tile_size=3)
        assert await source.fetch(TileKey(2, 3, 0, small_profile)) is None

    def test_from_file(self, tmp_path, small_profile, dem):
        path = tmp_path / 'dem.npy'
        np.save(path, dem)
        source = RasterSource.from_file(path, [0, 0, 2, 2], small_profile, tile_size=3)
        assert source.data_extents[0].extent.xmax == 2.0

    def test_from_file_rejects_cube(self, tmp_path, small_profile):
        path = tmp_path / 'cube.npy'
        np.save(path, np.zeros((2, 2, 2)))
        with pytest.raises(ValueError, match='2-D'):
            RasterSource.from_file(path, (0, 0, 2, 2), small_profile)


class TestCreateSource:
    def test_raster(self, tmp_path):
        path = tmp_path / 'dem.npy'
        np.save(path, np.zeros((4, 4)))
        options = SourceOptions(
            type='raster', path=str(path), bounds=(0, 0, 10, 10), tile_size=17
        )
        source = create_source(options)
        assert isinstance(source, RasterSource)
        assert source.tile_size == 17
        assert source.profile == Profile.create('global-geodetic')

    def test_terrain_rgb(self):
        options = SourceOptions(type='terrain-rgb', api_key='k', max_data_level=10)
        source = create_source(options)
        assert isinstance(source, TerrainRgbSource)
        assert source.api_key == 'k'

    def test_raster_requires_path(self):
        with pytest.raises(ValueError):
            SourceOptions(type='raster')

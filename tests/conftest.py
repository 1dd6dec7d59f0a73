"""Pytest configuration and fixtures for elevation compositor tests."""

import asyncio
import sys
from pathlib import Path

import numpy as np
import pytest

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from domain.models import ElevationLayerOptions  # noqa: E402
from elevation.heightfield import Heightfield  # noqa: E402
from elevation.layer import ElevationLayer  # noqa: E402
from elevation.sources import ElevationSource  # noqa: E402
from geo.profile import Profile  # noqa: E402


class CountingSource(ElevationSource):
    """Fake backend: constant (or per-key) grids, counts every fetch.

    ``values`` is a number, a (rows, cols) array, or a callable
    ``key -> number | array | None``. ``fail`` makes every fetch raise.
    """

    def __init__(
        self,
        profile,
        *,
        tile_size=5,
        values=100.0,
        data_extents=None,
        delay=0.0,
        fail=False,
        on_fetch=None,
    ):
        super().__init__(profile, tile_size, data_extents)
        self.values = values
        self.delay = delay
        self.fail = fail
        self.on_fetch = on_fetch
        self.calls = []

    async def fetch(self, key, progress=None):
        self.calls.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_fetch is not None:
            self.on_fetch(key)
        if self.fail:
            raise RuntimeError('backend unavailable')
        value = self.values(key) if callable(self.values) else self.values
        if value is None:
            return None
        if np.ndim(value) == 0:
            return Heightfield.allocate(self.tile_size, self.tile_size, fill=float(value))
        return Heightfield.from_grid(np.asarray(value, dtype=np.float32))


@pytest.fixture
def geodetic():
    """Global geodetic profile (2x1 tiles at LOD 0)."""
    return Profile.create('global-geodetic')


@pytest.fixture
def source_factory(geodetic):
    """Build CountingSource instances (geodetic profile by default)."""

    def _make(profile=None, **kwargs):
        return CountingSource(profile or geodetic, **kwargs)

    return _make


@pytest.fixture
def layer_factory(source_factory):
    """Build an ElevationLayer around a CountingSource.

    Returns (layer, source). Option keywords go to ElevationLayerOptions,
    ``source_kwargs`` to the source.
    """
    counter = {'n': 0}

    def _make(name=None, *, source=None, tile_cache=None, source_kwargs=None, **options):
        counter['n'] += 1
        if source is None:
            source = source_factory(**(source_kwargs or {}))
        opts = ElevationLayerOptions(name=name or f'layer{counter["n"]}', **options)
        return ElevationLayer(opts, source, tile_cache=tile_cache), source

    return _make

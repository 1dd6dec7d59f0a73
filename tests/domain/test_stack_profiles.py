"""Tests for TOML stack profiles."""

import pytest

from domain.models import ElevationLayerOptions, StackSettings
from domain.profiles import load_stack_settings, save_stack_settings
from shared.constants import CacheUsage

PROFILE_TOML = '''
profile = "global-geodetic"
tile_size = 33
max_working_set = 8

[[layers]]
name = "gebco"
max_data_level = 8

[layers.source]
type = "raster"
path = "gebco.npy"
bounds = [-180, -90, 180, 90]

[[layers]]
name = "geoid-fix"
offset = true

[layers.cache_policy]
usage = "read_only"
max_age_s = 86400
'''


@pytest.fixture
def profile_file(tmp_path):
    path = tmp_path / 'stack.toml'
    path.write_text(PROFILE_TOML, encoding='utf-8')
    return path


class TestLoadStackSettings:
    def test_load(self, profile_file):
        settings = load_stack_settings(profile_file)
        assert settings.tile_size == 33
        assert [layer.name for layer in settings.layers] == ['gebco', 'geoid-fix']
        assert settings.layers[0].source.bounds == (-180, -90, 180, 90)
        assert settings.layers[1].offset
        assert settings.layers[1].cache_policy.usage == CacheUsage.READ_ONLY

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_stack_settings(tmp_path / 'nope.toml')

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / 'bad.toml'
        path.write_text('tile_size = = 3', encoding='utf-8')
        with pytest.raises(ValueError, match='Invalid TOML'):
            load_stack_settings(path)

    def test_invalid_values(self, tmp_path):
        path = tmp_path / 'bad.toml'
        path.write_text('tile_size = 1\n', encoding='utf-8')
        with pytest.raises(ValueError, match='Invalid stack profile'):
            load_stack_settings(path)


class TestSaveStackSettings:
    def test_roundtrip(self, tmp_path):
        settings = StackSettings(
            tile_size=65,
            cache_dir='tiles-cache',
            layers=[ElevationLayerOptions(name='a'), ElevationLayerOptions(name='b', offset=True)],
        )
        path = save_stack_settings(tmp_path / 'nested' / 'out.toml', settings)
        assert path.exists()
        assert load_stack_settings(path) == settings

import argparse
import logging

import numpy as np
import pytest

from geo.profile import Profile
from main import build_parser, main, parse_tile, setup_logging


@pytest.fixture
def geodetic_profile():
    return Profile.create('global-geodetic')


@pytest.fixture
def stack_profile(tmp_path):
    dem = tmp_path / 'dem.npy'
    np.save(dem, np.full((16, 32), 250.0))
    path = tmp_path / 'stack.toml'
    path.write_text(
        f'''
tile_size = 9
cache_dir = "{(tmp_path / 'cache').as_posix()}"

[[layers]]
name = "dem"

[layers.source]
type = "raster"
path = "{dem.as_posix()}"
bounds = [-180, -90, 180, 90]
tile_size = 9
''',
        encoding='utf-8',
    )
    return path


class TestParseTile:
    def test_valid(self, geodetic_profile):
        key = parse_tile('2/5/1', geodetic_profile)
        assert (key.lod, key.x, key.y) == (2, 5, 1)
        assert key.profile is geodetic_profile

    @pytest.mark.parametrize('text', ['2/5', 'a/b/c', '0/2/0', '1/0/2'])
    def test_invalid(self, geodetic_profile, text):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_tile(text, geodetic_profile)


class TestMain:
    def test_setup_logging(self, tmp_path):
        log_file = setup_logging(tmp_path / 'log', level=logging.DEBUG)
        assert log_file == tmp_path / 'log' / 'elevation.log'
        assert (tmp_path / 'log').is_dir()

    def test_parser_defaults(self):
        args = build_parser().parse_args(['--profile', 'p.toml', '0/0/0'])
        assert args.tiles == ['0/0/0']
        assert args.interpolation is None
        assert not args.no_normals

    def test_run_composites_tiles(self, stack_profile, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        code = main(['--profile', str(stack_profile), '1/0/0', '1/3/1', '--no-normals'])
        assert code == 0
        assert (tmp_path / 'cache' / 'bin_dem.db').exists()

    def test_bad_tile(self, stack_profile, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert main(['--profile', str(stack_profile), '1/9/9']) == 2

    def test_missing_profile(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert main(['--profile', str(tmp_path / 'missing.toml'), '0/0/0']) == 2

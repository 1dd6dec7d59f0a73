"""Command line entry point: composite elevation tiles from a TOML profile."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import numpy as np

from domain.profiles import load_stack_settings
from elevation.factory import create_stack
from geo.profile import Profile, TileKey
from shared.constants import NO_DATA_VALUE, Interpolation
from shared.diagnostics import log_cache_stats, log_memory_usage, log_thread_status
from shared.progress import ConsoleProgress, ProgressToken
from tiles.cache import TileCache

logger = logging.getLogger(__name__)


def setup_logging(log_dir: Path | None = None, level: int = logging.INFO) -> Path:
    """Configure logging to stdout and a file.

    Returns:
        Path of the log file.
    """
    log_dir = log_dir or Path.cwd() / 'log'
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / 'elevation.log'

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(str(log_file), encoding='utf-8'),
        ],
    )
    return log_file


def parse_tile(text: str, profile: Profile) -> TileKey:
    """``lod/x/y`` -> TileKey of ``profile``."""
    try:
        lod, x, y = (int(part) for part in text.strip().split('/'))
    except ValueError as e:
        msg = f'Tile must be lod/x/y, got {text!r}'
        raise argparse.ArgumentTypeError(msg) from e
    nx, ny = profile.num_tiles(lod)
    if lod < 0 or not (0 <= x < nx and 0 <= y < ny):
        msg = f'Tile {text} is outside the profile ({nx}x{ny} tiles at LOD {lod})'
        raise argparse.ArgumentTypeError(msg)
    return TileKey(lod, x, y, profile)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Composite elevation tiles from the layers of a TOML profile'
    )
    parser.add_argument('--profile', required=True, type=Path, help='TOML stack profile')
    parser.add_argument('tiles', nargs='+', help='Tiles as lod/x/y')
    parser.add_argument(
        '--no-normals', action='store_true', help='Skip normal map synthesis'
    )
    parser.add_argument(
        '--interpolation',
        choices=[mode.value for mode in Interpolation],
        default=None,
        help='Sampling mode (defaults to the profile setting)',
    )
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser


async def run(args: argparse.Namespace) -> int:
    settings = load_stack_settings(args.profile)
    profile = Profile.create(settings.profile)
    keys = [parse_tile(t, profile) for t in args.tiles]
    interpolation = (
        Interpolation(args.interpolation) if args.interpolation else settings.interpolation
    )

    cache = TileCache(settings.cache_dir) if settings.cache_dir else None
    stack = create_stack(settings, tile_cache=cache)
    token = ProgressToken()
    bar = ConsoleProgress(len(keys), label='Tiles')
    failures = 0
    try:
        for key in keys:
            hf, _normals, real = await stack.composite(
                key,
                interpolation,
                progress=token,
                normals=not args.no_normals,
            )
            bar.step()
            if hf is None:
                failures += 1
                logger.warning('Tile %s: cancelled', key.path)
                continue
            valid = hf.samples[hf.samples != NO_DATA_VALUE]
            if valid.size == 0:
                logger.info('Tile %s: no elevation data', key.path)
                continue
            logger.info(
                'Tile %s: %dx%d min=%.1f max=%.1f real_data=%s',
                key.path,
                hf.width,
                hf.height,
                float(np.min(valid)),
                float(np.max(valid)),
                real,
            )
    finally:
        bar.close()
        await stack.close()
        if cache is not None:
            cache.cleanup_lru()
            log_cache_stats(cache.get_stats())
            cache.close()
    log_memory_usage('after composite run')
    return 1 if failures else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    logger.info('Elevation compositor starting')
    try:
        return asyncio.run(run(args))
    except (FileNotFoundError, ValueError) as e:
        logger.error('Configuration error: %s', e)
        return 2
    except argparse.ArgumentTypeError as e:
        logger.error('%s', e)
        return 2
    finally:
        log_thread_status()


if __name__ == '__main__':
    sys.exit(main())

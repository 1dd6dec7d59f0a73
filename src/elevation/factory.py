"""Building layers and stacks from configuration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from elevation.compositor import ElevationLayerStack
from elevation.layer import ElevationLayer
from elevation.sources import create_source

if TYPE_CHECKING:
    from domain.models import ElevationLayerOptions, StackSettings
    from elevation.sources import ElevationSource
    from tiles.cache import TileCache

logger = logging.getLogger(__name__)


def create_layer(
    options: ElevationLayerOptions,
    *,
    source: ElevationSource | None = None,
    tile_cache: TileCache | None = None,
) -> ElevationLayer:
    """Layer for ``options``; the source comes from its section unless given."""
    if source is None:
        if options.source is None:
            msg = f'Layer {options.name!r} has no source'
            raise ValueError(msg)
        source = create_source(options.source)
    return ElevationLayer(options, source, tile_cache=tile_cache)


def create_stack(
    settings: StackSettings, *, tile_cache: TileCache | None = None
) -> ElevationLayerStack:
    """All configured layers in file order (last = highest priority)."""
    stack = ElevationLayerStack(
        tile_size=settings.tile_size, max_working_set=settings.max_working_set
    )
    for options in settings.layers:
        stack.add(create_layer(options, tile_cache=tile_cache))
        logger.info(
            'Layer %s added (%s)', options.name, 'offset' if options.offset else 'base'
        )
    return stack

"""Elevation module - heightfields, layers and multi-layer compositing."""

from .compositor import ElevationLayerStack, ResolvedContribution, composite
from .factory import create_layer, create_stack
from .heightfield import GeoHeightfield, Heightfield, NormalMap
from .layer import ElevationLayer, LayerStatus, resolve_tile
from .sources import DataExtent, ElevationSource, RasterSource, TerrainRgbSource

__all__ = [
    'DataExtent',
    'ElevationLayer',
    'ElevationLayerStack',
    'ElevationSource',
    'GeoHeightfield',
    'Heightfield',
    'LayerStatus',
    'NormalMap',
    'RasterSource',
    'ResolvedContribution',
    'TerrainRgbSource',
    'composite',
    'create_layer',
    'create_stack',
    'resolve_tile',
]

"""Geo module - spatial references, extents and tiling schemes."""

from .profile import Profile, TileKey, next_power_of_2
from .srs import GeoExtent, SpatialReference, VerticalDatum

__all__ = [
    'GeoExtent',
    'Profile',
    'SpatialReference',
    'TileKey',
    'VerticalDatum',
    'next_power_of_2',
]

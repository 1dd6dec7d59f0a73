"""Domain layer - configuration models and profiles."""
from domain.models import (
    CachePolicy,
    ElevationLayerOptions,
    SourceOptions,
    StackSettings,
)
from domain.profiles import load_stack_settings, save_stack_settings

__all__ = [
    'CachePolicy',
    'ElevationLayerOptions',
    'SourceOptions',
    'StackSettings',
    'load_stack_settings',
    'save_stack_settings',
]

"""TOML profiles describing a compositing stack."""

from __future__ import annotations

import logging
from pathlib import Path

import tomlkit
from pydantic import ValidationError
from tomlkit.exceptions import ParseError

from domain.models import StackSettings

logger = logging.getLogger(__name__)


def load_stack_settings(path: str | Path) -> StackSettings:
    """
    Load and validate a stack profile.

    Layers are listed bottom-up as ``[[layers]]`` tables: the last one has
    the highest priority.
    """
    p = Path(path)
    if not p.exists():
        msg = f'Profile not found: {p}'
        raise FileNotFoundError(msg)
    text = p.read_text(encoding='utf-8')
    try:
        data = tomlkit.parse(text).unwrap()
    except ParseError as e:
        msg = f'Invalid TOML in {p}: {e}'
        raise ValueError(msg) from e

    try:
        settings = StackSettings.model_validate(data)
    except ValidationError as e:
        msg = f'Invalid stack profile {p}: {e}'
        raise ValueError(msg) from e

    logger.info(
        'Loaded stack profile %s: profile=%s, tile_size=%d, layers=%s',
        p.name,
        settings.profile,
        settings.tile_size,
        [layer.name for layer in settings.layers],
    )
    return settings


def save_stack_settings(path: str | Path, settings: StackSettings) -> Path:
    """Write a stack profile to TOML."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    data = settings.model_dump(mode='json', exclude_none=True)
    p.write_text(tomlkit.dumps(data), encoding='utf-8')
    return p

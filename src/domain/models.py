import time
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from shared.constants import (
    DEFAULT_SOURCE_TILE_SIZE,
    DEFAULT_TILE_SIZE,
    HEIGHTFIELD_MAX_SIZE,
    HEIGHTFIELD_MIN_SIZE,
    MAX_WORKING_SET,
    MEMORY_CACHE_SIZE,
    TERRAIN_RGB_URL,
    TILE_CACHE_DIR,
    CacheUsage,
    Interpolation,
)


class CachePolicy(BaseModel):
    """Read/write/expiration policy for the persistent cache tier.

    ``max_age_s`` and ``min_time`` both bound how old an entry may be; the
    stricter of the two wins. ``None`` means "no limit".
    """

    model_config = {'frozen': True}

    usage: CacheUsage = CacheUsage.READ_WRITE
    max_age_s: float | None = None
    min_time: float | None = None

    @field_validator('max_age_s')
    @classmethod
    def validate_max_age(cls, v: float | None) -> float | None:
        if v is not None and v < 0:
            msg = 'max_age_s must be >= 0'
            raise ValueError(msg)
        return v

    @property
    def readable(self) -> bool:
        return self.usage in (
            CacheUsage.READ_WRITE,
            CacheUsage.READ_ONLY,
            CacheUsage.CACHE_ONLY,
        )

    @property
    def writable(self) -> bool:
        return self.usage == CacheUsage.READ_WRITE

    @property
    def cache_only(self) -> bool:
        return self.usage == CacheUsage.CACHE_ONLY

    def min_accept_time(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        accept = 0.0
        if self.max_age_s is not None:
            accept = now - self.max_age_s
        if self.min_time is not None:
            accept = max(accept, self.min_time)
        return accept

    def is_expired(self, last_modified: float, now: float | None = None) -> bool:
        return last_modified < self.min_accept_time(now)


class SourceOptions(BaseModel):
    """Where a layer's raw tiles come from."""

    model_config = {'extra': 'ignore'}

    type: Literal['terrain-rgb', 'raster']
    # terrain-rgb
    url: str = TERRAIN_RGB_URL
    api_key: str = ''
    tile_size: int = DEFAULT_SOURCE_TILE_SIZE
    max_data_level: int = 15
    # raster: .npy DEM with bounds in the profile's SRS, row 0 = north
    path: str | None = None
    bounds: tuple[float, float, float, float] | None = None
    profile: str = 'global-geodetic'

    @model_validator(mode='after')
    def validate_raster(self) -> 'SourceOptions':
        if self.type == 'raster' and (self.path is None or self.bounds is None):
            msg = 'raster source requires "path" and "bounds"'
            raise ValueError(msg)
        return self


class ElevationLayerOptions(BaseModel):
    """Per-layer settings; unset optional fields fall back to the source's own values."""

    model_config = {'extra': 'ignore'}

    name: str
    offset: bool = False
    enabled: bool = True
    min_level: int = 0
    max_level: int | None = None
    max_data_level: int | None = None
    tile_size: int | None = None
    no_data_value: float = -32767.0
    min_valid_value: float = -32000.0
    max_valid_value: float = 32000.0
    vertical_datum: str | None = None
    cache_id: str | None = None
    cache_policy: CachePolicy = Field(default_factory=CachePolicy)
    memory_cache_size: int = MEMORY_CACHE_SIZE
    source: SourceOptions | None = None

    @field_validator('min_level')
    @classmethod
    def validate_min_level(cls, v: int) -> int:
        if v < 0:
            msg = 'min_level must be >= 0'
            raise ValueError(msg)
        return v

    @field_validator('tile_size')
    @classmethod
    def validate_tile_size(cls, v: int | None) -> int | None:
        if v is not None and not (HEIGHTFIELD_MIN_SIZE <= v <= HEIGHTFIELD_MAX_SIZE):
            msg = (
                f'tile_size must be in [{HEIGHTFIELD_MIN_SIZE}, '
                f'{HEIGHTFIELD_MAX_SIZE}]'
            )
            raise ValueError(msg)
        return v

    @model_validator(mode='after')
    def validate_levels(self) -> 'ElevationLayerOptions':
        if self.max_level is not None and self.max_level < self.min_level:
            msg = 'max_level must be >= min_level'
            raise ValueError(msg)
        if self.min_valid_value > self.max_valid_value:
            msg = 'min_valid_value must be <= max_valid_value'
            raise ValueError(msg)
        return self

    @property
    def effective_cache_id(self) -> str:
        return self.cache_id or self.name


class StackSettings(BaseModel):
    """Settings of a whole compositing stack, loaded from a TOML profile."""

    model_config = {'extra': 'ignore'}

    profile: str = 'global-geodetic'
    tile_size: int = DEFAULT_TILE_SIZE
    max_working_set: int = MAX_WORKING_SET
    interpolation: Interpolation = Interpolation.BILINEAR
    cache_dir: str | None = TILE_CACHE_DIR
    layers: list[ElevationLayerOptions] = Field(default_factory=list)

    @field_validator('tile_size')
    @classmethod
    def validate_tile_size(cls, v: int) -> int:
        if not (HEIGHTFIELD_MIN_SIZE <= v <= HEIGHTFIELD_MAX_SIZE):
            msg = (
                f'tile_size must be in [{HEIGHTFIELD_MIN_SIZE}, '
                f'{HEIGHTFIELD_MAX_SIZE}]'
            )
            raise ValueError(msg)
        return v

    @field_validator('max_working_set')
    @classmethod
    def validate_working_set(cls, v: int) -> int:
        return max(1, int(v))

    @model_validator(mode='after')
    def validate_unique_names(self) -> 'StackSettings':
        names = [layer.name for layer in self.layers]
        if len(names) != len(set(names)):
            msg = 'layer names must be unique'
            raise ValueError(msg)
        return self

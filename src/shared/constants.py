from enum import Enum

import numpy as np

# Зарезервированное значение «нет данных» (-FLT_MAX)
NO_DATA_VALUE = float(np.finfo(np.float32).min)

# Допустимые размеры сетки высот (по каждой оси)
HEIGHTFIELD_MIN_SIZE = 2
HEIGHTFIELD_MAX_SIZE = 1024

# Размер выходной сетки композиции по умолчанию (2^n + 1)
DEFAULT_TILE_SIZE = 257

# Размер нативного тайла источника по умолчанию
DEFAULT_SOURCE_TILE_SIZE = 257

# Предел числа сеток источников, удерживаемых одним вызовом композиции
MAX_WORKING_SET = 50

# Минимальный размер тайла источника при пересчёте разрешения ключа
MIN_SOURCE_TILE_SIZE = 2

# Ёмкость кэша в памяти (сеток на слой)
MEMORY_CACHE_SIZE = 128

# Экваториальный радиус WGS84 (метры), запасной вариант без эллипсоида
EARTH_RADIUS_M = 6378137.0

# Полуширина мира Web Mercator (метры)
MERCATOR_HALF_WORLD_M = 20037508.342789244

# Допуск сравнения координат границ тайлов
EXTENT_EPSILON = 1e-9

# Кэш тайлов на диске
TILE_CACHE_DIR = '.cache/elevation'
TILE_CACHE_MAX_SIZE_MB = 2048

# HTTP
HTTP_TIMEOUT_DEFAULT = 20.0
HTTP_RETRIES_DEFAULT = 3
HTTP_BACKOFF_FACTOR = 1.5
HTTP_5XX_MIN = 500
HTTP_5XX_MAX = 600

# Terrain-RGB
TERRAIN_RGB_URL = 'https://api.mapbox.com/v4/mapbox.terrain-rgb/{z}/{x}/{y}.pngraw'
TERRAIN_RGB_BASE_M = -10000.0
TERRAIN_RGB_STEP_M = 0.1
TERRAIN_RGB_TILE_SIZE = 256


class Interpolation(str, Enum):
    """Способ выборки высоты между узлами сетки."""

    NEAREST = 'nearest'
    AVERAGE = 'average'
    BILINEAR = 'bilinear'


class CacheUsage(str, Enum):
    """Режим использования постоянного кэша."""

    READ_WRITE = 'read_write'
    READ_ONLY = 'read_only'
    CACHE_ONLY = 'cache_only'
    NO_CACHE = 'no_cache'


# Предельная широта Web Mercator (градусы)
MERCATOR_MAX_LAT_DEG = 85.0511287798066

# Ограничение на перебор уровней детализации при подборе эквивалентного LOD
MAX_LOD = 30

"""SQLite-based persistent tile cache with LRU eviction.

Entries are grouped into bins (one per layer cache id); every bin lives in
its own SQLite database so a layer's cache can be dropped in one go.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from shared.constants import TILE_CACHE_DIR, TILE_CACHE_MAX_SIZE_MB

logger = logging.getLogger(__name__)

_BIN_FILE_RE = re.compile(r'[^A-Za-z0-9_.-]')


@dataclass(frozen=True)
class CacheRecord:
    """Payload read back from the cache with its write timestamp."""

    data: bytes
    last_modified: float


@dataclass
class TileInfo:
    """Metadata of a cached entry."""

    bin: str
    key: str
    size_bytes: int
    fetched_at: float
    last_used_at: float


@dataclass
class CacheStats:
    """Statistics about the tile cache."""

    total_tiles: int
    total_size_bytes: int
    tiles_by_bin: dict[str, int]
    size_by_bin: dict[str, int]
    oldest_tile: float | None
    newest_tile: float | None


class TileCache:
    """SQLite tile cache with a separate database per bin.

    Features:
    - Separate SQLite database for each bin
    - WAL mode for concurrent reads
    - LRU eviction based on total cache size
    - Automatic last_used_at update on reads

    Usage:
        with TileCache('/tmp/cache') as cache:
            cache.put('srtm', '5/10/12-abc', payload)
            record = cache.get('srtm', '5/10/12-abc')
    """

    def __init__(self, cache_dir: str | Path | None = None) -> None:
        self.cache_dir = Path(cache_dir or TILE_CACHE_DIR)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._connections: dict[str, sqlite3.Connection] = {}
        self._lock = threading.RLock()
        logger.info('TileCache initialized at %s', self.cache_dir)

    @staticmethod
    def _file_stem(bin_name: str) -> str:
        return 'bin_' + _BIN_FILE_RE.sub('_', bin_name)

    def _get_db_path(self, bin_name: str) -> Path:
        return self.cache_dir / f'{self._file_stem(bin_name)}.db'

    def _get_connection(self, bin_name: str) -> sqlite3.Connection:
        if bin_name not in self._connections:
            db_path = self._get_db_path(bin_name)
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA synchronous=NORMAL')
            conn.execute('PRAGMA cache_size=-64000')  # 64MB cache
            self._init_schema(conn, bin_name)
            self._connections[bin_name] = conn
        return self._connections[bin_name]

    def _init_schema(self, conn: sqlite3.Connection, bin_name: str) -> None:
        conn.executescript('''
            CREATE TABLE IF NOT EXISTS metadata (
                name TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS tiles (
                key TEXT PRIMARY KEY,
                tile_data BLOB NOT NULL,
                fetched_at REAL NOT NULL,
                last_used_at REAL NOT NULL,
                size_bytes INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tiles_last_used ON tiles(last_used_at);
        ''')
        # the real bin name; the file name is sanitised
        conn.execute(
            "INSERT OR IGNORE INTO metadata (name, value) VALUES ('bin', ?)",
            (bin_name,),
        )
        conn.commit()

    def _known_bins(self) -> list[str]:
        bins = set(self._connections)
        for db_file in self.cache_dir.glob('bin_*.db'):
            conn = sqlite3.connect(str(db_file))
            try:
                row = conn.execute(
                    "SELECT value FROM metadata WHERE name = 'bin'"
                ).fetchone()
            except sqlite3.DatabaseError:
                logger.warning('Skipping unreadable cache file %s', db_file)
                continue
            finally:
                conn.close()
            if row is not None:
                bins.add(row[0])
        return sorted(bins)

    def get(self, bin_name: str, key: str) -> CacheRecord | None:
        """Read an entry; updates last_used_at for LRU tracking."""
        with self._lock:
            conn = self._get_connection(bin_name)
            row = conn.execute(
                'SELECT tile_data, fetched_at FROM tiles WHERE key = ?', (key,)
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                'UPDATE tiles SET last_used_at = ? WHERE key = ?', (time.time(), key)
            )
            conn.commit()
        return CacheRecord(data=bytes(row[0]), last_modified=float(row[1]))

    def get_info(self, bin_name: str, key: str) -> TileInfo | None:
        """Entry metadata without touching last_used_at."""
        with self._lock:
            conn = self._get_connection(bin_name)
            row = conn.execute(
                'SELECT size_bytes, fetched_at, last_used_at FROM tiles WHERE key = ?',
                (key,),
            ).fetchone()
        if row is None:
            return None
        return TileInfo(
            bin=bin_name,
            key=key,
            size_bytes=row[0],
            fetched_at=row[1],
            last_used_at=row[2],
        )

    def exists(self, bin_name: str, key: str) -> bool:
        with self._lock:
            conn = self._get_connection(bin_name)
            cursor = conn.execute('SELECT 1 FROM tiles WHERE key = ?', (key,))
            return cursor.fetchone() is not None

    def put(
        self,
        bin_name: str,
        key: str,
        data: bytes,
        fetched_at: float | None = None,
    ) -> None:
        """Store an entry, replacing any previous one under the same key.

        Args:
            bin_name: Cache bin (layer cache id).
            key: Entry key within the bin.
            data: Encoded payload.
            fetched_at: Timestamp the payload was produced at. Defaults to now.
        """
        now = time.time()
        fetched_at = now if fetched_at is None else fetched_at
        with self._lock:
            conn = self._get_connection(bin_name)
            conn.execute(
                '''INSERT OR REPLACE INTO tiles
                   (key, tile_data, fetched_at, last_used_at, size_bytes)
                   VALUES (?, ?, ?, ?, ?)''',
                (key, data, fetched_at, now, len(data)),
            )
            conn.commit()

    def delete(self, bin_name: str, key: str) -> bool:
        with self._lock:
            conn = self._get_connection(bin_name)
            cursor = conn.execute('DELETE FROM tiles WHERE key = ?', (key,))
            conn.commit()
            return cursor.rowcount > 0

    def get_stats(self) -> CacheStats:
        """Totals and a per-bin breakdown."""
        total_tiles = 0
        total_size = 0
        tiles_by_bin: dict[str, int] = {}
        size_by_bin: dict[str, int] = {}
        oldest_tile: float | None = None
        newest_tile: float | None = None

        with self._lock:
            for bin_name in self._known_bins():
                conn = self._get_connection(bin_name)
                row = conn.execute(
                    'SELECT COUNT(*), COALESCE(SUM(size_bytes), 0), '
                    'MIN(fetched_at), MAX(fetched_at) FROM tiles'
                ).fetchone()
                count, size, oldest, newest = row
                tiles_by_bin[bin_name] = count
                size_by_bin[bin_name] = size
                total_tiles += count
                total_size += size
                if oldest is not None and (oldest_tile is None or oldest < oldest_tile):
                    oldest_tile = oldest
                if newest is not None and (newest_tile is None or newest > newest_tile):
                    newest_tile = newest

        return CacheStats(
            total_tiles=total_tiles,
            total_size_bytes=total_size,
            tiles_by_bin=tiles_by_bin,
            size_by_bin=size_by_bin,
            oldest_tile=oldest_tile,
            newest_tile=newest_tile,
        )

    def cleanup_lru(self, max_size_mb: float | None = None) -> int:
        """Remove least recently used entries to stay under the size limit.

        Returns:
            Number of bytes freed.
        """
        if max_size_mb is None:
            max_size_mb = TILE_CACHE_MAX_SIZE_MB
        max_size_bytes = int(max_size_mb * 1024 * 1024)
        stats = self.get_stats()
        if stats.total_size_bytes <= max_size_bytes:
            return 0

        bytes_to_free = stats.total_size_bytes - max_size_bytes
        bytes_freed = 0

        # (bin, key, size, last_used)
        all_tiles: list[tuple[str, str, int, float]] = []
        with self._lock:
            for bin_name in stats.tiles_by_bin:
                conn = self._get_connection(bin_name)
                cursor = conn.execute('SELECT key, size_bytes, last_used_at FROM tiles')
                all_tiles.extend((bin_name, *row) for row in cursor)

        all_tiles.sort(key=lambda t: t[3])
        for bin_name, key, size, _ in all_tiles:
            if bytes_freed >= bytes_to_free:
                break
            if self.delete(bin_name, key):
                bytes_freed += size

        logger.info(
            'LRU cleanup: freed %.1f MB (target: %.1f MB)',
            bytes_freed / 1024 / 1024,
            bytes_to_free / 1024 / 1024,
        )
        return bytes_freed

    def clear_bin(self, bin_name: str) -> int:
        """Drop a whole bin. Returns the number of deleted entries."""
        db_path = self._get_db_path(bin_name)
        with self._lock:
            if not db_path.exists():
                return 0
            conn = self._connections.pop(bin_name, None)
            if conn is None:
                conn = sqlite3.connect(str(db_path))
            count = conn.execute('SELECT COUNT(*) FROM tiles').fetchone()[0]
            conn.close()
            for suffix in ('', '-wal', '-shm'):
                path = db_path.with_name(db_path.name + suffix)
                if path.exists():
                    path.unlink()
        logger.info('Cleared cache bin %s: %d tiles deleted', bin_name, count)
        return count

    def close(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
        logger.info('TileCache closed')

    def __enter__(self) -> TileCache:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

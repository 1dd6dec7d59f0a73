"""
Diagnostic utilities.

Process resource and cache logging around compositing runs: memory when a
composite drops its working set, thread and cache summaries on exit.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

import psutil

if TYPE_CHECKING:
    from tiles.cache import CacheStats

logger = logging.getLogger(__name__)


def _mb(n_bytes: float) -> float:
    return round(n_bytes / 1024 / 1024, 2)


def get_memory_info() -> dict[str, Any]:
    """Process RSS/VMS and system availability in megabytes."""
    try:
        rss_vms = psutil.Process().memory_info()
        system = psutil.virtual_memory()
    except Exception as e:
        return {'error': f'Failed to get memory info: {e}'}
    return {
        'process_rss_mb': _mb(rss_vms.rss),
        'process_vms_mb': _mb(rss_vms.vms),
        'system_total_mb': _mb(system.total),
        'system_available_mb': _mb(system.available),
        'system_used_percent': system.percent,
    }


def get_thread_info() -> dict[str, Any]:
    """Python-level threads, plus the OS thread count when psutil can read it."""
    info: dict[str, Any] = {
        'active_count': threading.active_count(),
        'thread_names': [t.name for t in threading.enumerate()],
    }
    try:
        info['system_threads'] = psutil.Process().num_threads()
    except Exception as e:
        logger.debug('Failed to get system thread count: %s', e)
    return info


def log_memory_usage(context: str = '') -> None:
    info = get_memory_info()
    suffix = f' ({context})' if context else ''
    logger.info(
        'Memory usage%s: RSS=%sMB, Available=%sMB',
        suffix,
        info.get('process_rss_mb', 'N/A'),
        info.get('system_available_mb', 'N/A'),
    )


def log_thread_status(context: str = '') -> None:
    info = get_thread_info()
    suffix = f' ({context})' if context else ''
    logger.info(
        'Thread status%s: Active=%s, System=%s',
        suffix,
        info.get('active_count', 'N/A'),
        info.get('system_threads', 'N/A'),
    )


def log_cache_stats(stats: CacheStats) -> None:
    """One summary line plus one line per bin of the persistent cache."""
    logger.info(
        'Tile cache: %d tiles, %.1f MB in %d bins',
        stats.total_tiles,
        _mb(stats.total_size_bytes),
        len(stats.tiles_by_bin),
    )
    for bin_name, count in sorted(stats.tiles_by_bin.items()):
        logger.info(
            '  %s: %d tiles, %.1f MB',
            bin_name,
            count,
            _mb(stats.size_by_bin.get(bin_name, 0)),
        )

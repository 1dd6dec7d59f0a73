"""Shared utilities and helpers."""
from shared.diagnostics import log_cache_stats, log_memory_usage, log_thread_status
from shared.progress import (
    ConsoleProgress,
    OperationCanceled,
    ProgressToken,
    check_canceled,
    is_canceled,
)

__all__ = [
    'ConsoleProgress',
    'OperationCanceled',
    'ProgressToken',
    'check_canceled',
    'is_canceled',
    'log_cache_stats',
    'log_memory_usage',
    'log_thread_status',
]

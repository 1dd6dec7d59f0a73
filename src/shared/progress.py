import logging
import sys
import threading
import time

logger = logging.getLogger(__name__)


class SingleLineRenderer:
    """Thread-safe renderer that redraws a single console line."""

    def __init__(self, *, single_line: bool = True) -> None:
        self.single_line = single_line
        self._last_len = 0
        self._lock = threading.Lock()

    def clear_line(self) -> None:
        """Erase the current progress line."""
        with self._lock:
            if self.single_line and self._last_len > 0:
                sys.stdout.write('\r' + ' ' * self._last_len + '\r')
                sys.stdout.flush()
            self._last_len = 0

    def write_line(self, msg: str) -> None:
        """Redraw the current progress line."""
        with self._lock:
            if self.single_line:
                pad = max(0, self._last_len - len(msg))
                sys.stdout.write('\r' + msg + (' ' * pad))
            else:
                sys.stdout.write(msg + '\n')
            sys.stdout.flush()
            self._last_len = len(msg)


DEFAULT_WRITER = SingleLineRenderer()


class ProgressToken:
    """Cooperative cancellation token with an optional diagnostic message.

    The core polls ``is_canceled()`` at fixed checkpoints (before cache
    writes, once per output column while resampling). Cancelling is
    one-way and may be done from any thread.

    Usage:
        token = ProgressToken()
        hf, normals, real = await composite(stack, key, progress=token)
        token.cancel()  # from another task or thread
    """

    def __init__(self) -> None:
        self._canceled = threading.Event()
        self._lock = threading.Lock()
        self._message = ''

    def cancel(self) -> None:
        """Request cancellation of all work observing this token."""
        self._canceled.set()

    def is_canceled(self) -> bool:
        return self._canceled.is_set()

    @property
    def message(self) -> str:
        with self._lock:
            return self._message

    def set_message(self, msg: str) -> None:
        """Record a diagnostic message (only the first one is kept)."""
        with self._lock:
            if not self._message:
                self._message = msg
        logger.debug('Progress message: %s', msg)


class OperationCanceled(Exception):
    """Raised inside the engine when a progress token was cancelled.

    Never leaves the public entry points: they turn it into an empty result.
    """


def is_canceled(progress: ProgressToken | None) -> bool:
    """True if a token was given and has been cancelled."""
    return progress is not None and progress.is_canceled()


def check_canceled(progress: ProgressToken | None) -> None:
    if is_canceled(progress):
        raise OperationCanceled


class ConsoleProgress:
    """Console progress bar for step-by-step operations."""

    def __init__(
        self,
        total: int,
        label: str = 'Progress',
        writer: SingleLineRenderer | None = None,
    ) -> None:
        self.total = max(1, int(total))
        self.done = 0
        self.start = time.monotonic()
        self.label = label
        self._writer = writer or DEFAULT_WRITER
        self._writer.clear_line()
        self._render()

    def _format_eta(self, remaining: float) -> str:
        if remaining == float('inf'):
            return '--:--'
        m, s = divmod(int(remaining), 60)
        h, m = divmod(m, 60)
        if h > 0:
            return f'{h:02d}:{m:02d}:{s:02d}'
        return f'{m:02d}:{s:02d}'

    def _render(self) -> None:
        elapsed = max(1e-6, time.monotonic() - self.start)
        rps = self.done / elapsed
        remaining = (self.total - self.done) / rps if rps > 0 else float('inf')
        bar_len = 30
        filled = int(bar_len * self.done / self.total)
        bar = '█' * filled + '░' * (bar_len - filled)
        msg = (
            f'{self.label}: [{bar}] {self.done}/{self.total} | {rps:4.1f}/s | ETA'
            f' {self._format_eta(remaining)}'
        )
        self._writer.write_line(msg)

    def step(self, n: int = 1) -> None:
        self.done = min(self.total, self.done + n)
        self._render()

    def close(self) -> None:
        self._writer.clear_line()

"""At-most-one-producer coordination for concurrent tile requests."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, TypeVar

from shared.progress import OperationCanceled, is_canceled

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from shared.progress import ProgressToken

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ProducerGate:
    """Per-key future map: one caller produces, concurrent callers await it.

    Waiters receive the producer's result or its exception. If the producer
    was cancelled (by its own progress token or by task cancellation), a
    waiter whose own token is still live takes over and produces itself.

    Usage:
        gate = ProducerGate()
        hf = await gate.run(cache_key, lambda: build(key), progress=token)
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._inflight

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(
        self,
        key: str,
        produce: Callable[[], Awaitable[T]],
        *,
        progress: ProgressToken | None = None,
    ) -> T:
        while (fut := self._inflight.get(key)) is not None:
            logger.debug('Waiting for in-flight producer of %s', key)
            try:
                return await asyncio.shield(fut)
            except OperationCanceled:
                if is_canceled(progress):
                    raise
            except asyncio.CancelledError:
                if not fut.cancelled():
                    raise
            # the producer gave up; take over unless the loop has a new one

        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            result = await produce()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except BaseException as e:
            fut.set_exception(e)
            # waiters may be absent; mark the exception as retrieved
            fut.exception()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            if self._inflight.get(key) is fut:
                del self._inflight[key]

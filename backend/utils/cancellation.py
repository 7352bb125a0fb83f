# backend/utils/cancellation.py
"""
Cooperative cancellation for pipeline runs.

A CancellationToken is shared between the event loop (HTTP call, stage
dwell) and the executor thread doing frame extraction, so it is backed by a
threading.Event rather than an asyncio primitive.
"""

import asyncio
import logging
import threading
from typing import Awaitable, Callable, List, Optional, TypeVar

from errors import PipelineCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Thread-safe, one-shot cancellation signal"""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Signal cancellation and fire registered callbacks once"""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback fired on cancellation.

        Fires immediately if the token is already cancelled.

        Returns:
            Function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister

        callback()
        return lambda: None

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise PipelineCancelledError(stage=stage)


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken],
    stage: str,
) -> T:
    """
    Await ``awaitable`` unless ``token`` is cancelled first.

    On cancellation the pending work is cancelled (an executor future only
    stops being awaited; its thread is expected to watch the token itself)
    and PipelineCancelledError is raised.
    """
    work = asyncio.ensure_future(awaitable)
    if token is None:
        return await work

    if token.cancelled:
        work.cancel()
        raise PipelineCancelledError(stage=stage)

    loop = asyncio.get_running_loop()
    cancelled = asyncio.Event()

    def _signal() -> None:
        if not loop.is_closed():
            loop.call_soon_threadsafe(cancelled.set)

    unregister = token.register(_signal)
    waiter = asyncio.ensure_future(cancelled.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        unregister()
        waiter.cancel()

    if work.done():
        return work.result()

    work.cancel()
    raise PipelineCancelledError(stage=stage)

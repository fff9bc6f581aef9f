"""Cooperative cancellation shared by the session, capture and polling code."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)


class CancelledByShutdown(Exception):
    """Raised at a step boundary once shutdown has been requested."""


class CancellationToken:
    """A one-shot shutdown flag with callbacks.

    Must be cancelled from the thread running the worker's event loop; other
    threads go through ``loop.call_soon_threadsafe(token.cancel)``.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.debug("Cancellation callback failed: %s", e)

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledByShutdown()


async def run_sequence(
    steps: Iterable[Callable[[], Optional[Awaitable]]],
    token: CancellationToken,
) -> bool:
    """Run async steps in order, stopping at the first boundary after cancel.

    Returns False when the sequence was cut short.
    """
    for step in steps:
        if token.cancelled:
            return False
        result = step()
        if result is not None:
            await result
    return not token.cancelled

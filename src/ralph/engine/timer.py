"""Cancellable waits for backoff delays."""

from __future__ import annotations

import asyncio


class BackoffTimer:
    """An ``asyncio.Event``-based sleep that :meth:`cancel` ends at once.

    Cancellation is sticky: once cancelled, current and future waits
    return ``False`` immediately.
    """

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._waiting = False

    @property
    def active(self) -> bool:
        return self._waiting

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def wait(self, seconds: float) -> bool:
        """Sleep *seconds*; ``True`` if the full delay elapsed."""
        if self._cancelled.is_set():
            return False
        self._waiting = True
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return True
        finally:
            self._waiting = False
        return False

    def cancel(self) -> None:
        self._cancelled.set()

"""Pause-file watcher."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from ralph.background_loop import BackgroundLoop

logger = logging.getLogger(__name__)

#: Seconds between pause-file checks.
DEFAULT_POLL_INTERVAL = 0.5


class PauseFileWatcher(BackgroundLoop):
    """Calls *on_pause* when *path* appears and *on_resume* when it goes away."""

    def __init__(
        self,
        shutdown_event: asyncio.Event,
        path: Path,
        on_pause: Callable[[], None],
        on_resume: Callable[[], None],
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        super().__init__(shutdown_event, interval)
        self._path = path
        self._on_pause = on_pause
        self._on_resume = on_resume
        self._present = False

    async def _tick(self) -> None:
        present = self._path.exists()
        if present == self._present:
            return
        self._present = present
        if present:
            logger.info("Pause file %s found", self._path)
            self._on_pause()
        else:
            logger.info("Pause file %s removed", self._path)
            self._on_resume()

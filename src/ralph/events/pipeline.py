"""HeadlessEventPipeline — the single ordered event stream of a run."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from ralph.events.models import HeadlessEvent, HeadlessSummary, StatsEvent

if TYPE_CHECKING:
    from ralph.engine.state import StatsSnapshot
    from ralph.events.formatters import EventFormatter

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class HeadlessEventPipeline:
    """Stamps, deduplicates, and forwards events to one formatter.

    Formatter failures are logged and never reach the engine.  After
    :meth:`finalize` the pipeline is closed and further events are
    dropped.
    """

    def __init__(
        self,
        formatter: EventFormatter,
        timestamps: bool = False,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._formatter = formatter
        self._timestamps = timestamps
        self._clock = clock
        self._last_stats: tuple[int, int, int] | None = None
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def emit(self, event: HeadlessEvent) -> None:
        if self._finalized:
            logger.debug("Dropping %s event emitted after finalize", event.type)
            return
        if self._timestamps:
            event.timestamp = self._clock()
        try:
            self._formatter.emit(event)
        except Exception:
            logger.exception("Formatter failed to emit %s event", event.type)

    def emit_stats(self, snapshot: StatsSnapshot) -> None:
        """Emit a ``stats`` event unless it would repeat the previous one."""
        payload = (snapshot.commits, snapshot.lines_added, snapshot.lines_removed)
        if payload == self._last_stats:
            return
        self._last_stats = payload
        self.emit(
            StatsEvent(
                commits=snapshot.commits,
                lines_added=snapshot.lines_added,
                lines_removed=snapshot.lines_removed,
            )
        )

    def finalize(self, exit_code: int, snapshot: StatsSnapshot) -> None:
        """Hand the run summary to the formatter.  Idempotent."""
        if self._finalized:
            return
        self._finalized = True
        summary = HeadlessSummary(
            exit_code=exit_code,
            duration_ms=max(0, self._clock() - snapshot.start_time),
            iterations=snapshot.iterations,
            tasks_complete=snapshot.tasks_complete,
            total_tasks=snapshot.total_tasks,
            commits=snapshot.commits,
            lines_added=snapshot.lines_added,
            lines_removed=snapshot.lines_removed,
        )
        try:
            self._formatter.finalize(summary)
        except Exception:
            logger.exception("Formatter failed to finalize")

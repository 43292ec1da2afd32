"""Session lock — one running loop per working directory."""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ralph.constants import LOCK_FILE
from ralph.platform import ProcessPlatform, get_platform

logger = logging.getLogger(__name__)

#: Schema version written into every lock file.
LOCK_VERSION = 1


class LockRecord(BaseModel):
    """Contents of the lock file."""

    model_config = ConfigDict(populate_by_name=True)

    pid: int = Field(description="PID of the process holding the lock")
    session_id: str = Field(alias="sessionId", description="Holder's session id")
    started_at: str = Field(alias="startedAt", description="ISO 8601 start time")
    version: int = Field(default=LOCK_VERSION, description="Lock schema version")


@dataclass(frozen=True)
class LockResult:
    """Outcome of :meth:`SessionLock.acquire`."""

    acquired: bool
    error: str | None = None
    existing_pid: int | None = None


class SessionLock:
    """File-based single-instance guard with PID staleness detection.

    A lock whose recorded PID is no longer alive is stale and silently
    reclaimed.  A live holder blocks acquisition unless ``force=True``.
    """

    def __init__(
        self,
        cwd: Path | None = None,
        lock_file: str = LOCK_FILE,
        platform: ProcessPlatform | None = None,
    ) -> None:
        self._path = (cwd or Path.cwd()) / lock_file
        self._platform = platform or get_platform()
        self._record: LockRecord | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def record(self) -> LockRecord | None:
        """The record this instance wrote, or ``None`` when not held."""
        return self._record

    @property
    def held(self) -> bool:
        return self._record is not None

    # ------------------------------------------------------------------ #
    # Acquire / release
    # ------------------------------------------------------------------ #

    def acquire(self, force: bool = False) -> LockResult:
        """Try to take the lock for the current process."""
        existing = self.read()
        if existing is not None:
            if self.is_live(existing.pid):
                if not force:
                    return LockResult(
                        acquired=False,
                        error=(
                            "Another ralph instance is running "
                            f"(PID {existing.pid})"
                        ),
                        existing_pid=existing.pid,
                    )
                logger.warning("Force acquiring lock from PID %d", existing.pid)
            else:
                logger.warning("Removing stale lock held by PID %d", existing.pid)

        record = LockRecord(
            pid=os.getpid(),
            session_id=uuid.uuid4().hex[:12],
            started_at=datetime.now(tz=UTC).isoformat(),
            version=LOCK_VERSION,
        )
        try:
            self._write(record)
        except OSError as exc:
            return LockResult(acquired=False, error=f"Failed to acquire lock: {exc}")

        self._record = record
        return LockResult(acquired=True)

    def release(self) -> None:
        """Delete the lock file if this instance holds it.

        A missing file is not an error.  If another process force-took
        the lock in the meantime its file is left alone.
        """
        if self._record is None:
            return
        current = self.read()
        if current is None or current.session_id == self._record.session_id:
            try:
                self._path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Failed to release lock %s: %s", self._path, exc)
        self._record = None

    def clear(self) -> None:
        """Remove the lock file regardless of owner (stale cleanup)."""
        self._path.unlink(missing_ok=True)

    # ------------------------------------------------------------------ #
    # Inspection
    # ------------------------------------------------------------------ #

    def read(self) -> LockRecord | None:
        """Return the current lock record, or ``None`` if absent/corrupt."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Cannot read lock file %s: %s", self._path, exc)
            return None
        try:
            return LockRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            logger.warning("Ignoring corrupt lock file %s", self._path)
            return None

    def is_live(self, pid: int) -> bool:
        if pid == os.getpid():
            return True
        return self._platform.is_process_running(pid)

    def _write(self, record: LockRecord) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(f"{self._path.name}.{os.getpid()}.tmp")
        tmp.write_text(
            record.model_dump_json(by_alias=True, indent=2),
            encoding="utf-8",
        )
        os.replace(tmp, self._path)

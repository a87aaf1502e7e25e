"""File-backed cooldown lock that limits notification cycles."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from testpulse.schemas import LockRecord

__all__ = ["NotificationLock", "new_run_id"]

LOGGER = logging.getLogger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class NotificationLock:
    """A JSON ``{timestamp, runId}`` file; the lock holds while it is fresh."""

    path: Path
    cooldown: timedelta = timedelta(minutes=5)
    clock: Callable[[], datetime] = _utcnow

    def read(self) -> LockRecord | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning("Could not read notification lock %s: %s", self.path, exc)
            return None
        try:
            return LockRecord.model_validate_json(raw)
        except ValidationError as exc:
            LOGGER.warning("Ignoring corrupt notification lock %s: %s", self.path, exc)
            return None

    def active_record(self) -> LockRecord | None:
        """Return the lock record if it is still inside the cooldown window."""

        record = self.read()
        if record is None:
            return None
        timestamp = record.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        if self.clock() - timestamp < self.cooldown:
            return record
        return None

    def is_locked(self) -> bool:
        return self.active_record() is not None

    def acquire(self, run_id: str | None = None) -> LockRecord:
        record = LockRecord(timestamp=self.clock(), run_id=run_id or new_run_id())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        tmp.write_text(record.model_dump_json(by_alias=True), encoding="utf-8")
        tmp.replace(self.path)
        LOGGER.info("Notification lock written for run %s", record.run_id)
        return record

    def release(self) -> None:
        self.path.unlink(missing_ok=True)

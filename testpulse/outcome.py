"""Result objects returned by best-effort notifiers."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class NotificationOutcome:
    channel: str
    ok: bool
    attempts: int = 1
    status_code: int | None = None
    error: str | None = None

    @classmethod
    def success(cls, channel: str, *, attempts: int = 1, status_code: int | None = None) -> "NotificationOutcome":
        return cls(channel=channel, ok=True, attempts=attempts, status_code=status_code)

    @classmethod
    def failure(
        cls,
        channel: str,
        error: str,
        *,
        attempts: int = 1,
        status_code: int | None = None,
    ) -> "NotificationOutcome":
        return cls(channel=channel, ok=False, attempts=attempts, status_code=status_code, error=error)

    @classmethod
    def skipped(cls, channel: str, reason: str) -> "NotificationOutcome":
        return cls(channel=channel, ok=False, attempts=0, error=reason)

"""Time source used by the credential and quota services."""

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Provides the current instant."""

    def now(self) -> datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

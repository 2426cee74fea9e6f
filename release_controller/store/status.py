"""Status information for a release request."""

import datetime
from enum import StrEnum
from dataclasses import dataclass, field


class ReleaseState(StrEnum):
    """Observable outcome of the last reconciliation of a request."""

    UNKNOWN = "Unknown"
    SUCCESS = "Success"
    FAILED = "Failed"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class ReleaseStatus:
    """Outcome of the last reconciliation and a human readable reason."""

    state: ReleaseState = ReleaseState.UNKNOWN
    reason: str = ""
    last_transition_time: datetime.datetime = field(default_factory=_now)

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.reason:
            return f"{self.state}: {self.reason}"
        return str(self.state)

from datetime import timedelta
from typing import List, Optional, Sequence

from webhook_retry.common.config import DEFAULT_BACKOFF_TABLE


class BackoffPolicy:
    """Fixed table of retry delays, clamped at its last entry.

    ``delay_for(n)`` is the wait applied after the n-th failed attempt, so the
    first failure waits ``delays[0]`` and every failure past the end of the
    table waits ``delays[-1]``.
    """

    def __init__(self, delays: Optional[Sequence[float]] = None):
        delays = list(DEFAULT_BACKOFF_TABLE if delays is None else delays)
        if not delays:
            raise ValueError("Backoff table must contain at least one delay")
        if any(delay < 0 for delay in delays):
            raise ValueError("Backoff delays must not be negative")
        self.delays: List[float] = delays

    def delay_for(self, attempt: int) -> timedelta:
        if attempt < 1:
            raise ValueError(f"Attempt numbers start at 1, got {attempt}")
        index = min(attempt - 1, len(self.delays) - 1)
        return timedelta(seconds=self.delays[index])

    def __repr__(self) -> str:
        return f"BackoffPolicy(delays={self.delays!r})"

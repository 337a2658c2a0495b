from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Callable

from infergate.core.errors import LedgerReadFailed
from infergate.services.ledger import UsageLedger


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    # Derived view of one user's rolling window; never persisted.
    request_count: int
    requests_allowed: int
    requests_remaining: int
    reset_at: datetime
    retry_after_s: int
    degraded: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _retry_after_s(reset_at: datetime, now: datetime) -> int:
    # Whole seconds until the oldest counted event leaves the window, never below 1.
    return max(1, int(math.ceil((reset_at - now).total_seconds())))


class RateLimiter:
    """Per-user request ceiling over a trailing window, read from the ledger.

    The check performs no write: the window is defined by completed calls
    only, so concurrent requests from one user can all pass before any of
    them is recorded.
    """

    def __init__(
        self,
        *,
        ledger: UsageLedger,
        requests_allowed: int,
        window_s: int = 3600,
        fail_open: bool = True,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._requests_allowed = requests_allowed
        self._window = timedelta(seconds=window_s)
        self._fail_open = fail_open
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or _utc_now

    async def check_and_status(self, user_id: str) -> tuple[RateLimitStatus, bool]:
        now = self._time_provider()
        try:
            window = await self._ledger.count_user_events_since(user_id, now - self._window)
        except LedgerReadFailed as exc:
            if not self._fail_open:
                raise
            logger.warning("rate_limit_degraded user_id=%s", user_id, exc_info=exc)
            status = RateLimitStatus(
                request_count=0,
                requests_allowed=self._requests_allowed,
                requests_remaining=self._requests_allowed,
                reset_at=now + self._window,
                retry_after_s=0,
                degraded=True,
            )
            return status, True

        allowed = window.count < self._requests_allowed
        reset_at = (window.oldest_at + self._window) if window.oldest_at else now + self._window
        status = RateLimitStatus(
            request_count=window.count,
            requests_allowed=self._requests_allowed,
            requests_remaining=max(0, self._requests_allowed - window.count),
            reset_at=reset_at,
            retry_after_s=0 if allowed else _retry_after_s(reset_at, now),
        )
        return status, allowed

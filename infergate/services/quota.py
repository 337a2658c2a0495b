from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Callable

from infergate.core.errors import LedgerReadFailed
from infergate.services.ledger import UsageLedger


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaStatus:
    # Derived monthly view for one tenant; never persisted.
    tokens_used: int
    tokens_limit: int
    tokens_remaining: int
    cost_used: Decimal
    cost_limit: Decimal
    reset_at: datetime
    degraded: bool = False


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def month_start(now: datetime) -> datetime:
    # Normalize to the UTC month boundary for monthly quotas.
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def next_month_start(now: datetime) -> datetime:
    start = month_start(now)
    if start.month == 12:
        return datetime(start.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(start.year, start.month + 1, 1, tzinfo=timezone.utc)


class QuotaManager:
    """Monthly token budget per tenant, aggregated from the ledger.

    Checked before the call with historical usage only; the call about to
    run may push the tenant over the limit and the next request is the one
    that gets blocked.
    """

    def __init__(
        self,
        *,
        ledger: UsageLedger,
        tokens_limit: int,
        cost_limit: Decimal,
        fail_open: bool = True,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._tokens_limit = tokens_limit
        self._cost_limit = cost_limit
        self._fail_open = fail_open
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now

    async def check_and_status(self, tenant_id: str) -> tuple[QuotaStatus, bool]:
        now = self._time_provider()
        reset_at = next_month_start(now)
        try:
            totals = await self._ledger.tenant_totals_since(tenant_id, month_start(now))
        except LedgerReadFailed as exc:
            if not self._fail_open:
                raise
            logger.warning("quota_degraded tenant_id=%s", tenant_id, exc_info=exc)
            status = QuotaStatus(
                tokens_used=0,
                tokens_limit=self._tokens_limit,
                tokens_remaining=self._tokens_limit,
                cost_used=Decimal("0"),
                cost_limit=self._cost_limit,
                reset_at=reset_at,
                degraded=True,
            )
            return status, True

        status = QuotaStatus(
            tokens_used=totals.tokens,
            tokens_limit=self._tokens_limit,
            tokens_remaining=max(0, self._tokens_limit - totals.tokens),
            cost_used=totals.cost,
            cost_limit=self._cost_limit,
            reset_at=reset_at,
        )
        # Blocking starts once usage is over the limit, not at it.
        return status, totals.tokens <= self._tokens_limit

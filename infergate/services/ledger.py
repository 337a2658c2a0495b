from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from infergate.core.errors import LedgerReadFailed, LedgerWriteFailed
from infergate.persistence.db import STORAGE_ERRORS, SessionLocal
from infergate.persistence.repos import usage_events as usage_repo
from infergate.persistence.repos.usage_events import DailyUsage, TenantTotals, WindowCount


logger = logging.getLogger(__name__)


class UsageLedger:
    """Append-only access to usage events.

    Every operation runs in its own short-lived session so concurrent
    requests never share ORM state; the database provides atomicity for
    individual appends and aggregate reads. Storage failures are translated
    into LedgerReadFailed / LedgerWriteFailed so callers apply policy
    without depending on SQLAlchemy or the database driver.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def append(
        self,
        *,
        tenant_id: str,
        user_id: str,
        conversation_id: str | None,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost_estimate: Decimal,
        usage_source: str,
        created_at: datetime,
    ) -> str:
        if prompt_tokens + completion_tokens <= 0:
            raise LedgerWriteFailed("usage events require total_tokens > 0")
        if cost_estimate < 0:
            raise LedgerWriteFailed("usage events require cost_estimate >= 0")
        event_id = uuid4().hex
        try:
            async with self._session_factory() as session:
                await usage_repo.add_usage_event(
                    session,
                    event_id=event_id,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    conversation_id=conversation_id,
                    model=model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    cost_estimate=cost_estimate,
                    usage_source=usage_source,
                    created_at=created_at,
                )
                await session.commit()
        except STORAGE_ERRORS as exc:
            # Closing the session discards the uncommitted insert.
            raise LedgerWriteFailed("usage event write failed") from exc
        return event_id

    async def count_user_events_since(self, user_id: str, since: datetime) -> WindowCount:
        try:
            async with self._session_factory() as session:
                return await usage_repo.count_user_events_since(session, user_id, since)
        except STORAGE_ERRORS as exc:
            raise LedgerReadFailed("usage window read failed") from exc

    async def tenant_totals_since(self, tenant_id: str, since: datetime) -> TenantTotals:
        try:
            async with self._session_factory() as session:
                return await usage_repo.sum_tenant_usage_since(session, tenant_id, since)
        except STORAGE_ERRORS as exc:
            raise LedgerReadFailed("tenant usage read failed") from exc

    async def daily_usage_since(self, tenant_id: str, since: datetime) -> list[DailyUsage]:
        try:
            async with self._session_factory() as session:
                return await usage_repo.daily_usage_since(session, tenant_id, since)
        except STORAGE_ERRORS as exc:
            raise LedgerReadFailed("daily usage read failed") from exc

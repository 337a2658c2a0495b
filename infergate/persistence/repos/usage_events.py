from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from infergate.domain.models import UsageEvent


@dataclass(frozen=True)
class WindowCount:
    count: int
    oldest_at: datetime | None


@dataclass(frozen=True)
class TenantTotals:
    tokens: int
    cost: Decimal


@dataclass(frozen=True)
class DailyUsage:
    day: date
    request_count: int
    total_tokens: int
    total_cost: Decimal


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def add_usage_event(
    session: AsyncSession,
    *,
    event_id: str,
    tenant_id: str,
    user_id: str,
    conversation_id: str | None,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    cost_estimate: Decimal,
    usage_source: str,
    created_at: datetime,
) -> UsageEvent:
    event = UsageEvent(
        id=event_id,
        tenant_id=tenant_id,
        user_id=user_id,
        conversation_id=conversation_id,
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        cost_estimate=cost_estimate,
        usage_source=usage_source,
        created_at=created_at,
    )
    session.add(event)
    return event


async def count_user_events_since(
    session: AsyncSession, user_id: str, since: datetime
) -> WindowCount:
    # Served by ix_usage_events_user_created.
    result = await session.execute(
        select(func.count(UsageEvent.id), func.min(UsageEvent.created_at)).where(
            UsageEvent.user_id == user_id,
            UsageEvent.created_at >= since,
        )
    )
    count, oldest = result.one()
    return WindowCount(count=int(count or 0), oldest_at=as_utc(oldest) if oldest else None)


async def sum_tenant_usage_since(
    session: AsyncSession, tenant_id: str, since: datetime
) -> TenantTotals:
    # Served by ix_usage_events_tenant_created.
    result = await session.execute(
        select(
            func.coalesce(func.sum(UsageEvent.total_tokens), 0),
            func.coalesce(func.sum(UsageEvent.cost_estimate), 0),
        ).where(
            UsageEvent.tenant_id == tenant_id,
            UsageEvent.created_at >= since,
        )
    )
    tokens, cost = result.one()
    return TenantTotals(tokens=int(tokens or 0), cost=Decimal(str(cost or 0)))


def utc_day_bucket(dialect_name: str):
    if dialect_name == "postgresql":
        # date(timestamptz) follows the session time zone; pin it to UTC.
        return func.date(func.timezone("UTC", UsageEvent.created_at))
    # SQLite stores the UTC wall clock as written.
    return func.date(UsageEvent.created_at)


async def daily_usage_since(
    session: AsyncSession, tenant_id: str, since: datetime
) -> list[DailyUsage]:
    # Bucket by UTC calendar day for dashboard charts, newest first.
    bucket = utc_day_bucket(session.get_bind().dialect.name)
    result = await session.execute(
        select(
            bucket,
            func.count(UsageEvent.id),
            func.coalesce(func.sum(UsageEvent.total_tokens), 0),
            func.coalesce(func.sum(UsageEvent.cost_estimate), 0),
        )
        .where(
            UsageEvent.tenant_id == tenant_id,
            UsageEvent.created_at >= since,
        )
        .group_by(bucket)
        .order_by(bucket.desc())
    )
    rows: list[DailyUsage] = []
    for day, count, tokens, cost in result.all():
        if day is None:
            continue
        if isinstance(day, datetime):
            day = day.date()
        elif isinstance(day, str):
            day = date.fromisoformat(day)
        rows.append(
            DailyUsage(
                day=day,
                request_count=int(count or 0),
                total_tokens=int(tokens or 0),
                total_cost=Decimal(str(cost or 0)),
            )
        )
    return rows

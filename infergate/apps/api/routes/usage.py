from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query

from infergate.apps.api.deps import get_identity, get_orchestrator
from infergate.apps.api.schemas import (
    DailyUsageResponse,
    ErrorResponse,
    QuotaStatusResponse,
    RateLimitStatusResponse,
    UsageStatsResponse,
)
from infergate.services.auth.identity import Identity
from infergate.services.gateway import GatewayOrchestrator


router = APIRouter(
    prefix="/usage",
    tags=["usage"],
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)


@router.get("/rate-limit", response_model=RateLimitStatusResponse)
async def rate_limit_status(
    identity: Identity = Depends(get_identity),
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
) -> RateLimitStatusResponse:
    # Read-only view of the caller's rolling window; does not count as a request.
    status, _allowed = await orchestrator.rate_limiter.check_and_status(identity.user_id)
    return RateLimitStatusResponse(
        request_count=status.request_count,
        requests_allowed=status.requests_allowed,
        requests_remaining=status.requests_remaining,
        reset_at=status.reset_at,
    )


@router.get("/quota", response_model=QuotaStatusResponse)
async def quota_status(
    tenant_id: str | None = Query(default=None, alias="tenantId", min_length=1),
    identity: Identity = Depends(get_identity),
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
) -> QuotaStatusResponse:
    resolved_tenant = orchestrator.resolve_tenant(identity, tenant_id)
    status, _allowed = await orchestrator.quota.check_and_status(resolved_tenant)
    return QuotaStatusResponse(
        tenant_id=resolved_tenant,
        tokens_used=status.tokens_used,
        tokens_limit=status.tokens_limit,
        tokens_remaining=status.tokens_remaining,
        cost_used=float(status.cost_used),
        cost_limit=float(status.cost_limit),
        reset_at=status.reset_at,
    )


@router.get("/stats", response_model=UsageStatsResponse)
async def usage_stats(
    tenant_id: str | None = Query(default=None, alias="tenantId", min_length=1),
    days: int = Query(default=30, ge=1, le=365),
    identity: Identity = Depends(get_identity),
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
) -> UsageStatsResponse:
    resolved_tenant = orchestrator.resolve_tenant(identity, tenant_id)
    since = orchestrator.now() - timedelta(days=days)
    rows = await orchestrator.ledger.daily_usage_since(resolved_tenant, since)
    return UsageStatsResponse(
        tenant_id=resolved_tenant,
        days=days,
        items=[
            DailyUsageResponse(
                day=row.day,
                request_count=row.request_count,
                total_tokens=row.total_tokens,
                total_cost=float(row.total_cost),
            )
            for row in rows
        ],
    )

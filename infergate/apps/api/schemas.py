from __future__ import annotations

from datetime import date as date_type, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["system", "user", "assistant"]
    # Unanchored pattern: at least one non-whitespace character; content is sent as written.
    content: str = Field(min_length=1, pattern=r"\S")


class ChatRequest(BaseModel):
    # Reject unknown fields so client typos fail loudly instead of being ignored.
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    messages: list[ChatMessage] = Field(min_length=1)
    conversation_id: str | None = Field(default=None, alias="conversationId", min_length=1)
    tenant_id: str | None = Field(default=None, alias="tenantId", min_length=1)
    stream: bool = False


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatUsage(_CamelModel):
    tokens: int
    cost: float
    monthly_total: int = Field(alias="monthlyTotal")
    monthly_limit: int = Field(alias="monthlyLimit")


class ChatResponse(_CamelModel):
    message: str
    usage: ChatUsage


class RateLimitStatusResponse(_CamelModel):
    request_count: int = Field(alias="requestCount")
    requests_allowed: int = Field(alias="requestsAllowed")
    requests_remaining: int = Field(alias="requestsRemaining")
    reset_at: datetime = Field(alias="resetAt")


class QuotaStatusResponse(_CamelModel):
    tenant_id: str = Field(alias="tenantId")
    tokens_used: int = Field(alias="tokensUsed")
    tokens_limit: int = Field(alias="tokensLimit")
    tokens_remaining: int = Field(alias="tokensRemaining")
    cost_used: float = Field(alias="costUsed")
    cost_limit: float = Field(alias="costLimit")
    reset_at: datetime = Field(alias="resetAt")


class DailyUsageResponse(_CamelModel):
    day: date_type = Field(alias="date")
    request_count: int = Field(alias="requestCount")
    total_tokens: int = Field(alias="totalTokens")
    total_cost: float = Field(alias="totalCost")


class UsageStatsResponse(_CamelModel):
    tenant_id: str = Field(alias="tenantId")
    days: int
    items: list[DailyUsageResponse]


class ErrorResponse(BaseModel):
    error: str
    message: str


class HealthResponse(BaseModel):
    status: str

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import logging
from typing import Callable

from infergate.core.config import GatewayConfig
from infergate.core.errors import (
    GatewayError,
    LedgerError,
    MalformedRequest,
    QuotaExceeded,
    RateLimited,
    UpstreamError,
)
from infergate.providers.llm.base import ChatStream, CompletionOptions, LLMProvider
from infergate.services.auth.identity import Identity, IdentityVerifier
from infergate.services.costs.metering import TokenUsage, estimate_usage
from infergate.services.costs.pricing import estimate_cost
from infergate.services.ledger import UsageLedger
from infergate.services.quota import QuotaManager, QuotaStatus
from infergate.services.rate_limit import RateLimiter, RateLimitStatus


logger = logging.getLogger(__name__)


class CallState(str, Enum):
    AUTHENTICATING = "authenticating"
    RATE_CHECKING = "rate_checking"
    QUOTA_CHECKING = "quota_checking"
    INVOKING = "invoking"
    RECORDING = "recording"
    RESPONDING = "responding"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class ChatCall:
    # Validated request body as seen by the orchestrator.
    messages: list[dict]
    conversation_id: str | None = None
    tenant_id: str | None = None
    stream: bool = False


@dataclass(frozen=True)
class Admission:
    identity: Identity
    tenant_id: str
    rate_status: RateLimitStatus
    quota_status: QuotaStatus
    request_id: str | None = None


@dataclass(frozen=True)
class UsageSnapshot:
    tokens: int
    cost: Decimal
    monthly_total: int
    monthly_limit: int


@dataclass(frozen=True)
class ChatReply:
    message: str
    usage: UsageSnapshot
    usage_source: str
    model: str


@dataclass(frozen=True)
class RecordOutcome:
    recorded: bool
    event_id: str | None = None
    attempts: int = 0
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def trim_history(messages: list[dict], max_messages: int = 10) -> list[dict]:
    """Keep system messages plus the last `max_messages` conversational turns."""
    if max_messages <= 0:
        return list(messages)
    others = [index for index, message in enumerate(messages) if message["role"] != "system"]
    keep = set(others[-max_messages:])
    return [
        message
        for index, message in enumerate(messages)
        if message["role"] == "system" or index in keep
    ]


class UsageRecorder:
    """Best-effort ledger writer; failures are logged and reported, never raised."""

    def __init__(self, ledger: UsageLedger, *, attempts: int = 2) -> None:
        self._ledger = ledger
        self._attempts = max(1, attempts)

    async def record(
        self,
        *,
        tenant_id: str,
        user_id: str,
        conversation_id: str | None,
        model: str,
        usage: TokenUsage,
        cost: Decimal,
        created_at: datetime,
        request_id: str | None = None,
    ) -> RecordOutcome:
        last_error: Exception | None = None
        for attempt in range(1, self._attempts + 1):
            try:
                event_id = await self._ledger.append(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    conversation_id=conversation_id,
                    model=model,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    cost_estimate=cost,
                    usage_source=usage.source,
                    created_at=created_at,
                )
            except Exception as exc:
                # Any failure counts as a lost attempt; the answer is already paid for.
                last_error = exc
                logger.warning(
                    "usage_record_attempt_failed request_id=%s attempt=%s",
                    request_id,
                    attempt,
                    exc_info=exc,
                )
                continue
            return RecordOutcome(recorded=True, event_id=event_id, attempts=attempt)

        # The caller already has a successful answer; accounting loss is logged only.
        logger.error(
            "usage_record_failed request_id=%s tenant_id=%s user_id=%s tokens=%s",
            request_id,
            tenant_id,
            user_id,
            usage.total_tokens,
        )
        return RecordOutcome(
            recorded=False,
            attempts=self._attempts,
            error=str(last_error) if last_error else None,
        )


class GatewayStream:
    """Fragments relayed from an upstream stream, recorded once drained.

    `reply` is set after the last fragment. `aclose()` before that point
    abandons the call: upstream is closed and usage is recorded only when
    the provider already reported its tally.
    """

    def __init__(
        self,
        orchestrator: "GatewayOrchestrator",
        admission: Admission,
        call: ChatCall,
        messages: list[dict],
        upstream: ChatStream,
    ) -> None:
        self._orchestrator = orchestrator
        self._admission = admission
        self._call = call
        self._messages = messages
        self._upstream = upstream
        self._finished = False
        self.reply: ChatReply | None = None

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "GatewayStream":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        try:
            return await self._upstream.__anext__()
        except StopAsyncIteration:
            self._finished = True
            self.reply = await self._orchestrator._finish(
                self._admission,
                self._call,
                self._messages,
                text=self._upstream.text,
                usage=self._upstream.usage,
                model=self._upstream.model,
            )
            raise
        except UpstreamError:
            self._finished = True
            await self._upstream.aclose()
            self._orchestrator._transition(self._admission.request_id, CallState.FAILED)
            raise

    async def aclose(self) -> None:
        if self._finished:
            return
        self._finished = True
        await self._upstream.aclose()
        usage = self._upstream.usage
        logger.info(
            "stream_abandoned request_id=%s tally_reported=%s",
            self._admission.request_id,
            usage is not None,
        )
        if usage is None:
            self._orchestrator._transition(self._admission.request_id, CallState.FAILED)
            return
        await self._orchestrator._record(self._admission, self._call, usage)


class GatewayOrchestrator:
    """Per-request admission, invocation and accounting pipeline."""

    def __init__(
        self,
        *,
        config: GatewayConfig,
        ledger: UsageLedger,
        identity_verifier: IdentityVerifier,
        provider: LLMProvider,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._identity_verifier = identity_verifier
        self._provider = provider
        # Allow injecting time for deterministic tests.
        self._clock = clock or _utc_now
        self._rate_limiter = RateLimiter(
            ledger=ledger,
            requests_allowed=config.requests_allowed,
            window_s=config.rate_window_s,
            fail_open=config.rate_limit_fail_open,
            time_provider=self._clock,
        )
        self._quota = QuotaManager(
            ledger=ledger,
            tokens_limit=config.tokens_limit,
            cost_limit=config.cost_limit,
            fail_open=config.quota_fail_open,
            time_provider=self._clock,
        )
        self._recorder = UsageRecorder(ledger, attempts=config.ledger_write_attempts)

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def quota(self) -> QuotaManager:
        return self._quota

    @property
    def identity_verifier(self) -> IdentityVerifier:
        return self._identity_verifier

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    def now(self) -> datetime:
        return self._clock()

    async def aclose(self) -> None:
        await self._provider.aclose()

    def _transition(self, request_id: str | None, state: CallState) -> None:
        logger.debug("gateway_state request_id=%s state=%s", request_id, state.value)

    def resolve_tenant(self, identity: Identity, requested: str | None) -> str:
        if identity.tenant_id is not None:
            if requested is not None and requested != identity.tenant_id:
                raise MalformedRequest("tenantId does not match the credential's tenant")
            return identity.tenant_id
        return requested or self._config.default_tenant_id

    async def admit(
        self,
        credential: str | None,
        call: ChatCall,
        *,
        request_id: str | None = None,
    ) -> Admission:
        self._transition(request_id, CallState.AUTHENTICATING)
        try:
            identity = await self._identity_verifier.verify(credential)
            tenant_id = self.resolve_tenant(identity, call.tenant_id)

            self._transition(request_id, CallState.RATE_CHECKING)
            rate_status, allowed = await self._rate_limiter.check_and_status(identity.user_id)
            if not allowed:
                logger.info(
                    "rate_limited request_id=%s user_id=%s count=%s",
                    request_id,
                    identity.user_id,
                    rate_status.request_count,
                )
                raise RateLimited(
                    f"Rate limit exceeded. Maximum {rate_status.requests_allowed} requests per hour.",
                    retry_after_s=rate_status.retry_after_s,
                    reset_at=rate_status.reset_at,
                )

            self._transition(request_id, CallState.QUOTA_CHECKING)
            quota_status, allowed = await self._quota.check_and_status(tenant_id)
            if not allowed:
                logger.info(
                    "quota_exceeded request_id=%s tenant_id=%s used=%s",
                    request_id,
                    tenant_id,
                    quota_status.tokens_used,
                )
                raise QuotaExceeded(
                    f"Monthly token quota exceeded ({quota_status.tokens_limit} tokens).",
                    current=quota_status.tokens_used,
                    limit=quota_status.tokens_limit,
                    reset_at=quota_status.reset_at,
                )
        except GatewayError as exc:
            state = CallState.FAILED if isinstance(exc, LedgerError) else CallState.REJECTED
            self._transition(request_id, state)
            raise

        return Admission(
            identity=identity,
            tenant_id=tenant_id,
            rate_status=rate_status,
            quota_status=quota_status,
            request_id=request_id,
        )

    def _prepare(self, call: ChatCall) -> list[dict]:
        messages = [{"role": m["role"], "content": m["content"]} for m in call.messages]
        if self._config.history_max_messages > 0:
            messages = trim_history(messages, self._config.history_max_messages)
        return messages

    def _options(self, *, stream: bool) -> CompletionOptions:
        return CompletionOptions(
            model=self._config.model,
            temperature=self._config.temperature,
            max_tokens=self._config.stream_max_tokens if stream else self._config.sync_max_tokens,
        )

    async def complete(self, admission: Admission, call: ChatCall) -> ChatReply:
        messages = self._prepare(call)
        self._transition(admission.request_id, CallState.INVOKING)
        try:
            completion = await self._provider.complete(messages, self._options(stream=False))
        except UpstreamError:
            self._transition(admission.request_id, CallState.FAILED)
            raise
        return await self._finish(
            admission,
            call,
            messages,
            text=completion.text,
            usage=completion.usage,
            model=completion.model,
        )

    async def open_stream(self, admission: Admission, call: ChatCall) -> GatewayStream:
        messages = self._prepare(call)
        self._transition(admission.request_id, CallState.INVOKING)
        try:
            upstream = await self._provider.open_stream(messages, self._options(stream=True))
        except UpstreamError:
            self._transition(admission.request_id, CallState.FAILED)
            raise
        return GatewayStream(self, admission, call, messages, upstream)

    async def chat(
        self,
        credential: str | None,
        call: ChatCall,
        *,
        request_id: str | None = None,
    ) -> ChatReply:
        admission = await self.admit(credential, call, request_id=request_id)
        return await self.complete(admission, call)

    async def _record(self, admission: Admission, call: ChatCall, usage: TokenUsage) -> tuple[Decimal, RecordOutcome]:
        self._transition(admission.request_id, CallState.RECORDING)
        # Price the configured model; providers may echo a dated variant name.
        cost = estimate_cost(
            self._config.model,
            usage.prompt_tokens,
            usage.completion_tokens,
            price_table=self._config.price_table,
        )
        outcome = await self._recorder.record(
            tenant_id=admission.tenant_id,
            user_id=admission.identity.user_id,
            conversation_id=call.conversation_id,
            model=self._config.model,
            usage=usage,
            cost=cost,
            created_at=self._clock(),
            request_id=admission.request_id,
        )
        logger.info(
            "usage_recorded request_id=%s recorded=%s attempts=%s tokens=%s source=%s",
            admission.request_id,
            outcome.recorded,
            outcome.attempts,
            usage.total_tokens,
            usage.source,
        )
        return cost, outcome

    async def _finish(
        self,
        admission: Admission,
        call: ChatCall,
        messages: list[dict],
        *,
        text: str,
        usage: TokenUsage | None,
        model: str,
    ) -> ChatReply:
        if usage is None:
            usage = estimate_usage(messages, text, ratio=self._config.chars_per_token)
        cost, _ = await self._record(admission, call, usage)
        self._transition(admission.request_id, CallState.RESPONDING)
        return ChatReply(
            message=text,
            usage=UsageSnapshot(
                tokens=usage.total_tokens,
                cost=cost,
                monthly_total=admission.quota_status.tokens_used + usage.total_tokens,
                monthly_limit=admission.quota_status.tokens_limit,
            ),
            usage_source=usage.source,
            model=model,
        )

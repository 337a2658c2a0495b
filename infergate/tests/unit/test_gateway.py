from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from infergate.core.config import GatewayConfig
from infergate.core.errors import (
    LedgerReadFailed,
    LedgerWriteFailed,
    MalformedRequest,
    QuotaExceeded,
    RateLimited,
    Unauthenticated,
    UpstreamError,
    UpstreamTimeout,
)
from infergate.persistence.repos.usage_events import TenantTotals, WindowCount
from infergate.providers.llm.base import Completion, CompletionOptions
from infergate.providers.llm.fake import FakeLLMProvider
from infergate.services.auth.identity import ApiKeyIdentityVerifier, Identity, StaticIdentityVerifier
from infergate.services.costs import TokenUsage, estimate_cost
from infergate.services.gateway import (
    ChatCall,
    GatewayOrchestrator,
    UsageRecorder,
    trim_history,
)
from infergate.services.ledger import UsageLedger
from infergate.tests.utils.ledger import count_usage_events, list_usage_events, seed_usage_events


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
TOKEN = "secret-token"
CREDENTIAL = f"Bearer {TOKEN}"
USER = Identity(user_id="u-1", tenant_id=None, key_id="k-1")
CALL = ChatCall(messages=[{"role": "user", "content": "How do I reset my password?"}])


class _FixedUsageProvider(FakeLLMProvider):
    async def complete(self, messages: list[dict], options: CompletionOptions) -> Completion:
        self.calls.append(("complete", messages, options))
        return Completion(text="Done.", model=options.model, usage=TokenUsage(20, 30))


class _TallyStream:
    # Upstream double whose provider tally is known before the last fragment.
    def __init__(self) -> None:
        self.model = "gpt-3.5-turbo"
        self.usage = TokenUsage(7, 3)
        self.text = ""
        self.closed = False

    def __aiter__(self) -> "_TallyStream":
        return self

    async def __anext__(self) -> str:
        self.text += "partial "
        return "partial "

    async def aclose(self) -> None:
        self.closed = True


class _TallyProvider(FakeLLMProvider):
    async def open_stream(self, messages, options):  # type: ignore[override]
        stream = _TallyStream()
        self.streams.append(stream)  # type: ignore[arg-type]
        return stream


class _FlakyLedger(UsageLedger):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def append(self, **kwargs) -> str:  # type: ignore[override]
        self.attempts += 1
        if self.attempts <= self.failures:
            raise LedgerWriteFailed("usage event write failed")
        return await super().append(**kwargs)


class _BrokenReadLedger(UsageLedger):
    async def count_user_events_since(self, user_id, since):  # type: ignore[override]
        raise LedgerReadFailed("usage window read failed")


class _WriteOnlyOutageLedger(UsageLedger):
    # Reads succeed with an empty ledger; every write hits the real storage path.
    async def count_user_events_since(self, user_id, since):  # type: ignore[override]
        return WindowCount(count=0, oldest_at=None)

    async def tenant_totals_since(self, tenant_id, since):  # type: ignore[override]
        return TenantTotals(tokens=0, cost=Decimal("0"))


class _CrashingLedger(UsageLedger):
    async def append(self, **kwargs) -> str:  # type: ignore[override]
        raise RuntimeError("connection reset")


class _GatedProvider(FakeLLMProvider):
    # Holds every call until `parties` callers are in flight, so all admissions read first.
    def __init__(self, parties: int) -> None:
        super().__init__("Done.")
        self._parties = parties
        self._arrived = 0
        self._released = asyncio.Event()

    async def complete(self, messages: list[dict], options: CompletionOptions) -> Completion:
        self._arrived += 1
        if self._arrived >= self._parties:
            self._released.set()
        await asyncio.wait_for(self._released.wait(), timeout=5)
        return await super().complete(messages, options)


def _orchestrator(
    ledger: UsageLedger,
    provider: FakeLLMProvider | None = None,
    *,
    config: GatewayConfig | None = None,
    identity: Identity = USER,
) -> GatewayOrchestrator:
    return GatewayOrchestrator(
        config=config or GatewayConfig(),
        ledger=ledger,
        identity_verifier=StaticIdentityVerifier({TOKEN: identity}),
        provider=provider or FakeLLMProvider("Open settings, then choose Reset password."),
        clock=lambda: NOW,
    )


def test_trim_history_keeps_system_and_latest_turns() -> None:
    messages = [{"role": "system", "content": "be brief"}] + [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(6)
    ]

    trimmed = trim_history(messages, 3)

    assert [m["content"] for m in trimmed] == ["be brief", "m3", "m4", "m5"]
    assert trim_history(messages, 0) == messages


@pytest.mark.asyncio
async def test_chat_records_exactly_one_event(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider("Open settings, then choose Reset password.")
    orchestrator = _orchestrator(ledger, provider)

    reply = await orchestrator.chat(CREDENTIAL, CALL, request_id="req-1")

    events = await list_usage_events(user_id=USER.user_id)
    assert len(events) == 1
    event = events[0]
    assert event.tenant_id == GatewayConfig().default_tenant_id
    assert event.total_tokens == reply.usage.tokens
    assert reply.message == "Open settings, then choose Reset password."
    assert reply.usage_source == "provider"
    assert reply.usage.cost == estimate_cost("gpt-3.5-turbo", event.prompt_tokens, event.completion_tokens)
    assert reply.usage.monthly_total == reply.usage.tokens
    assert reply.usage.monthly_limit == 1_000_000
    _mode, _messages, options = provider.calls[0]
    assert options.max_tokens == 500
    assert options.temperature == 0.7


@pytest.mark.asyncio
async def test_unauthenticated_call_never_reaches_provider(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider()
    orchestrator = _orchestrator(ledger, provider)

    with pytest.raises(Unauthenticated):
        await orchestrator.chat("Bearer wrong", CALL)
    with pytest.raises(Unauthenticated):
        await orchestrator.chat(None, CALL)

    assert provider.calls == []
    assert await count_usage_events() == 0


@pytest.mark.asyncio
async def test_rate_limited_call_is_rejected_without_recording(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider()
    orchestrator = _orchestrator(ledger, provider)
    await seed_usage_events(
        ledger, user_id=USER.user_id, tenant_id="t1", created_at=NOW - timedelta(minutes=15), count=20
    )

    with pytest.raises(RateLimited) as exc_info:
        await orchestrator.chat(CREDENTIAL, CALL)

    assert exc_info.value.retry_after_s == 45 * 60
    assert provider.calls == []
    assert await count_usage_events(user_id=USER.user_id) == 20


@pytest.mark.asyncio
async def test_quota_overshoot_is_accepted_then_blocked(ledger: UsageLedger) -> None:
    tenant_id = GatewayConfig().default_tenant_id
    await seed_usage_events(
        ledger,
        user_id="someone-else",
        tenant_id=tenant_id,
        created_at=NOW - timedelta(days=2),
        prompt_tokens=999_999,
        completion_tokens=0,
    )
    provider = _FixedUsageProvider()
    orchestrator = _orchestrator(ledger, provider)

    reply = await orchestrator.chat(CREDENTIAL, CALL)

    assert reply.usage.tokens == 50
    assert reply.usage.monthly_total == 1_000_049

    with pytest.raises(QuotaExceeded) as exc_info:
        await orchestrator.chat(CREDENTIAL, CALL)
    assert exc_info.value.current == 1_000_049
    assert exc_info.value.limit == 1_000_000
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_tenant_bound_credential_rejects_other_tenant(ledger: UsageLedger) -> None:
    bound = Identity(user_id="u-2", tenant_id="tenant-a", key_id="k-2")
    orchestrator = _orchestrator(ledger, identity=bound)

    with pytest.raises(MalformedRequest):
        await orchestrator.chat(CREDENTIAL, replace(CALL, tenant_id="tenant-b"))

    reply = await orchestrator.chat(CREDENTIAL, replace(CALL, tenant_id="tenant-a"))
    assert reply.message
    events = await list_usage_events(user_id="u-2")
    assert [event.tenant_id for event in events] == ["tenant-a"]


@pytest.mark.asyncio
async def test_unbound_credential_may_name_a_tenant(ledger: UsageLedger) -> None:
    orchestrator = _orchestrator(ledger)

    await orchestrator.chat(CREDENTIAL, replace(CALL, tenant_id="tenant-x", conversation_id="conv-1"))

    events = await list_usage_events(user_id=USER.user_id)
    assert events[0].tenant_id == "tenant-x"
    assert events[0].conversation_id == "conv-1"


@pytest.mark.asyncio
async def test_upstream_failure_records_nothing(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider(error=UpstreamTimeout("Model provider timed out."))
    orchestrator = _orchestrator(ledger, provider)

    with pytest.raises(UpstreamTimeout):
        await orchestrator.chat(CREDENTIAL, CALL)
    admission = await orchestrator.admit(CREDENTIAL, CALL)
    with pytest.raises(UpstreamTimeout):
        await orchestrator.open_stream(admission, CALL)

    assert await count_usage_events() == 0


@pytest.mark.asyncio
async def test_stream_matches_whole_response_and_records_once(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider("Open settings, then choose Reset password.")
    orchestrator = _orchestrator(ledger, provider)

    whole = await orchestrator.chat(CREDENTIAL, CALL)
    admission = await orchestrator.admit(CREDENTIAL, replace(CALL, stream=True))
    stream = await orchestrator.open_stream(admission, CALL)
    fragments = [fragment async for fragment in stream]

    assert len(fragments) > 1
    assert "".join(fragments) == whole.message
    assert stream.reply is not None
    assert stream.reply.message == whole.message
    assert stream.reply.usage.monthly_total == whole.usage.tokens + stream.reply.usage.tokens
    assert provider.calls[-1][2].max_tokens == 800
    assert await count_usage_events(user_id=USER.user_id) == 2


@pytest.mark.asyncio
async def test_stream_without_provider_tally_records_estimate(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider("Short answer here.", stream_usage=False)
    orchestrator = _orchestrator(ledger, provider)

    admission = await orchestrator.admit(CREDENTIAL, CALL)
    stream = await orchestrator.open_stream(admission, CALL)
    async for _fragment in stream:
        pass

    events = await list_usage_events(user_id=USER.user_id)
    assert len(events) == 1
    assert events[0].usage_source == "estimated"
    assert stream.reply is not None
    assert stream.reply.usage_source == "estimated"
    assert stream.reply.usage.tokens == events[0].total_tokens


@pytest.mark.asyncio
async def test_abandoned_stream_without_tally_records_nothing(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider("one two three four five")
    orchestrator = _orchestrator(ledger, provider)

    admission = await orchestrator.admit(CREDENTIAL, CALL)
    stream = await orchestrator.open_stream(admission, CALL)
    assert await stream.__anext__() == "one "
    await stream.aclose()
    await stream.aclose()

    assert provider.streams[0].closed is True
    assert stream.reply is None
    assert await count_usage_events() == 0


@pytest.mark.asyncio
async def test_abandoned_stream_with_tally_records_provider_usage(ledger: UsageLedger) -> None:
    provider = _TallyProvider()
    orchestrator = _orchestrator(ledger, provider)

    admission = await orchestrator.admit(CREDENTIAL, CALL)
    stream = await orchestrator.open_stream(admission, CALL)
    await stream.__anext__()
    await stream.aclose()

    events = await list_usage_events(user_id=USER.user_id)
    assert provider.streams[0].closed is True
    assert [(event.total_tokens, event.usage_source) for event in events] == [(10, "provider")]


@pytest.mark.asyncio
async def test_mid_stream_failure_records_nothing(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider("one two three", stream_error_after=1)
    orchestrator = _orchestrator(ledger, provider)

    admission = await orchestrator.admit(CREDENTIAL, CALL)
    stream = await orchestrator.open_stream(admission, CALL)
    received = []
    with pytest.raises(UpstreamError):
        async for fragment in stream:
            received.append(fragment)

    assert received == ["one "]
    assert stream.reply is None
    assert await count_usage_events() == 0


@pytest.mark.asyncio
async def test_record_failure_never_reaches_caller(database) -> None:
    ledger = _FlakyLedger(failures=5)
    orchestrator = _orchestrator(ledger)

    reply = await orchestrator.chat(CREDENTIAL, CALL)

    assert reply.message
    # One retry after the first failed write, then give up.
    assert ledger.attempts == 2
    assert await count_usage_events() == 0


@pytest.mark.asyncio
async def test_recorder_retries_once(database) -> None:
    ledger = _FlakyLedger(failures=1)
    recorder = UsageRecorder(ledger, attempts=2)

    outcome = await recorder.record(
        tenant_id="t1",
        user_id="u1",
        conversation_id=None,
        model="gpt-3.5-turbo",
        usage=TokenUsage(5, 5),
        cost=Decimal("0.000020"),
        created_at=NOW,
    )

    assert outcome.recorded is True
    assert outcome.attempts == 2
    assert outcome.event_id is not None
    assert await count_usage_events(user_id="u1") == 1


@pytest.mark.asyncio
async def test_ledger_read_failure_fails_closed_when_configured(database) -> None:
    provider = FakeLLMProvider()
    config = GatewayConfig(rate_limit_fail_open=False)
    orchestrator = _orchestrator(_BrokenReadLedger(), provider, config=config)

    with pytest.raises(LedgerReadFailed):
        await orchestrator.chat(CREDENTIAL, CALL)
    assert provider.calls == []


@pytest.mark.asyncio
async def test_ledger_read_failure_fails_open_by_default(database) -> None:
    orchestrator = _orchestrator(_BrokenReadLedger())

    reply = await orchestrator.chat(CREDENTIAL, CALL)

    assert reply.message
    assert await count_usage_events(user_id=USER.user_id) == 1


@pytest.mark.asyncio
async def test_history_trimming_applies_when_configured(ledger: UsageLedger) -> None:
    provider = FakeLLMProvider()
    config = GatewayConfig(history_max_messages=2)
    orchestrator = _orchestrator(ledger, provider, config=config)
    call = ChatCall(
        messages=[
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "second"},
            {"role": "user", "content": "third"},
        ]
    )

    await orchestrator.chat(CREDENTIAL, call)

    _mode, messages, _options = provider.calls[0]
    assert [m["content"] for m in messages] == ["sys", "second", "third"]


@pytest.mark.asyncio
async def test_concurrent_calls_may_overshoot_the_request_window(ledger: UsageLedger) -> None:
    config = GatewayConfig()
    await seed_usage_events(
        ledger,
        user_id=USER.user_id,
        tenant_id="t1",
        created_at=NOW - timedelta(minutes=10),
        count=config.requests_allowed - 1,
    )
    provider = _GatedProvider(parties=2)
    orchestrator = _orchestrator(ledger, provider, config=config)

    replies = await asyncio.gather(
        orchestrator.chat(CREDENTIAL, CALL, request_id="req-a"),
        orchestrator.chat(CREDENTIAL, CALL, request_id="req-b"),
    )

    # Both admissions read the ledger before either write landed.
    assert [reply.message for reply in replies] == ["Done.", "Done."]
    assert await count_usage_events(user_id=USER.user_id) == config.requests_allowed + 1
    with pytest.raises(RateLimited):
        await orchestrator.chat(CREDENTIAL, CALL)


@pytest.mark.asyncio
async def test_concurrent_calls_at_the_quota_limit_both_pass(ledger: UsageLedger) -> None:
    config = GatewayConfig()
    await seed_usage_events(
        ledger,
        user_id="someone-else",
        tenant_id=config.default_tenant_id,
        created_at=NOW - timedelta(days=1),
        prompt_tokens=config.tokens_limit,
        completion_tokens=0,
    )
    provider = _GatedProvider(parties=2)
    orchestrator = _orchestrator(ledger, provider, config=config)

    replies = await asyncio.gather(
        orchestrator.chat(CREDENTIAL, CALL),
        orchestrator.chat(CREDENTIAL, CALL),
    )

    assert all(reply.usage.monthly_total > config.tokens_limit for reply in replies)
    assert await count_usage_events(tenant_id=config.default_tenant_id) == 3
    with pytest.raises(QuotaExceeded):
        await orchestrator.chat(CREDENTIAL, CALL)


@pytest.mark.asyncio
async def test_unreachable_ledger_fails_open_and_still_answers(unreachable_sessions) -> None:
    provider = FakeLLMProvider("Open settings, then choose Reset password.")
    orchestrator = _orchestrator(UsageLedger(unreachable_sessions), provider)

    admission = await orchestrator.admit(CREDENTIAL, CALL, request_id="req-down")
    reply = await orchestrator.complete(admission, CALL)

    assert admission.rate_status.degraded is True
    assert admission.quota_status.degraded is True
    assert reply.message == "Open settings, then choose Reset password."

    admission = await orchestrator.admit(CREDENTIAL, replace(CALL, stream=True))
    stream = await orchestrator.open_stream(admission, CALL)
    fragments = [fragment async for fragment in stream]

    assert stream.reply is not None
    assert "".join(fragments) == stream.reply.message


@pytest.mark.asyncio
async def test_write_outage_returns_reply_and_reports_unrecorded(unreachable_sessions) -> None:
    ledger = _WriteOnlyOutageLedger(unreachable_sessions)

    reply = await _orchestrator(ledger).chat(CREDENTIAL, CALL)
    outcome = await UsageRecorder(ledger).record(
        tenant_id="t1",
        user_id="u1",
        conversation_id=None,
        model="gpt-3.5-turbo",
        usage=TokenUsage(5, 5),
        cost=Decimal("0.000020"),
        created_at=NOW,
    )

    assert reply.message
    assert outcome.recorded is False
    assert outcome.attempts == 2
    assert outcome.error == "usage event write failed"


@pytest.mark.asyncio
async def test_recorder_absorbs_unexpected_write_errors() -> None:
    outcome = await UsageRecorder(_CrashingLedger()).record(
        tenant_id="t1",
        user_id="u1",
        conversation_id=None,
        model="gpt-3.5-turbo",
        usage=TokenUsage(5, 5),
        cost=Decimal("0.000020"),
        created_at=NOW,
    )

    assert outcome.recorded is False
    assert outcome.error == "connection reset"


@pytest.mark.asyncio
async def test_identity_lookup_outage_is_unauthenticated(unreachable_sessions) -> None:
    verifier = ApiKeyIdentityVerifier(session_factory=unreachable_sessions)

    with pytest.raises(Unauthenticated):
        await verifier.verify("Bearer igk_anything")

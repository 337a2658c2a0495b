from __future__ import annotations

from fastapi import Depends, Request

from infergate.core.config import GatewayConfig, Settings, get_settings
from infergate.providers.llm.factory import get_llm_provider
from infergate.services.auth.identity import ApiKeyIdentityVerifier, Identity
from infergate.services.gateway import GatewayOrchestrator
from infergate.services.ledger import UsageLedger


def build_orchestrator(settings: Settings) -> GatewayOrchestrator:
    return GatewayOrchestrator(
        config=GatewayConfig.from_settings(settings),
        ledger=UsageLedger(),
        identity_verifier=ApiKeyIdentityVerifier(),
        provider=get_llm_provider(settings),
    )


def get_orchestrator(request: Request) -> GatewayOrchestrator:
    # Build lazily so a missing provider key fails requests, not app import.
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator(get_settings())
        request.app.state.orchestrator = orchestrator
    return orchestrator


def get_request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def get_credential(request: Request) -> str | None:
    return request.headers.get(get_settings().auth_api_key_header)


async def get_identity(
    credential: str | None = Depends(get_credential),
    orchestrator: GatewayOrchestrator = Depends(get_orchestrator),
) -> Identity:
    return await orchestrator.identity_verifier.verify(credential)

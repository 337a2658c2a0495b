from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from infergate.core.errors import Unauthenticated
from infergate.persistence.db import STORAGE_ERRORS, SessionLocal
from infergate.persistence.repos.api_keys import get_api_key_by_hash
from infergate.services.auth.api_keys import hash_api_key, parse_bearer_token


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    # Stable caller identity; tenant_id is None when the credential is not tenant-bound.
    user_id: str
    tenant_id: str | None
    key_id: str


class IdentityVerifier(Protocol):
    async def verify(self, credential: str | None) -> Identity:
        ...


class ApiKeyIdentityVerifier:
    """Resolve `Authorization: Bearer <api key>` headers against the api_keys table."""

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def verify(self, credential: str | None) -> Identity:
        if not credential:
            raise Unauthenticated("Missing authorization header")
        token = parse_bearer_token(credential)
        if token is None:
            raise Unauthenticated("Missing or invalid bearer token")

        try:
            async with self._session_factory() as session:
                api_key = await get_api_key_by_hash(session, hash_api_key(token))
        except STORAGE_ERRORS as exc:
            # Credential checks fail closed; an unknown caller is never admitted.
            logger.error("identity_lookup_failed", exc_info=exc)
            raise Unauthenticated("Authentication unavailable") from exc

        if api_key is None:
            raise Unauthenticated("Invalid authorization token")
        if api_key.revoked_at is not None:
            raise Unauthenticated("Authorization token revoked")
        return Identity(user_id=api_key.user_id, tenant_id=api_key.tenant_id, key_id=api_key.id)


class StaticIdentityVerifier:
    """In-memory token map for local development and tests."""

    def __init__(self, identities: dict[str, Identity]) -> None:
        self._identities = dict(identities)

    async def verify(self, credential: str | None) -> Identity:
        token = parse_bearer_token(credential)
        if token is None:
            raise Unauthenticated("Missing or invalid bearer token")
        identity = self._identities.get(token)
        if identity is None:
            raise Unauthenticated("Invalid authorization token")
        return identity

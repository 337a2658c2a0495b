from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from infergate.domain.models import ApiKey


async def add_api_key(
    session: AsyncSession,
    *,
    key_id: str,
    user_id: str,
    tenant_id: str | None,
    key_prefix: str,
    key_hash: str,
    name: str,
) -> ApiKey:
    api_key = ApiKey(
        id=key_id,
        user_id=user_id,
        tenant_id=tenant_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
    )
    session.add(api_key)
    return api_key


async def get_api_key_by_hash(session: AsyncSession, key_hash: str) -> ApiKey | None:
    result = await session.execute(select(ApiKey).where(ApiKey.key_hash == key_hash))
    return result.scalar_one_or_none()


async def revoke_api_key(session: AsyncSession, key_id: str, revoked_at: datetime) -> ApiKey | None:
    # Mark the key revoked without deleting it so usage history stays attributable.
    api_key = await session.get(ApiKey, key_id)
    if api_key is None:
        return None
    if api_key.revoked_at is None:
        api_key.revoked_at = revoked_at
    return api_key

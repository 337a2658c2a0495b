from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from infergate.core.logging import configure_logging
from infergate.persistence.db import STORAGE_ERRORS, SessionLocal
from infergate.persistence.repos.api_keys import add_api_key
from infergate.services.auth.api_keys import generate_api_key


logger = logging.getLogger("infergate.scripts.create_api_key")


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a gateway user")
    parser.add_argument("--user-id", required=True, help="Stable user identifier the key authenticates as")
    parser.add_argument("--tenant", default=None, help="Bind the key to one tenant (optional)")
    parser.add_argument("--name", required=True, help="Key label for operators")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    async with SessionLocal() as session:
        await add_api_key(
            session,
            key_id=key_id,
            user_id=args.user_id,
            tenant_id=args.tenant,
            key_prefix=key_prefix,
            key_hash=key_hash,
            name=args.name,
        )
        await session.commit()
    logger.info("api_key_created key_id=%s user_id=%s tenant_id=%s", key_id, args.user_id, args.tenant)

    # The raw key is shown once; only its hash is stored.
    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_create_key(args))
    except STORAGE_ERRORS as exc:
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

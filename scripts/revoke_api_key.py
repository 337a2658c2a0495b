from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import sys

from infergate.persistence.db import STORAGE_ERRORS, SessionLocal
from infergate.persistence.repos.api_keys import revoke_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong key.
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    return parser


async def _revoke_key(key_id: str) -> int:
    async with SessionLocal() as session:
        api_key = await revoke_api_key(session, key_id, datetime.now(timezone.utc))
        if api_key is None:
            print(f"API key {key_id} not found", file=sys.stderr)
            return 1
        await session.commit()
    print(f"Revoked API key {key_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_revoke_key(args.key_id))
    except STORAGE_ERRORS as exc:
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys

from infergate.core.config import get_settings
from infergate.core.errors import LedgerReadFailed
from infergate.services.ledger import UsageLedger
from infergate.services.quota import QuotaManager


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Print a tenant's monthly quota and daily usage")
    parser.add_argument("--tenant", default=settings.default_tenant_id, help="Tenant identifier")
    parser.add_argument("--days", type=int, default=30, help="Days of daily stats to show (1-365)")
    return parser


async def _report(tenant_id: str, days: int) -> int:
    settings = get_settings()
    ledger = UsageLedger()
    # Fail closed here: an operator report must not print zeros for an unreadable ledger.
    quota = QuotaManager(
        ledger=ledger,
        tokens_limit=settings.monthly_token_limit,
        cost_limit=settings.monthly_cost_limit_usd,
        fail_open=False,
    )
    status, allowed = await quota.check_and_status(tenant_id)
    rows = await ledger.daily_usage_since(tenant_id, datetime.now(timezone.utc) - timedelta(days=days))

    print(f"tenant: {tenant_id}")
    print(f"  tokens: {status.tokens_used} / {status.tokens_limit} (remaining {status.tokens_remaining})")
    print(f"  cost: ${status.cost_used} / ${status.cost_limit}")
    print(f"  resets: {status.reset_at.isoformat()}")
    print(f"  blocked: {'no' if allowed else 'yes'}")
    print(f"daily usage (last {days} days):")
    if not rows:
        print("  (none)")
    for row in rows:
        print(f"  {row.day.isoformat()}  requests={row.request_count}  tokens={row.total_tokens}  cost=${row.total_cost}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if not 1 <= args.days <= 365:
        print("usage_report failed: --days must be between 1 and 365", file=sys.stderr)
        return 2
    try:
        return asyncio.run(_report(args.tenant, args.days))
    except LedgerReadFailed as exc:
        print(f"usage_report failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

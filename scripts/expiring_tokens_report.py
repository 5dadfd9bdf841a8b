#!/usr/bin/env python3
"""
Expiring Shared Tokens Report

Prints the shared provider tokens that expire within N days as JSON, the
same warning list the admin dashboard shows. Optionally appends today's
shared-pool quota usage per provider.

Exit code is 1 when at least one shared token is expiring, so the script
can gate a cron alert.
"""

import argparse
import asyncio
import json
import sys

import structlog

from tokengate.config import settings
from tokengate.db.session import close_engines, get_session_factory, init_db
from tokengate.services.clock import SystemClock
from tokengate.services.provider_policy import ProviderPolicyTable, load_remote_overrides
from tokengate.services.quota_ledger import QuotaLedger
from tokengate.services.remote_registry import HttpRemoteTokenRegistry, OfflineRemoteRegistry
from tokengate.services.reports import expiring_tokens_report
from tokengate.services.shared_registry import AllowListAuthorizer, SharedCredentialRegistry
from tokengate.services.storage import SqlPersistentStore

logger = structlog.get_logger()


async def build_report(threshold_days: int, include_quota: bool) -> dict[str, object]:
    """Collect expiring shared tokens (and optionally quota usage)."""
    await init_db()
    registry = (
        HttpRemoteTokenRegistry(settings.remote_registry_url, settings.remote_registry_auth)
        if settings.remote_registry_url
        else OfflineRemoteRegistry()
    )
    store = SqlPersistentStore(get_session_factory())
    clock = SystemClock()
    try:
        policies = await load_remote_overrides(
            ProviderPolicyTable.from_settings(settings),
            registry,
            settings.remote_timeout_seconds,
        )
        shared = SharedCredentialRegistry(
            store,
            registry,
            clock,
            policies,
            AllowListAuthorizer(settings.admin_email_list),
            remote_timeout=settings.remote_timeout_seconds,
        )
        ledger = (
            QuotaLedger(
                store,
                clock,
                policies,
                timezone=settings.quota_timezone,
                registry=registry,
                remote_timeout=settings.remote_timeout_seconds,
            )
            if include_quota
            else None
        )
        return await expiring_tokens_report(shared, ledger, threshold_days)
    finally:
        await registry.close()
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Report shared AI provider tokens that are about to expire",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Tokens expiring within the next week
  python3 expiring_tokens_report.py

  # Tokens expiring within 30 days, with today's quota usage
  python3 expiring_tokens_report.py --days 30 --quota
        """,
    )
    parser.add_argument("--days", type=int, default=7, help="Expiry threshold in days (default: 7)")
    parser.add_argument("--quota", action="store_true", help="Include today's quota usage")
    args = parser.parse_args()

    if args.days < 0:
        logger.error("invalid_threshold", days=args.days)
        sys.exit(2)

    report = asyncio.run(build_report(args.days, args.quota))
    print(json.dumps(report, indent=2))
    sys.exit(1 if report["expiring"] else 0)


if __name__ == "__main__":
    main()

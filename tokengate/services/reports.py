"""
Reports - Read-only summaries for operators.

Used by scripts/expiring_tokens_report.py. Nothing here writes to the
store: quota figures come from QuotaLedger.status(), which never persists
a pending rollover.
"""

from typing import Any

from tokengate.models.domain import QuotaStatus, SharedTokenStatus
from tokengate.services.quota_ledger import QuotaLedger
from tokengate.services.shared_registry import SharedCredentialRegistry


def shared_status_row(status: SharedTokenStatus) -> dict[str, Any]:
    return {
        "provider": status.provider,
        "is_active": status.is_active,
        "expires_at": status.expires_at.isoformat() if status.expires_at else None,
        "days_until_expiry": status.days_until_expiry,
        "updated_by": status.updated_by,
        "source": status.source,
    }


def quota_row(status: QuotaStatus) -> dict[str, Any]:
    return {
        "provider": status.scope,
        "period_key": status.period_key,
        "used_requests": status.used_requests,
        "request_limit": status.request_limit,
        "used_tokens": status.used_tokens,
        "token_limit": status.token_limit,
        "is_near_limit": status.is_near_limit,
        "is_exceeded": status.is_exceeded,
    }


async def expiring_tokens_report(
    shared: SharedCredentialRegistry,
    ledger: QuotaLedger | None,
    threshold_days: int,
) -> dict[str, Any]:
    """
    Shared tokens expiring within threshold_days, plus today's quota usage
    per provider when a ledger is given.
    """
    expiring = await shared.expiring_soon(threshold_days)
    report: dict[str, Any] = {
        "threshold_days": threshold_days,
        "expiring": [shared_status_row(s) for s in expiring],
    }
    if ledger is not None:
        report["quota"] = [
            quota_row(await ledger.status(provider)) for provider in ledger.policies.providers()
        ]
    return report

"""Audit canonical subscriptions for every user linked to Stripe.

Reports customers with more than one active subscription and, with
--cancel-duplicates, cancels every active subscription except the
canonical (newest) one.

Usage:
    cd backend
    python -m scripts.audit_subscriptions
    python -m scripts.audit_subscriptions --user-id 42 --cancel-duplicates
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.config import settings, validate_settings
from app.core.database import async_session_maker, engine
from app.core.logging import bind_correlation_id, setup_logging
from app.modules.billing.exceptions import BillingServiceError
from app.modules.billing.service import BillingService
from app.modules.billing.stripe_client import StripeClient


@dataclass
class UserAudit:
    """Audit outcome for one user."""
    user_id: int
    customer_id: Optional[str] = None
    canonical_subscription_id: Optional[str] = None
    active_subscription_ids: list[str] = field(default_factory=list)
    cancelled_subscription_ids: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_duplicates(self) -> bool:
        return len(self.active_subscription_ids) > 1


async def audit_users(
    service: BillingService,
    user_id: Optional[int] = None,
    cancel_duplicates: bool = False,
) -> list[UserAudit]:
    """Resolve the canonical subscription of each linked user.

    Args:
        service: Billing service bound to a session
        user_id: Only audit this user
        cancel_duplicates: Cancel non-canonical active subscriptions

    Returns:
        One UserAudit per user
    """
    if user_id is not None:
        user = await service.user_repo.get_by_id(user_id)
        users = [user] if user else []
    else:
        users = await service.user_repo.get_with_customer()

    audits = []
    for user in users:
        audit = UserAudit(user_id=user.id)
        try:
            customer_id = await service.customers.ensure_customer(user)
            canonical = await service.auditor.resolve_canonical_subscription(customer_id, user)
            audit.customer_id = canonical.customer_id
            audit.canonical_subscription_id = canonical.id
            audit.active_subscription_ids = [
                s.id for s in service.stripe_client.list_subscriptions(
                    canonical.customer_id, status="active"
                )
            ]
            if cancel_duplicates and audit.has_duplicates:
                result = await service.auditor.cancel_duplicate_subscriptions(
                    canonical.customer_id, user
                )
                audit.cancelled_subscription_ids = result.cancelled_subscription_ids
        except BillingServiceError as e:
            audit.error = str(e)
        audits.append(audit)
    return audits


def print_report(audits: list[UserAudit]) -> None:
    print(f"\n{'='*60}")
    print(f"Audited {len(audits)} user(s)")
    print(f"{'='*60}")

    for audit in audits:
        if audit.error:
            print(f"\n✗ User {audit.user_id}: {audit.error}")
        elif audit.has_duplicates:
            print(f"\n! User {audit.user_id} ({audit.customer_id}) has "
                  f"{len(audit.active_subscription_ids)} active subscriptions")
            print(f"  Canonical: {audit.canonical_subscription_id}")
            for sub_id in audit.active_subscription_ids:
                marker = "cancelled" if sub_id in audit.cancelled_subscription_ids else ""
                print(f"  - {sub_id} {marker}")
        else:
            print(f"\n✓ User {audit.user_id}: {audit.canonical_subscription_id}")


async def main():
    parser = argparse.ArgumentParser(description="Audit canonical subscriptions")
    parser.add_argument("--user-id", type=int, help="Only audit this user")
    parser.add_argument(
        "--cancel-duplicates",
        action="store_true",
        help="Cancel active subscriptions other than the canonical one",
    )
    args = parser.parse_args()

    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    bind_correlation_id()
    validate_settings(settings)
    stripe_client = StripeClient.from_settings(settings)

    async with async_session_maker() as session:
        service = BillingService(session, stripe_client)
        audits = await audit_users(service, args.user_id, args.cancel_duplicates)
    await engine.dispose()

    print_report(audits)


if __name__ == "__main__":
    asyncio.run(main())

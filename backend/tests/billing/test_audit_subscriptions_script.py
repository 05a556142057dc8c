"""Tests for the subscription audit script."""

from datetime import datetime, timezone

import pytest

from app.modules.billing.exceptions import ProviderUnavailableError
from scripts.audit_subscriptions import audit_users, print_report

UTC = timezone.utc


def add_duplicate(stripe_fake):
    return stripe_fake.add_subscription(
        "cus_coach", "price_pro",
        created=datetime(2026, 3, 10, tzinfo=UTC),
        period_start=datetime(2026, 3, 10, tzinfo=UTC),
        period_end=datetime(2026, 4, 10, tzinfo=UTC),
        subscription_id="sub_duplicate",
    )


class TestAuditUsers:

    @pytest.mark.asyncio
    async def test_reports_duplicates_without_cancelling(self, billing_service, subscribed_user, stripe_fake):
        add_duplicate(stripe_fake)

        [audit] = await audit_users(billing_service)

        assert audit.user_id == subscribed_user.id
        assert audit.canonical_subscription_id == "sub_duplicate"
        assert audit.has_duplicates is True
        assert audit.cancelled_subscription_ids == []
        assert stripe_fake.subscriptions["sub_basic"].status == "active"

    @pytest.mark.asyncio
    async def test_cancels_duplicates_when_asked(self, billing_service, subscribed_user, stripe_fake):
        add_duplicate(stripe_fake)

        [audit] = await audit_users(billing_service, cancel_duplicates=True)

        assert audit.cancelled_subscription_ids == ["sub_basic"]
        assert stripe_fake.subscriptions["sub_basic"].status == "canceled"

    @pytest.mark.asyncio
    async def test_users_without_customer_are_skipped(self, billing_service, user):
        assert await audit_users(billing_service) == []

    @pytest.mark.asyncio
    async def test_single_user_by_id(self, billing_service, subscribed_user):
        audits = await audit_users(billing_service, user_id=subscribed_user.id)

        assert [a.canonical_subscription_id for a in audits] == ["sub_basic"]
        assert await audit_users(billing_service, user_id=9999) == []

    @pytest.mark.asyncio
    async def test_provider_errors_are_recorded_per_user(self, billing_service, subscribed_user, stripe_fake, capsys):
        stripe_fake.fail("list_subscriptions", ProviderUnavailableError("Stripe down"))

        [audit] = await audit_users(billing_service)
        print_report([audit])

        assert audit.error == "Stripe down"
        assert "Stripe down" in capsys.readouterr().out

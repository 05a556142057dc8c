"""Tests for canonical subscription resolution and duplicate handling."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from app.core.config import settings as app_settings
from app.modules.billing.auditor import SubscriptionAuditor, select_canonical
from app.modules.billing.exceptions import (
    CustomerNotFoundError,
    PriceNotFoundError,
    ProviderInconsistencyError,
)
from app.modules.billing.service import BillingService

UTC = timezone.utc


def add_active(stripe_fake, subscription_id, created, price_id="price_basic"):
    return stripe_fake.add_subscription(
        "cus_coach",
        price_id,
        created=created,
        period_start=created,
        period_end=created + timedelta(days=30),
        subscription_id=subscription_id,
    )


class TestCanonicalSelection:
    """The newest active subscription is canonical."""

    @pytest.mark.asyncio
    async def test_newest_of_several_active_wins(self, billing_service, subscribed_user, stripe_fake, caplog):
        add_active(stripe_fake, "sub_newest", datetime(2026, 3, 10, tzinfo=UTC), "price_pro")
        add_active(stripe_fake, "sub_middle", datetime(2026, 3, 5, tzinfo=UTC))

        with caplog.at_level(logging.WARNING):
            canonical = await billing_service.auditor.resolve_canonical_subscription(
                "cus_coach", subscribed_user
            )

        assert canonical.id == "sub_newest"
        assert subscribed_user.stripe_subscription_id == "sub_newest"
        assert any(
            "Multiple active subscriptions" in record.getMessage() for record in caplog.records
        )
        # Detection never cancels anything
        assert stripe_fake.call_count("cancel_subscription") == 0

    def test_creation_time_ties_fall_back_to_id(self, stripe_fake):
        created = datetime(2026, 3, 1, tzinfo=UTC)
        subscriptions = [
            add_active(stripe_fake, "sub_a", created),
            add_active(stripe_fake, "sub_b", created),
        ]
        assert select_canonical(subscriptions).id == "sub_b"

    def test_empty_list_is_rejected(self):
        with pytest.raises(ValueError):
            select_canonical([])

    @pytest.mark.asyncio
    async def test_repeated_resolution_is_stable(self, billing_service, subscribed_user, stripe_fake):
        await billing_service.auditor.resolve_canonical_subscription("cus_coach", subscribed_user)
        assert subscribed_user.stripe_subscription_id == "sub_basic"

        canonical = await billing_service.auditor.resolve_canonical_subscription(
            "cus_coach", subscribed_user
        )

        assert canonical.id == "sub_basic"
        assert stripe_fake.call_count("create_subscription") == 0

    @pytest.mark.asyncio
    async def test_trialing_and_cancelled_subscriptions_are_not_canonical(self, billing_service, subscribed_user, stripe_fake):
        stripe_fake.add_subscription(
            "cus_coach", "price_pro",
            created=datetime(2026, 3, 15, tzinfo=UTC),
            period_start=datetime(2026, 3, 15, tzinfo=UTC),
            period_end=datetime(2026, 4, 1, tzinfo=UTC),
            status="trialing",
        )
        stripe_fake.add_subscription(
            "cus_coach", "price_pro",
            created=datetime(2026, 3, 16, tzinfo=UTC),
            period_start=datetime(2026, 3, 16, tzinfo=UTC),
            period_end=datetime(2026, 4, 16, tzinfo=UTC),
            status="canceled",
        )

        canonical = await billing_service.auditor.resolve_canonical_subscription(
            "cus_coach", subscribed_user
        )

        assert canonical.id == "sub_basic"


class TestDefaultSubscription:
    """A customer without an active subscription gets the default plan."""

    @pytest.mark.asyncio
    async def test_default_plan_created_once(self, billing_service, user, stripe_fake):
        first = await billing_service.get_current_subscription(user.id)
        second = await billing_service.get_current_subscription(user.id)

        assert first.subscription.id == second.subscription.id
        assert first.subscription.price_id == "price_starter"
        assert first.word_limit == 500
        assert stripe_fake.call_count("create_subscription") == 1
        assert user.stripe_subscription_id == first.subscription.id

    @pytest.mark.asyncio
    async def test_configured_default_price_is_used(self, session, user, stripe_fake, sleeper):
        config = app_settings.model_copy(update={"DEFAULT_PRICE_ID": "price_basic"})
        service = BillingService(session, stripe_fake, config=config, sleep=sleeper)

        current = await service.get_current_subscription(user.id)

        assert current.subscription.price_id == "price_basic"
        assert stripe_fake.call_count("find_default_price") == 0

    @pytest.mark.asyncio
    async def test_missing_default_product_raises(self, billing_service, user, stripe_fake):
        stripe_fake.products["prod_price_starter"].active = False

        with pytest.raises(PriceNotFoundError):
            await billing_service.get_current_subscription(user.id)

    @pytest.mark.asyncio
    async def test_deleted_customer_is_recovered_before_listing(self, billing_service, subscribed_user, stripe_fake):
        # The customer disappears between the existence check and the listing
        stripe_fake.delete_customer("cus_coach")

        canonical = await billing_service.auditor.resolve_canonical_subscription(
            "cus_coach", subscribed_user
        )

        assert canonical.customer_id != "cus_coach"
        assert subscribed_user.stripe_customer_id == canonical.customer_id
        assert subscribed_user.stripe_subscription_id == canonical.id
        assert canonical.price_id == "price_starter"

    @pytest.mark.asyncio
    async def test_customer_missing_after_recovery_is_inconsistent(self, billing_service, subscribed_user, stripe_fake):
        stripe_fake.fail("list_subscriptions", CustomerNotFoundError("No such customer"))

        with pytest.raises(ProviderInconsistencyError):
            await billing_service.auditor.resolve_canonical_subscription(
                "cus_coach", subscribed_user
            )

        assert stripe_fake.call_count("list_subscriptions") == 2
        assert stripe_fake.call_count("create_subscription") == 0
        assert subscribed_user.stripe_customer_id != "cus_coach"


class TestWordLimit:
    """Word limit read from product metadata."""

    @pytest.mark.parametrize("raw, expected", [
        ("1500", 1500),
        (" 750 ", 750),
        ("unlimited", 500),
        ("-10", 500),
        (None, 500),
    ])
    def test_word_limit_parsing(self, stripe_fake, raw, expected):
        price = stripe_fake.prices["price_basic"]
        price.product.metadata = {} if raw is None else {"Words": raw}
        subscription = stripe_fake.add_subscription(
            "cus_any", "price_basic",
            created=datetime(2026, 3, 1, tzinfo=UTC),
            period_start=datetime(2026, 3, 1, tzinfo=UTC),
            period_end=datetime(2026, 4, 1, tzinfo=UTC),
        )

        auditor = SubscriptionAuditor(stripe_fake, user_repo=None, customer_resolver=None)
        assert auditor.word_limit_for(subscription) == expected


class TestDuplicateCleanup:
    """Explicit cancellation of non-canonical subscriptions."""

    @pytest.mark.asyncio
    async def test_cancels_all_but_newest(self, billing_service, subscribed_user, stripe_fake):
        add_active(stripe_fake, "sub_newest", datetime(2026, 3, 10, tzinfo=UTC))
        add_active(stripe_fake, "sub_middle", datetime(2026, 3, 5, tzinfo=UTC))

        result = await billing_service.cancel_duplicate_subscriptions(subscribed_user.id)

        assert result.canonical_subscription_id == "sub_newest"
        assert sorted(result.cancelled_subscription_ids) == ["sub_basic", "sub_middle"]
        assert stripe_fake.subscriptions["sub_basic"].status == "canceled"
        assert stripe_fake.subscriptions["sub_newest"].status == "active"

    @pytest.mark.asyncio
    async def test_single_subscription_is_left_alone(self, billing_service, subscribed_user, stripe_fake):
        result = await billing_service.cancel_duplicate_subscriptions(subscribed_user.id)

        assert result.canonical_subscription_id == "sub_basic"
        assert result.cancelled_subscription_ids == []

"""Tests for keeping a user's Stripe customer reference valid."""

import logging

import pytest

from app.modules.billing.customers import CustomerResolver
from app.modules.billing.exceptions import ProviderUnavailableError
from app.modules.billing.repository import UserRepository


class TestEnsureCustomer:
    """Creating and reusing the user's customer."""

    @pytest.mark.asyncio
    async def test_creates_customer_once(self, session, user, stripe_fake):
        resolver = CustomerResolver(stripe_fake, UserRepository(session))

        first = await resolver.ensure_customer(user)
        second = await resolver.ensure_customer(user)

        assert first == second
        assert user.stripe_customer_id == first
        assert stripe_fake.call_count("create_customer") == 1
        assert stripe_fake.idempotency_keys == [f"user-{user.id}-customer"]
        assert stripe_fake.customer_metadata[first] == {"userId": str(user.id)}

    @pytest.mark.asyncio
    async def test_retried_create_returns_same_customer(self, session, user, stripe_fake):
        # An earlier attempt created the customer but never stored it
        created = stripe_fake.create_customer(
            email=user.email, idempotency_key=f"user-{user.id}-customer"
        )
        resolver = CustomerResolver(stripe_fake, UserRepository(session))

        customer_id = await resolver.ensure_customer(user)

        assert customer_id == created.id
        assert len(stripe_fake.customers) == 1

    @pytest.mark.asyncio
    async def test_existing_customer_is_kept(self, session, subscribed_user, stripe_fake):
        resolver = CustomerResolver(stripe_fake, UserRepository(session))

        customer_id = await resolver.ensure_customer(subscribed_user)

        assert customer_id == "cus_coach"
        assert stripe_fake.call_count("create_customer") == 0

    @pytest.mark.asyncio
    async def test_email_mismatch_is_logged_not_fixed(self, session, subscribed_user, stripe_fake, caplog):
        stripe_fake.customers["cus_coach"].email = "someone.else@example.com"
        resolver = CustomerResolver(stripe_fake, UserRepository(session))

        with caplog.at_level(logging.WARNING):
            customer_id = await resolver.ensure_customer(subscribed_user)

        assert customer_id == "cus_coach"
        assert any(
            "email does not match" in record.getMessage() for record in caplog.records
        )

    @pytest.mark.asyncio
    async def test_provider_outage_propagates(self, session, subscribed_user, stripe_fake):
        stripe_fake.fail("get_customer", ProviderUnavailableError("Stripe down"))
        resolver = CustomerResolver(stripe_fake, UserRepository(session))

        with pytest.raises(ProviderUnavailableError):
            await resolver.ensure_customer(subscribed_user)

        assert subscribed_user.stripe_customer_id == "cus_coach"
        assert stripe_fake.call_count("create_customer") == 0

    @pytest.mark.asyncio
    async def test_concurrent_link_wins(self, session, user, stripe_fake):
        repo = UserRepository(session)
        # Another request stores its customer after this one loaded the user
        assert await repo.link_customer(user.id, "cus_other_request", None)
        resolver = CustomerResolver(stripe_fake, repo)

        customer_id = await resolver.ensure_customer(user)

        assert customer_id == "cus_other_request"
        assert user.stripe_customer_id == "cus_other_request"


class TestRecoverCustomer:
    """Healing a stored customer id Stripe no longer knows."""

    @pytest.mark.asyncio
    async def test_adopts_live_customer_with_same_email(self, session, subscribed_user, stripe_fake):
        stripe_fake.delete_customer("cus_coach")
        stripe_fake.add_customer(subscribed_user.email, customer_id="cus_adopted")
        await UserRepository(session).set_subscription_pointer(subscribed_user, "sub_basic")
        resolver = CustomerResolver(stripe_fake, UserRepository(session))

        customer_id = await resolver.ensure_customer(subscribed_user)

        assert customer_id == "cus_adopted"
        assert subscribed_user.stripe_customer_id == "cus_adopted"
        assert subscribed_user.stripe_subscription_id is None
        assert stripe_fake.call_count("create_customer") == 0

    @pytest.mark.asyncio
    async def test_creates_replacement_when_no_customer_matches(self, session, subscribed_user, stripe_fake):
        stripe_fake.delete_customer("cus_coach")
        resolver = CustomerResolver(stripe_fake, UserRepository(session))

        customer_id = await resolver.ensure_customer(subscribed_user)

        assert customer_id != "cus_coach"
        assert subscribed_user.stripe_customer_id == customer_id
        assert stripe_fake.idempotency_keys == [
            f"user-{subscribed_user.id}-customer-replaces-cus_coach"
        ]

    @pytest.mark.asyncio
    async def test_unknown_customer_id_is_treated_as_deleted(self, session, user, stripe_fake):
        repo = UserRepository(session)
        await repo.link_customer(user.id, "cus_never_existed", None)
        await repo.reload(user)

        customer_id = await CustomerResolver(stripe_fake, repo).ensure_customer(user)

        assert customer_id in stripe_fake.customers
        assert stripe_fake.call_count("find_customer_by_email") == 1

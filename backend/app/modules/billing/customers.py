"""Mapping from local users to Stripe customers."""

import logging
from typing import Optional

from app.core.logging import log_info, log_warning
from app.core.metrics import record_customer_recovery
from app.modules.billing.models import User
from app.modules.billing.repository import UserRepository
from app.modules.billing.stripe_client import StripeClient

logger = logging.getLogger(__name__)


class CustomerResolver:
    """Keeps a user's Stripe customer reference valid.

    A stored customer id is only a weak reference: Stripe may have deleted
    the customer. The resolver heals such references by adopting a customer
    with the same email or creating a fresh one. Provider outages propagate
    as ``ProviderUnavailableError`` without retrying.
    """

    def __init__(self, stripe_client: StripeClient, user_repo: UserRepository):
        self.stripe_client = stripe_client
        self.user_repo = user_repo

    async def ensure_customer(self, user: User) -> str:
        """Get the user's Stripe customer id, creating or healing it.

        Args:
            user: Local user

        Returns:
            Stripe customer ID persisted on the user
        """
        if not user.stripe_customer_id:
            customer = self.stripe_client.create_customer(
                email=user.email,
                name=user.username,
                metadata={"userId": str(user.id)},
                idempotency_key=f"user-{user.id}-customer",
            )
            return await self._link(user, customer.id, previous_customer_id=None)

        customer = self.stripe_client.get_customer(user.stripe_customer_id)
        if customer is None:
            return await self.recover_customer(user)

        if customer.email and user.email and customer.email.lower() != user.email.lower():
            log_warning(
                logger,
                "Stripe customer email does not match user",
                user_id=user.id,
                customer_id=customer.id,
                customer_email=customer.email,
                user_email=user.email,
            )
        return customer.id

    async def recover_customer(self, user: User) -> str:
        """Replace a customer id Stripe no longer knows.

        Adopts the first live customer registered with the user's email,
        otherwise creates a new one.

        Args:
            user: Local user whose stored customer id is stale

        Returns:
            Stripe customer ID persisted on the user
        """
        stale_id = user.stripe_customer_id
        existing = self.stripe_client.find_customer_by_email(user.email)

        if existing is not None and existing.id != stale_id:
            log_info(
                logger,
                "Adopting existing Stripe customer by email",
                user_id=user.id,
                stale_customer_id=stale_id,
                customer_id=existing.id,
            )
            record_customer_recovery("adopted")
            return await self._link(user, existing.id, previous_customer_id=stale_id)

        customer = self.stripe_client.create_customer(
            email=user.email,
            name=user.username,
            metadata={"userId": str(user.id)},
            idempotency_key=f"user-{user.id}-customer-replaces-{stale_id}",
        )
        log_info(
            logger,
            "Created replacement Stripe customer",
            user_id=user.id,
            stale_customer_id=stale_id,
            customer_id=customer.id,
        )
        record_customer_recovery("created")
        return await self._link(user, customer.id, previous_customer_id=stale_id)

    async def _link(
        self,
        user: User,
        customer_id: str,
        previous_customer_id: Optional[str],
    ) -> str:
        written = await self.user_repo.link_customer(
            user.id, customer_id, previous_customer_id
        )
        await self.user_repo.reload(user)
        if not written:
            # Another request linked the user first; its id is authoritative
            log_info(
                logger,
                "Customer already linked by a concurrent request",
                user_id=user.id,
                discarded_customer_id=customer_id,
                customer_id=user.stripe_customer_id,
            )
        return user.stripe_customer_id

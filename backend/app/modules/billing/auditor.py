"""Canonical subscription resolution.

Stripe is the system of record for subscriptions. A customer should have
exactly one active subscription, but races during plan changes can leave
several. The auditor picks the newest one as canonical, keeps the user's
subscription pointer in step with it and reports the rest. Cancelling the
duplicates is a separate, explicit operation.
"""

import logging
from dataclasses import dataclass, field
from typing import Sequence

from app.core.config import Settings, settings
from app.core.logging import log_error, log_info, log_warning
from app.core.metrics import record_duplicate_subscriptions
from app.modules.billing.customers import CustomerResolver
from app.modules.billing.exceptions import (
    CustomerNotFoundError,
    PriceNotFoundError,
    ProviderInconsistencyError,
)
from app.modules.billing.models import User
from app.modules.billing.repository import UserRepository
from app.modules.billing.stripe_client import StripeClient, StripeSubscriptionData

logger = logging.getLogger(__name__)


@dataclass
class DuplicateCleanupResult:
    """Outcome of cancelling non-canonical subscriptions."""
    canonical_subscription_id: str
    cancelled_subscription_ids: list[str] = field(default_factory=list)


def select_canonical(subscriptions: Sequence[StripeSubscriptionData]) -> StripeSubscriptionData:
    """Pick the most recently created subscription.

    Ties on the creation time fall back to the larger id so the choice is
    stable across calls.
    """
    if not subscriptions:
        raise ValueError("No subscriptions to choose from")
    return max(subscriptions, key=lambda s: (s.created, s.id))


class SubscriptionAuditor:
    """Resolves and persists a customer's canonical subscription."""

    def __init__(
        self,
        stripe_client: StripeClient,
        user_repo: UserRepository,
        customer_resolver: CustomerResolver,
        config: Settings = settings,
    ):
        self.stripe_client = stripe_client
        self.user_repo = user_repo
        self.customer_resolver = customer_resolver
        self.config = config

    async def resolve_canonical_subscription(
        self,
        customer_id: str,
        user: User,
    ) -> StripeSubscriptionData:
        """Get the canonical active subscription for a customer.

        Creates the default plan subscription when none is active. When
        Stripe no longer knows the customer, the customer is recovered and
        the lookup retried once.

        Args:
            customer_id: Stripe customer ID
            user: Owner of the customer, whose pointer is kept current

        Returns:
            Canonical subscription with its price and product expanded

        Raises:
            ProviderInconsistencyError: If Stripe does not know the
                recovered customer either
        """
        try:
            active = self.stripe_client.list_subscriptions(customer_id, status="active")
        except CustomerNotFoundError:
            log_warning(
                logger,
                "Stored Stripe customer not found while listing subscriptions",
                user_id=user.id,
                customer_id=customer_id,
            )
            customer_id = await self.customer_resolver.recover_customer(user)
            try:
                active = self.stripe_client.list_subscriptions(customer_id, status="active")
            except CustomerNotFoundError as e:
                log_error(
                    logger,
                    "Recovered Stripe customer not found either",
                    exception=e,
                    user_id=user.id,
                    customer_id=customer_id,
                )
                raise ProviderInconsistencyError(
                    f"Stripe customer for user {user.id} could not be recovered"
                ) from e

        if not active:
            canonical = self._create_default_subscription(customer_id, user)
        else:
            chosen = select_canonical(active)
            if len(active) > 1:
                self._report_duplicates(user, customer_id, chosen, active)
            canonical = self.stripe_client.get_subscription(chosen.id)

        if user.stripe_subscription_id != canonical.id:
            log_info(
                logger,
                "Updating canonical subscription pointer",
                user_id=user.id,
                previous_subscription_id=user.stripe_subscription_id,
                subscription_id=canonical.id,
            )
            await self.user_repo.set_subscription_pointer(user, canonical.id)

        return canonical

    def word_limit_for(self, subscription: StripeSubscriptionData) -> int:
        """Read the per-cycle word limit from the subscription's product.

        Falls back to the configured default when the product carries no
        usable value.
        """
        product = subscription.price.product
        raw = product.metadata.get(self.config.WORD_LIMIT_METADATA_KEY) if product else None
        try:
            limit = int(str(raw).strip())
        except (TypeError, ValueError):
            limit = None

        if limit is None or limit < 0:
            log_warning(
                logger,
                "Product has no usable word limit, using default",
                subscription_id=subscription.id,
                product_id=subscription.price.product_id,
                raw_word_limit=raw,
                default_word_limit=self.config.DEFAULT_WORD_LIMIT,
            )
            return self.config.DEFAULT_WORD_LIMIT
        return limit

    async def cancel_duplicate_subscriptions(
        self,
        customer_id: str,
        user: User,
    ) -> DuplicateCleanupResult:
        """Cancel every active subscription except the canonical one.

        Never triggered by reads; operators or support tooling call this
        after reviewing the duplicate warnings.
        """
        canonical = await self.resolve_canonical_subscription(customer_id, user)
        active = self.stripe_client.list_subscriptions(canonical.customer_id, status="active")

        result = DuplicateCleanupResult(canonical_subscription_id=canonical.id)
        for subscription in active:
            if subscription.id == canonical.id:
                continue
            self.stripe_client.cancel_subscription(subscription.id)
            result.cancelled_subscription_ids.append(subscription.id)

        if result.cancelled_subscription_ids:
            log_info(
                logger,
                "Cancelled duplicate subscriptions",
                user_id=user.id,
                customer_id=canonical.customer_id,
                subscription_id=canonical.id,
                cancelled_subscription_ids=result.cancelled_subscription_ids,
            )
        return result

    def _create_default_subscription(
        self,
        customer_id: str,
        user: User,
    ) -> StripeSubscriptionData:
        if self.config.DEFAULT_PRICE_ID:
            price_id = self.config.DEFAULT_PRICE_ID
        else:
            price = self.stripe_client.find_default_price(self.config.DEFAULT_PLAN_NAME)
            if price is None:
                raise PriceNotFoundError(
                    f"No active product matching '{self.config.DEFAULT_PLAN_NAME}' has a default price"
                )
            price_id = price.id

        subscription = self.stripe_client.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            metadata={"userId": str(user.id), "source": "default_plan"},
            idempotency_key=(
                f"default-subscription-{customer_id}-"
                f"{user.stripe_subscription_id or 'none'}"
            ),
        )
        log_info(
            logger,
            "Created default subscription",
            user_id=user.id,
            customer_id=customer_id,
            subscription_id=subscription.id,
            price_id=price_id,
        )
        return subscription

    def _report_duplicates(
        self,
        user: User,
        customer_id: str,
        canonical: StripeSubscriptionData,
        active: Sequence[StripeSubscriptionData],
    ) -> None:
        record_duplicate_subscriptions()
        log_warning(
            logger,
            "Multiple active subscriptions found",
            user_id=user.id,
            customer_id=customer_id,
            subscription_count=len(active),
            canonical_subscription_id=canonical.id,
            duplicates=[
                {
                    "id": s.id,
                    "status": s.status,
                    "price_id": s.price.id,
                    "price_nickname": s.price.nickname,
                    "created_at": s.created.isoformat() if s.created else None,
                }
                for s in active
            ],
        )

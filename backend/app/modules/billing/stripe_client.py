"""Stripe client for the billing core.

Every provider payload is converted into one of the dataclasses below at
this boundary, so the rest of the module never touches raw Stripe objects.
SDK errors are translated into the billing error taxonomy here as well.
"""

import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import stripe

from app.core.config import ConfigurationError, Settings, settings
from app.core.metrics import observe_provider_call
from app.modules.billing.exceptions import (
    CustomerNotFoundError,
    NotFoundError,
    PriceNotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
    SubscriptionNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class StripeCustomerData:
    """Data for a Stripe customer."""
    id: str
    email: Optional[str]
    name: Optional[str] = None
    created: Optional[datetime] = None
    default_payment_method: Optional[str] = None


@dataclass
class StripeProductData:
    """Data for a Stripe product."""
    id: str
    name: str
    active: bool = True
    metadata: dict = field(default_factory=dict)


@dataclass
class StripePriceData:
    """Data for a Stripe price."""
    id: str
    unit_amount: int
    currency: str
    product_id: str
    interval: Optional[str] = None
    interval_count: int = 1
    nickname: Optional[str] = None
    product: Optional[StripeProductData] = None

    @property
    def is_free(self) -> bool:
        return self.unit_amount == 0

    @property
    def display_name(self) -> str:
        if self.nickname:
            return self.nickname
        if self.product is not None:
            return self.product.name
        return self.id


@dataclass
class StripePaymentIntentData:
    """Data for the payment intent behind a subscription invoice."""
    id: str
    status: str
    client_secret: Optional[str] = None

    @property
    def needs_customer_action(self) -> bool:
        return self.status in ("requires_payment_method", "requires_action")


@dataclass
class StripeSubscriptionData:
    """Data for a Stripe subscription."""
    id: str
    customer_id: str
    status: str
    created: datetime
    current_period_start: datetime
    current_period_end: datetime
    item_id: str
    price: StripePriceData
    cancel_at_period_end: bool = False
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
    latest_payment_intent: Optional[StripePaymentIntentData] = None
    billing_cycle_anchor: Optional[datetime] = None

    @property
    def interval(self) -> str:
        return self.price.interval or "month"

    @property
    def price_id(self) -> str:
        return self.price.id


@dataclass
class StripePaymentMethodData:
    """Data for a Stripe payment method."""
    id: str
    type: str = "card"
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    is_default: bool = False


@dataclass
class StripeSetupIntentData:
    """Data for a Stripe setup intent."""
    id: str
    client_secret: Optional[str]
    status: str


@dataclass
class StripeSchedulePhaseData:
    """One phase of a subscription schedule."""
    start_date: datetime
    end_date: Optional[datetime]
    price_ids: list[str] = field(default_factory=list)


@dataclass
class StripeScheduleData:
    """Data for a Stripe subscription schedule."""
    id: str
    customer_id: str
    status: str
    subscription_id: Optional[str] = None
    phases: list[StripeSchedulePhaseData] = field(default_factory=list)


def _to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def _plain(obj: Any) -> Any:
    """Convert an SDK result into plain dicts and lists."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj


def _list_data(result: Any) -> list:
    return _plain(result).get("data") or []


def _object_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field, expanded or not."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _provider_call(
    operation: str,
    not_found: type = NotFoundError,
    missing_ok: bool = False,
) -> Callable:
    """Translate Stripe SDK errors and record provider metrics.

    Args:
        operation: Metric label for the wrapped call
        not_found: NotFoundError subclass raised for ``resource_missing``
        missing_ok: Return None instead of raising on ``resource_missing``
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            outcome = "success"
            try:
                return func(*args, **kwargs)
            except stripe.InvalidRequestError as e:
                if e.code == "resource_missing":
                    outcome = "not_found"
                    if missing_ok:
                        return None
                    raise not_found(e.user_message or str(e)) from e
                outcome = "rejected"
                raise ProviderRequestError(e.user_message or str(e), code=e.code) from e
            except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
                outcome = "unavailable"
                logger.warning(
                    "Stripe unavailable",
                    extra={"operation": operation, "error": str(e)},
                )
                raise ProviderUnavailableError(
                    f"Payment provider unavailable during {operation}"
                ) from e
            except stripe.StripeError as e:
                if e.http_status is not None and e.http_status >= 500:
                    outcome = "unavailable"
                    raise ProviderUnavailableError(
                        f"Payment provider unavailable during {operation}"
                    ) from e
                outcome = "rejected"
                raise ProviderRequestError(e.user_message or str(e), code=e.code) from e
            finally:
                observe_provider_call(operation, outcome, time.perf_counter() - start_time)
        return wrapper
    return decorator


class StripeClient:
    """Client for Stripe API operations.

    Wraps one ``stripe.StripeClient`` configured with its own key, pinned
    API version and request timeout. The SDK's automatic retries are
    disabled; a timed out call surfaces as ``ProviderUnavailableError``.
    """

    def __init__(
        self,
        api_key: str,
        api_version: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[stripe.StripeClient] = None,
    ):
        if not api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        self._stripe = client or stripe.StripeClient(
            api_key,
            stripe_version=api_version,
            max_network_retries=0,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
        )

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "StripeClient":
        return cls(
            api_key=config.STRIPE_SECRET_KEY,
            api_version=config.STRIPE_API_VERSION,
            timeout_seconds=config.STRIPE_REQUEST_TIMEOUT_SECONDS,
        )

    # ==================== Customer Management ====================

    @_provider_call("customer.create")
    def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> StripeCustomerData:
        """Create a new Stripe customer.

        Args:
            email: Customer email
            name: Customer name
            metadata: Additional metadata (e.g., userId)
            idempotency_key: Makes retried creates return the same customer

        Returns:
            StripeCustomerData with customer details
        """
        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        customer = self._stripe.v1.customers.create(
            params={"email": email, "name": name, "metadata": metadata or {}},
            options=options,
        )
        return self._customer_to_data(customer)

    @_provider_call("customer.retrieve", not_found=CustomerNotFoundError, missing_ok=True)
    def get_customer(self, customer_id: str) -> Optional[StripeCustomerData]:
        """Get a Stripe customer by ID.

        Returns:
            StripeCustomerData, or None if the customer is missing or deleted
        """
        customer = _plain(self._stripe.v1.customers.retrieve(customer_id))
        if customer.get("deleted"):
            return None
        return self._customer_to_data(customer)

    @_provider_call("customer.search_email")
    def find_customer_by_email(self, email: str) -> Optional[StripeCustomerData]:
        """Get the first live customer registered with an email."""
        customers = self._stripe.v1.customers.list(params={"email": email, "limit": 10})
        for customer in _list_data(customers):
            if not customer.get("deleted"):
                return self._customer_to_data(customer)
        return None

    @_provider_call("customer.update", not_found=CustomerNotFoundError)
    def set_default_payment_method(
        self,
        customer_id: str,
        payment_method_id: str,
    ) -> StripeCustomerData:
        """Use a payment method for the customer's future invoices."""
        customer = self._stripe.v1.customers.update(
            customer_id,
            params={"invoice_settings": {"default_payment_method": payment_method_id}},
        )
        return self._customer_to_data(customer)

    def _customer_to_data(self, customer: Any) -> StripeCustomerData:
        customer = _plain(customer)
        invoice_settings = customer.get("invoice_settings") or {}
        return StripeCustomerData(
            id=customer["id"],
            email=customer.get("email"),
            name=customer.get("name"),
            created=_to_datetime(customer.get("created")),
            default_payment_method=_object_id(invoice_settings.get("default_payment_method")),
        )

    # ==================== Payment Methods ====================

    @_provider_call("payment_method.list", not_found=CustomerNotFoundError)
    def list_payment_methods(
        self,
        customer_id: str,
        type: str = "card",
    ) -> list[StripePaymentMethodData]:
        """List payment methods attached to a customer."""
        methods = self._stripe.v1.payment_methods.list(
            params={"customer": customer_id, "type": type}
        )
        return [self._payment_method_to_data(pm) for pm in _list_data(methods)]

    @_provider_call("setup_intent.create", not_found=CustomerNotFoundError)
    def create_setup_intent(self, customer_id: str) -> StripeSetupIntentData:
        """Create a SetupIntent for saving an off-session payment method."""
        intent = self._stripe.v1.setup_intents.create(
            params={
                "customer": customer_id,
                "usage": "off_session",
                "automatic_payment_methods": {"enabled": True},
            }
        )
        intent = _plain(intent)
        return StripeSetupIntentData(
            id=intent["id"],
            client_secret=intent.get("client_secret"),
            status=intent.get("status", "requires_payment_method"),
        )

    def _payment_method_to_data(self, pm: Any) -> StripePaymentMethodData:
        pm = _plain(pm)
        card = pm.get("card") or {}
        return StripePaymentMethodData(
            id=pm["id"],
            type=pm.get("type", "card"),
            card_brand=card.get("brand"),
            card_last4=card.get("last4"),
            card_exp_month=card.get("exp_month"),
            card_exp_year=card.get("exp_year"),
        )

    # ==================== Prices & Products ====================

    @_provider_call("price.retrieve", not_found=PriceNotFoundError)
    def get_price(self, price_id: str) -> StripePriceData:
        """Get a price with its product expanded."""
        price = self._stripe.v1.prices.retrieve(price_id, params={"expand": ["product"]})
        return self._price_to_data(price)

    @_provider_call("product.list")
    def find_default_price(self, name_fragment: str) -> Optional[StripePriceData]:
        """Find the default price of the first active product matching a name.

        Args:
            name_fragment: Case-insensitive substring of the product name

        Returns:
            StripePriceData with the product attached, or None
        """
        products = self._stripe.v1.products.list(
            params={"active": True, "limit": 100, "expand": ["data.default_price"]}
        )
        fragment = name_fragment.lower()
        for product in _list_data(products):
            if fragment not in (product.get("name") or "").lower():
                continue
            default_price = product.get("default_price")
            if not default_price:
                continue
            if isinstance(default_price, str):
                default_price = self._stripe.v1.prices.retrieve(default_price)
            price = self._price_to_data(default_price)
            price.product = self._product_to_data(product)
            return price
        return None

    def _price_to_data(self, price: Any) -> StripePriceData:
        price = _plain(price)
        recurring = price.get("recurring") or {}
        product = price.get("product")
        product_data = None
        if product is not None and not isinstance(product, str):
            product_data = self._product_to_data(product)
        return StripePriceData(
            id=price["id"],
            unit_amount=price.get("unit_amount") or 0,
            currency=price.get("currency") or "usd",
            product_id=_object_id(product) or "",
            interval=recurring.get("interval"),
            interval_count=recurring.get("interval_count") or 1,
            nickname=price.get("nickname"),
            product=product_data,
        )

    def _product_to_data(self, product: Any) -> StripeProductData:
        product = _plain(product)
        return StripeProductData(
            id=product["id"],
            name=product.get("name") or "",
            active=bool(product.get("active", True)),
            metadata=dict(product.get("metadata") or {}),
        )

    # ==================== Subscription Management ====================

    @_provider_call("subscription.list", not_found=CustomerNotFoundError)
    def list_subscriptions(
        self,
        customer_id: str,
        status: str = "active",
    ) -> list[StripeSubscriptionData]:
        """List a customer's subscriptions in a given status.

        Args:
            customer_id: Stripe customer ID
            status: Stripe status filter, ``all`` for every status

        Raises:
            CustomerNotFoundError: If Stripe does not know the customer
        """
        subscriptions = self._stripe.v1.subscriptions.list(
            params={"customer": customer_id, "status": status, "limit": 100}
        )
        return [self._subscription_to_data(sub) for sub in _list_data(subscriptions)]

    @_provider_call("subscription.retrieve", not_found=SubscriptionNotFoundError)
    def get_subscription(self, subscription_id: str) -> StripeSubscriptionData:
        """Get a subscription with its price and product expanded."""
        sub = self._stripe.v1.subscriptions.retrieve(
            subscription_id,
            params={"expand": ["items.data.price.product"]},
        )
        return self._subscription_to_data(sub)

    @_provider_call("subscription.create", not_found=CustomerNotFoundError)
    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        trial_end: Optional[datetime] = None,
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> StripeSubscriptionData:
        """Create a subscription on a single price.

        Args:
            customer_id: Stripe customer ID
            price_id: Stripe price ID
            trial_end: Defer the first charge until this instant
            metadata: Additional metadata
            idempotency_key: Makes retried creates return the same subscription

        Returns:
            StripeSubscriptionData
        """
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata or {},
            "expand": ["items.data.price.product"],
        }
        if trial_end is not None:
            params["trial_end"] = int(trial_end.timestamp())
            params["proration_behavior"] = "none"
        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        sub = self._stripe.v1.subscriptions.create(params=params, options=options)
        return self._subscription_to_data(sub)

    @_provider_call("subscription.update_price", not_found=SubscriptionNotFoundError)
    def update_subscription_price(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
    ) -> StripeSubscriptionData:
        """Swap a subscription item's price in place with proration."""
        sub = self._stripe.v1.subscriptions.update(
            subscription_id,
            params={
                "items": [{"id": item_id, "price": price_id}],
                "proration_behavior": "create_prorations",
                "payment_behavior": "allow_incomplete",
                "expand": ["latest_invoice.payment_intent", "items.data.price.product"],
            },
        )
        return self._subscription_to_data(sub)

    @_provider_call("subscription.update_cancel_flag", not_found=SubscriptionNotFoundError)
    def set_cancel_at_period_end(
        self,
        subscription_id: str,
        cancel_at_period_end: bool,
    ) -> StripeSubscriptionData:
        """Set or clear a subscription's cancel-at-period-end flag."""
        sub = self._stripe.v1.subscriptions.update(
            subscription_id,
            params={"cancel_at_period_end": cancel_at_period_end},
        )
        return self._subscription_to_data(sub)

    @_provider_call("subscription.cancel", not_found=SubscriptionNotFoundError)
    def cancel_subscription(self, subscription_id: str) -> StripeSubscriptionData:
        """Cancel a subscription immediately."""
        sub = self._stripe.v1.subscriptions.cancel(subscription_id)
        return self._subscription_to_data(sub)

    def _subscription_to_data(self, sub: Any) -> StripeSubscriptionData:
        sub = _plain(sub)
        items = (sub.get("items") or {}).get("data") or []
        if not items:
            raise ProviderRequestError(f"Subscription {sub.get('id')} has no items")
        item = items[0]

        # Newer API versions only report the period on the item
        period_start = sub.get("current_period_start") or item.get("current_period_start")
        period_end = sub.get("current_period_end") or item.get("current_period_end")

        return StripeSubscriptionData(
            id=sub["id"],
            customer_id=_object_id(sub.get("customer")) or "",
            status=sub.get("status", ""),
            created=_to_datetime(sub.get("created")),
            current_period_start=_to_datetime(period_start),
            current_period_end=_to_datetime(period_end),
            item_id=item["id"],
            price=self._price_to_data(item["price"]),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            trial_start=_to_datetime(sub.get("trial_start")),
            trial_end=_to_datetime(sub.get("trial_end")),
            metadata=dict(sub.get("metadata") or {}),
            latest_payment_intent=self._latest_payment_intent(sub.get("latest_invoice")),
            billing_cycle_anchor=_to_datetime(sub.get("billing_cycle_anchor")),
        )

    def _latest_payment_intent(self, invoice: Any) -> Optional[StripePaymentIntentData]:
        if invoice is None or isinstance(invoice, str):
            return None
        intent = invoice.get("payment_intent")
        if intent is None or isinstance(intent, str):
            return None
        return StripePaymentIntentData(
            id=intent["id"],
            status=intent.get("status", ""),
            client_secret=intent.get("client_secret"),
        )

    # ==================== Subscription Schedules ====================

    @_provider_call("subscription_schedule.list", not_found=CustomerNotFoundError)
    def list_subscription_schedules(self, customer_id: str) -> list[StripeScheduleData]:
        """List a customer's subscription schedules."""
        schedules = self._stripe.v1.subscription_schedules.list(
            params={"customer": customer_id, "limit": 100}
        )
        return [self._schedule_to_data(s) for s in _list_data(schedules)]

    @_provider_call("subscription_schedule.retrieve", not_found=SubscriptionNotFoundError)
    def get_subscription_schedule(self, schedule_id: str) -> StripeScheduleData:
        """Get a subscription schedule by ID."""
        return self._schedule_to_data(
            self._stripe.v1.subscription_schedules.retrieve(schedule_id)
        )

    @_provider_call("subscription_schedule.release", not_found=SubscriptionNotFoundError)
    def release_subscription_schedule(self, schedule_id: str) -> StripeScheduleData:
        """Release a schedule, keeping its subscription but dropping future phases."""
        return self._schedule_to_data(
            self._stripe.v1.subscription_schedules.release(schedule_id)
        )

    def _schedule_to_data(self, schedule: Any) -> StripeScheduleData:
        schedule = _plain(schedule)
        phases = []
        for phase in schedule.get("phases") or []:
            phases.append(StripeSchedulePhaseData(
                start_date=_to_datetime(phase.get("start_date")),
                end_date=_to_datetime(phase.get("end_date")),
                price_ids=[
                    _object_id(item.get("price"))
                    for item in phase.get("items") or []
                    if item.get("price")
                ],
            ))
        return StripeScheduleData(
            id=schedule["id"],
            customer_id=_object_id(schedule.get("customer")) or "",
            status=schedule.get("status", ""),
            subscription_id=_object_id(schedule.get("subscription")),
            phases=phases,
        )

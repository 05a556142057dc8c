"""Fixtures for billing tests.

``FakeStripeClient`` keeps customers, prices and subscriptions in memory
and exposes the same methods as ``StripeClient``, returning the same
dataclasses and raising the same billing errors.
"""

import itertools
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.modules.billing.cycles import anchor_boundary
from app.modules.billing.exceptions import (
    CustomerNotFoundError,
    PriceNotFoundError,
    SubscriptionNotFoundError,
)
from app.modules.billing.models import Recording, User  # noqa: F401  registers tables
from app.modules.billing.repository import UserRepository
from app.modules.billing.service import BillingService
from app.modules.billing.stripe_client import (
    StripeCustomerData,
    StripePaymentMethodData,
    StripePriceData,
    StripeProductData,
    StripeScheduleData,
    StripeSetupIntentData,
    StripeSubscriptionData,
)


NOW = datetime(2026, 3, 21, 0, 0, tzinfo=timezone.utc)
PERIOD_START = datetime(2026, 3, 1, 0, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)


class FakeStripeClient:
    """In-memory Stripe account."""

    def __init__(self, now: datetime):
        self.now = now
        self.customers: dict[str, StripeCustomerData] = {}
        self.customer_metadata: dict[str, dict] = {}
        self.deleted_customer_ids: set[str] = set()
        self.products: dict[str, StripeProductData] = {}
        self.prices: dict[str, StripePriceData] = {}
        self.default_prices: dict[str, str] = {}
        self.subscriptions: dict[str, StripeSubscriptionData] = {}
        self.payment_methods: dict[str, list[StripePaymentMethodData]] = {}
        self.payment_method_delays: dict[str, int] = {}
        self.schedules: dict[str, StripeScheduleData] = {}
        self.setup_intents: list[StripeSetupIntentData] = []
        self.next_payment_intent = None
        self.calls: list[str] = []
        self.idempotency_keys: list[str] = []
        self._failures: dict[str, tuple[Exception, int]] = {}
        self._idempotent: dict[str, object] = {}
        self._ids = itertools.count(1)

    # ==================== Test controls ====================

    def fail(self, operation: str, error: Exception, after: int = 0) -> None:
        """Raise ``error`` from ``operation`` once it was called ``after`` more times."""
        self._failures[operation] = (error, self.call_count(operation) + after)

    def recover(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def call_count(self, operation: str) -> int:
        return self.calls.count(operation)

    def _record(self, operation: str) -> None:
        previous = self.call_count(operation)
        self.calls.append(operation)
        failure = self._failures.get(operation)
        if failure is not None and previous >= failure[1]:
            raise failure[0]

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids):04d}"

    def _replay(self, idempotency_key: Optional[str]):
        if idempotency_key:
            self.idempotency_keys.append(idempotency_key)
            return self._idempotent.get(idempotency_key)
        return None

    def _remember(self, idempotency_key: Optional[str], value):
        if idempotency_key:
            self._idempotent[idempotency_key] = value
        return value

    # ==================== Seeding ====================

    def add_price(
        self,
        price_id: str,
        unit_amount: int,
        product_name: str,
        word_limit=None,
        interval: str = "month",
        nickname: Optional[str] = None,
        default: bool = False,
    ) -> StripePriceData:
        product_id = f"prod_{price_id}"
        metadata = {} if word_limit is None else {"Words": str(word_limit)}
        product = StripeProductData(id=product_id, name=product_name, metadata=metadata)
        price = StripePriceData(
            id=price_id,
            unit_amount=unit_amount,
            currency="usd",
            product_id=product_id,
            interval=interval,
            nickname=nickname,
            product=product,
        )
        self.products[product_id] = product
        self.prices[price_id] = price
        if default:
            self.default_prices[product_id] = price_id
        return price

    def add_customer(
        self,
        email: str,
        customer_id: Optional[str] = None,
        default_payment_method: Optional[str] = None,
    ) -> StripeCustomerData:
        customer = StripeCustomerData(
            id=customer_id or self._next_id("cus"),
            email=email,
            created=self.now,
            default_payment_method=default_payment_method,
        )
        self.customers[customer.id] = customer
        return customer

    def delete_customer(self, customer_id: str) -> None:
        self.deleted_customer_ids.add(customer_id)

    def add_subscription(
        self,
        customer_id: str,
        price_id: str,
        created: datetime,
        period_start: datetime,
        period_end: datetime,
        subscription_id: Optional[str] = None,
        status: str = "active",
        cancel_at_period_end: bool = False,
        trial_end: Optional[datetime] = None,
        metadata: Optional[dict] = None,
        billing_cycle_anchor: Optional[datetime] = None,
    ) -> StripeSubscriptionData:
        subscription = StripeSubscriptionData(
            id=subscription_id or self._next_id("sub"),
            customer_id=customer_id,
            status=status,
            created=created,
            current_period_start=period_start,
            current_period_end=period_end,
            item_id=self._next_id("si"),
            price=self.prices[price_id],
            cancel_at_period_end=cancel_at_period_end,
            trial_end=trial_end,
            metadata=dict(metadata or {}),
            billing_cycle_anchor=billing_cycle_anchor or period_start,
        )
        self.subscriptions[subscription.id] = subscription
        return subscription

    def add_payment_method(
        self,
        customer_id: str,
        payment_method_id: Optional[str] = None,
        last4: str = "4242",
    ) -> StripePaymentMethodData:
        method = StripePaymentMethodData(
            id=payment_method_id or self._next_id("pm"),
            card_brand="visa",
            card_last4=last4,
            card_exp_month=12,
            card_exp_year=2030,
        )
        self.payment_methods.setdefault(customer_id, []).append(method)
        return method

    def _live_customer(self, customer_id: str) -> StripeCustomerData:
        customer = self.customers.get(customer_id)
        if customer is None or customer_id in self.deleted_customer_ids:
            raise CustomerNotFoundError(f"No such customer: '{customer_id}'")
        return customer

    def _subscription(self, subscription_id: str) -> StripeSubscriptionData:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"No such subscription: '{subscription_id}'")
        return subscription

    # ==================== Customers ====================

    def create_customer(self, email, name=None, metadata=None, idempotency_key=None):
        self._record("create_customer")
        replayed = self._replay(idempotency_key)
        if replayed is not None:
            return replayed
        customer = self.add_customer(email)
        customer.name = name
        self.customer_metadata[customer.id] = dict(metadata or {})
        return self._remember(idempotency_key, customer)

    def get_customer(self, customer_id):
        self._record("get_customer")
        if customer_id in self.deleted_customer_ids:
            return None
        return self.customers.get(customer_id)

    def find_customer_by_email(self, email):
        self._record("find_customer_by_email")
        for customer in self.customers.values():
            if customer.id not in self.deleted_customer_ids and customer.email == email:
                return customer
        return None

    def set_default_payment_method(self, customer_id, payment_method_id):
        self._record("set_default_payment_method")
        customer = self._live_customer(customer_id)
        customer.default_payment_method = payment_method_id
        return customer

    # ==================== Payment methods ====================

    def list_payment_methods(self, customer_id, type="card"):
        self._record("list_payment_methods")
        self._live_customer(customer_id)
        pending = self.payment_method_delays.get(customer_id, 0)
        if pending > 0:
            self.payment_method_delays[customer_id] = pending - 1
            return []
        return [replace(m) for m in self.payment_methods.get(customer_id, [])]

    def create_setup_intent(self, customer_id):
        self._record("create_setup_intent")
        self._live_customer(customer_id)
        intent_id = self._next_id("seti")
        intent = StripeSetupIntentData(
            id=intent_id,
            client_secret=f"{intent_id}_secret",
            status="requires_payment_method",
        )
        self.setup_intents.append(intent)
        return intent

    # ==================== Prices ====================

    def _price(self, price_id: str) -> StripePriceData:
        price = self.prices.get(price_id)
        if price is None:
            raise PriceNotFoundError(f"No such price: '{price_id}'")
        return price

    def get_price(self, price_id):
        self._record("get_price")
        return self._price(price_id)

    def find_default_price(self, name_fragment):
        self._record("find_default_price")
        for product in self.products.values():
            if not product.active or name_fragment.lower() not in product.name.lower():
                continue
            price_id = self.default_prices.get(product.id)
            if price_id:
                return self.prices[price_id]
        return None

    # ==================== Subscriptions ====================

    def list_subscriptions(self, customer_id, status="active"):
        self._record("list_subscriptions")
        self._live_customer(customer_id)
        return [
            s for s in self.subscriptions.values()
            if s.customer_id == customer_id and (status == "all" or s.status == status)
        ]

    def get_subscription(self, subscription_id):
        self._record("get_subscription")
        return self._subscription(subscription_id)

    def create_subscription(
        self,
        customer_id,
        price_id,
        trial_end=None,
        metadata=None,
        idempotency_key=None,
    ):
        self._record("create_subscription")
        replayed = self._replay(idempotency_key)
        if replayed is not None:
            return replayed
        self._live_customer(customer_id)
        price = self._price(price_id)

        if trial_end is not None:
            status, period_end = "trialing", trial_end
        else:
            months = 12 if price.interval == "year" else 1
            month_index = self.now.year * 12 + self.now.month - 1
            status, period_end = "active", anchor_boundary(self.now, month_index + months)

        subscription = self.add_subscription(
            customer_id,
            price_id,
            created=self.now,
            period_start=self.now,
            period_end=period_end,
            status=status,
            trial_end=trial_end,
            metadata=metadata,
        )
        return self._remember(idempotency_key, subscription)

    def update_subscription_price(self, subscription_id, item_id, price_id):
        self._record("update_subscription_price")
        subscription = self._subscription(subscription_id)
        subscription.price = self._price(price_id)
        subscription.latest_payment_intent = self.next_payment_intent
        return subscription

    def set_cancel_at_period_end(self, subscription_id, cancel_at_period_end):
        self._record("set_cancel_at_period_end")
        subscription = self._subscription(subscription_id)
        subscription.cancel_at_period_end = cancel_at_period_end
        return subscription

    def cancel_subscription(self, subscription_id):
        self._record("cancel_subscription")
        subscription = self._subscription(subscription_id)
        subscription.status = "canceled"
        return subscription

    # ==================== Schedules ====================

    def list_subscription_schedules(self, customer_id):
        self._record("list_subscription_schedules")
        return [s for s in self.schedules.values() if s.customer_id == customer_id]

    def get_subscription_schedule(self, schedule_id):
        self._record("get_subscription_schedule")
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            raise SubscriptionNotFoundError(f"No such subscription schedule: '{schedule_id}'")
        return schedule

    def release_subscription_schedule(self, schedule_id):
        self._record("release_subscription_schedule")
        schedule = self.get_subscription_schedule(schedule_id)
        schedule.status = "released"
        return schedule


class RecordingSleep:
    """Replaces ``asyncio.sleep`` and remembers requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def stripe_fake():
    fake = FakeStripeClient(now=NOW)
    fake.add_price("price_starter", 0, "Starter", word_limit=500, default=True)
    fake.add_price("price_community", 0, "Community", word_limit=500)
    fake.add_price("price_basic", 1000, "Basic", word_limit=2000)
    fake.add_price("price_pro", 2000, "Pro", word_limit=5000)
    fake.add_price("price_pro_annual", 20000, "Pro Annual", word_limit=5000, interval="year")
    return fake


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def user(session):
    return await UserRepository(session).create(email="coach@example.com", username="coach")


@pytest_asyncio.fixture
async def subscribed_user(session, user, stripe_fake):
    """User with a Stripe customer and an active monthly Basic subscription."""
    stripe_fake.add_customer(user.email, customer_id="cus_coach")
    await UserRepository(session).link_customer(user.id, "cus_coach", None)
    await session.refresh(user)
    stripe_fake.add_subscription(
        "cus_coach",
        "price_basic",
        created=PERIOD_START,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        subscription_id="sub_basic",
    )
    return user


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def billing_service(session, stripe_fake, sleeper):
    return BillingService(session, stripe_fake, sleep=sleeper)

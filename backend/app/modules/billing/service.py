"""Billing service facade.

Wires the customer resolver, subscription auditor, usage aggregator and
plan change orchestrator together for one request. The Stripe client is
created once at startup and passed in; the session is request-scoped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.core.logging import log_info
from app.modules.billing.auditor import DuplicateCleanupResult, SubscriptionAuditor
from app.modules.billing.customers import CustomerResolver
from app.modules.billing.cycles import (
    BillingCycleWindow,
    ensure_utc,
    historical_windows,
    usage_window_for,
)
from app.modules.billing.exceptions import NotFoundError, UserNotFoundError
from app.modules.billing.metering import (
    CycleAnalytics,
    TrendAnalytics,
    UsageAggregator,
    UsageReport,
    calculate_cycle_analytics,
    calculate_trend,
)
from app.modules.billing.models import Recording, User
from app.modules.billing.plan_changes import (
    ChangeType,
    PlanChangeOrchestrator,
    PlanChangeRequest,
    PlanChangeResult,
    ScheduledChange,
)
from app.modules.billing.repository import RecordingRepository, UserRepository
from app.modules.billing.stripe_client import (
    StripeClient,
    StripePaymentMethodData,
    StripeSetupIntentData,
    StripeSubscriptionData,
)

logger = logging.getLogger(__name__)


@dataclass
class CurrentSubscription:
    """Canonical subscription with its resolved word limit."""
    subscription: StripeSubscriptionData
    word_limit: int


@dataclass
class BillingCycleAnalytics:
    """Current cycle usage for a user."""
    subscription: StripeSubscriptionData
    word_limit: int
    window: BillingCycleWindow
    usage_report: UsageReport
    analytics: CycleAnalytics


@dataclass
class HistoricalCycle:
    """Usage of one past (or the current) cycle."""
    cycle_number: int
    window: BillingCycleWindow
    usage_report: UsageReport
    analytics: CycleAnalytics


@dataclass
class HistoricalUsage:
    """Usage across several cycles with its trend."""
    user_id: int
    subscription_id: str
    word_limit: int
    cycles_analyzed: int
    generated_at: datetime
    trend_analytics: TrendAnalytics
    historical_cycles: list[HistoricalCycle] = field(default_factory=list)


@dataclass
class WordAllowance:
    """Whether a user can still spend a number of words this cycle."""
    allowed: bool
    requested_words: int
    current_usage: int
    word_limit: int
    remaining_words: int


class BillingService:
    """Service for subscription and usage reconciliation."""

    def __init__(
        self,
        session: AsyncSession,
        stripe_client: StripeClient,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.config = config
        self.stripe_client = stripe_client
        self.user_repo = UserRepository(session)
        self.recording_repo = RecordingRepository(session)
        self.customers = CustomerResolver(stripe_client, self.user_repo)
        self.auditor = SubscriptionAuditor(
            stripe_client, self.user_repo, self.customers, config=config
        )
        self.aggregator = UsageAggregator(self.recording_repo)
        self.plan_changes = PlanChangeOrchestrator(
            stripe_client, self.auditor, config=config, sleep=sleep
        )

    async def _get_user(self, user_id: int) -> User:
        user = await self.user_repo.get_by_id(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    async def _resolve(self, user_id: int) -> tuple[User, str, StripeSubscriptionData]:
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        subscription = await self.auditor.resolve_canonical_subscription(customer_id, user)
        return user, user.stripe_customer_id or customer_id, subscription

    # ==================== Subscription ====================

    async def get_current_subscription(self, user_id: int) -> CurrentSubscription:
        """Get the user's canonical subscription, creating a default one if missing."""
        _, _, subscription = await self._resolve(user_id)
        return CurrentSubscription(
            subscription=subscription,
            word_limit=self.auditor.word_limit_for(subscription),
        )

    async def cancel_subscription(self, user_id: int) -> StripeSubscriptionData:
        """Cancel the canonical subscription at the end of its period."""
        user, _, subscription = await self._resolve(user_id)
        cancelled = self.stripe_client.set_cancel_at_period_end(subscription.id, True)
        log_info(
            logger,
            "Subscription set to cancel at period end",
            user_id=user.id,
            subscription_id=subscription.id,
        )
        return cancelled

    async def cancel_duplicate_subscriptions(self, user_id: int) -> DuplicateCleanupResult:
        """Cancel active subscriptions other than the canonical one."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        return await self.auditor.cancel_duplicate_subscriptions(customer_id, user)

    # ==================== Usage ====================

    async def get_billing_cycle_analytics(
        self,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> BillingCycleAnalytics:
        """Get word usage for the current cycle against the plan limit."""
        now = ensure_utc(now or datetime.now(timezone.utc))
        user, _, subscription = await self._resolve(user_id)
        word_limit = self.auditor.word_limit_for(subscription)

        window = usage_window_for(subscription, now)
        report = await self.aggregator.report(window, user.id)
        return BillingCycleAnalytics(
            subscription=subscription,
            word_limit=word_limit,
            window=window,
            usage_report=report,
            analytics=calculate_cycle_analytics(report, word_limit, now),
        )

    async def get_historical_usage(
        self,
        user_id: int,
        cycle_count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> HistoricalUsage:
        """Get usage for the current and previous cycles plus the trend.

        Args:
            user_id: User ID
            cycle_count: Cycles to include, the current one counted
            now: Current instant (defaults to the wall clock)

        Raises:
            ValueError: If cycle_count is outside 1..MAX_HISTORY_CYCLES
        """
        if cycle_count is None:
            cycle_count = self.config.DEFAULT_HISTORY_CYCLES
        if not 1 <= cycle_count <= self.config.MAX_HISTORY_CYCLES:
            raise ValueError(
                f"cycle_count must be between 1 and {self.config.MAX_HISTORY_CYCLES}"
            )

        now = ensure_utc(now or datetime.now(timezone.utc))
        user, _, subscription = await self._resolve(user_id)
        word_limit = self.auditor.word_limit_for(subscription)

        windows = historical_windows(subscription, cycle_count, now)
        reports = await self.aggregator.reports(windows, user.id)

        cycles = [
            HistoricalCycle(
                cycle_number=number,
                window=report.window,
                usage_report=report,
                analytics=calculate_cycle_analytics(report, word_limit, now),
            )
            for number, report in enumerate(reports)
        ]
        return HistoricalUsage(
            user_id=user.id,
            subscription_id=subscription.id,
            word_limit=word_limit,
            cycles_analyzed=len(cycles),
            generated_at=now,
            trend_analytics=calculate_trend(reports),
            historical_cycles=cycles,
        )

    async def check_word_allowance(
        self,
        user_id: int,
        requested_words: int,
        now: Optional[datetime] = None,
    ) -> WordAllowance:
        """Check whether a recording of ``requested_words`` fits this cycle."""
        cycle = await self.get_billing_cycle_analytics(user_id, now)
        current = cycle.usage_report.total_word_count
        return WordAllowance(
            allowed=current + requested_words <= cycle.word_limit,
            requested_words=requested_words,
            current_usage=current,
            word_limit=cycle.word_limit,
            remaining_words=cycle.analytics.remaining_words,
        )

    async def record_usage(
        self,
        user_id: int,
        title: str,
        word_count: int,
        duration: int = 0,
        recorded_at: Optional[datetime] = None,
    ) -> Recording:
        """Append a recording to the user's usage."""
        if word_count < 0:
            raise ValueError("word_count cannot be negative")
        user = await self._get_user(user_id)
        return await self.recording_repo.create(
            user_id=user.id,
            title=title,
            word_count=word_count,
            duration=duration,
            recorded_at=recorded_at,
        )

    async def deactivate_recording(self, recording_id: int) -> Recording:
        """Mark a recording inactive. It keeps counting toward its cycle."""
        recording = await self.recording_repo.deactivate(recording_id)
        if not recording:
            raise NotFoundError(f"Recording {recording_id} not found")
        return recording

    # ==================== Plan Changes ====================

    async def preview_plan_change(
        self,
        user_id: int,
        new_price_id: str,
        now: Optional[datetime] = None,
    ) -> PlanChangeRequest:
        """Preview moving the user to a new price."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        return await self.plan_changes.preview(user, customer_id, new_price_id, now)

    async def execute_plan_change(
        self,
        user_id: int,
        new_price_id: str,
        change_type: Optional[ChangeType] = None,
        now: Optional[datetime] = None,
    ) -> PlanChangeResult:
        """Execute a plan change for the user."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        return await self.plan_changes.execute(
            user, customer_id, new_price_id, change_type, now
        )

    async def list_scheduled_changes(
        self,
        user_id: int,
        now: Optional[datetime] = None,
    ) -> list[ScheduledChange]:
        """List the user's pending plan changes."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        return self.plan_changes.list_scheduled_changes(customer_id, now)

    async def cancel_scheduled_change(
        self,
        user_id: int,
        schedule_id: str,
    ) -> PlanChangeResult:
        """Cancel one of the user's pending plan changes."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        return await self.plan_changes.cancel_scheduled_change(schedule_id, customer_id)

    # ==================== Payment Methods ====================

    async def list_payment_methods(self, user_id: int) -> list[StripePaymentMethodData]:
        """List the user's cards, flagging the default one."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        customer = self.stripe_client.get_customer(customer_id)
        default_id = customer.default_payment_method if customer else None

        methods = self.stripe_client.list_payment_methods(customer_id)
        for method in methods:
            method.is_default = method.id == default_id
        return methods

    async def set_default_payment_method(
        self,
        user_id: int,
        payment_method_id: str,
    ) -> list[StripePaymentMethodData]:
        """Make one of the user's cards the default for future invoices."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)

        methods = self.stripe_client.list_payment_methods(customer_id)
        if not any(m.id == payment_method_id for m in methods):
            raise NotFoundError(f"Payment method {payment_method_id} not found")

        self.stripe_client.set_default_payment_method(customer_id, payment_method_id)
        for method in methods:
            method.is_default = method.id == payment_method_id
        return methods

    async def create_setup_intent(self, user_id: int) -> StripeSetupIntentData:
        """Start saving a new card for off-session charges."""
        user = await self._get_user(user_id)
        customer_id = await self.customers.ensure_customer(user)
        return self.stripe_client.create_setup_intent(customer_id)

"""Plan change orchestration.

Upgrades (and same-price switches) take effect immediately with Stripe
prorating the difference. Downgrades are deferred: the current
subscription is set to cancel at period end and a new subscription on the
lower price starts when that period ends, its trial covering the gap.

Lifecycle of a change::

    previewed -> executed_immediate | scheduled -> completed | cancelled
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.core.config import Settings, settings
from app.core.logging import log_error, log_info, log_warning
from app.core.metrics import record_plan_change
from app.modules.billing.auditor import SubscriptionAuditor
from app.modules.billing.cycles import ensure_utc
from app.modules.billing.exceptions import (
    BillingServiceError,
    NotFoundError,
    PaymentMethodRequiredError,
    ProviderRequestError,
    SubscriptionNotFoundError,
    TransientProviderError,
)
from app.modules.billing.models import User
from app.modules.billing.stripe_client import (
    StripeClient,
    StripePaymentMethodData,
    StripePriceData,
    StripeSubscriptionData,
)

logger = logging.getLogger(__name__)

SCHEDULE_ID_PREFIX = "sub_sched_"
DEFERRED_CHANGE_KEY = "deferred_change"
REPLACES_SUBSCRIPTION_KEY = "replaces_subscription"
# Whether the replaced subscription was already cancelling before the downgrade
REPLACED_WAS_CANCELLING_KEY = "replaced_was_cancelling"


class ChangeType(str, Enum):
    """Direction of a plan change."""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SAME = "same"


class ChangeTiming(str, Enum):
    """When a plan change takes effect."""
    IMMEDIATE = "immediate"
    END_OF_PERIOD = "end_of_period"


class PlanChangeState(str, Enum):
    """Lifecycle state of a plan change."""
    PREVIEWED = "previewed"
    EXECUTED_IMMEDIATE = "executed_immediate"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ScheduledChangeKind(str, Enum):
    DEFERRED_SUBSCRIPTION = "deferred_subscription"
    SUBSCRIPTION_SCHEDULE = "subscription_schedule"
    CANCELLATION = "cancellation"


@dataclass
class PlanChangeRequest:
    """A previewed change from the canonical subscription to a new price.

    Amounts are in minor currency units.
    """
    customer_id: str
    subscription_id: str
    subscription_item_id: str
    current_price_id: str
    new_price_id: str
    change_type: ChangeType
    timing: ChangeTiming
    current_plan: str
    new_plan: str
    current_amount: int
    new_amount: int
    currency: str
    interval: str
    immediate_charge: int
    prorated_credit: int
    next_billing_amount: int
    remaining_days: int
    total_period_days: int
    description: str
    scheduled_date: Optional[datetime] = None
    state: PlanChangeState = PlanChangeState.PREVIEWED
    cancel_at_period_end: bool = False

    @property
    def new_price_is_free(self) -> bool:
        return self.new_amount == 0


@dataclass
class PlanChangeResult:
    """Outcome of executing or cancelling a plan change."""
    success: bool
    state: PlanChangeState
    change_type: Optional[ChangeType] = None
    message: str = ""
    subscription_id: Optional[str] = None
    scheduled_change_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    requires_payment_method: bool = False
    requires_payment_action: bool = False
    setup_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


@dataclass
class ScheduledChange:
    """A plan change waiting for a future boundary."""
    id: str
    kind: ScheduledChangeKind
    status: str
    effective_date: Optional[datetime]
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    plan_name: Optional[str] = None
    replaces_subscription_id: Optional[str] = None


class PaymentMethodPollConfig:
    """Bounded polling for a payment method that is still propagating."""

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0):
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay before the next attempt, growing linearly.

        Args:
            attempt: The attempt that just failed (1-indexed).

        Returns:
            The delay in seconds.
        """
        return self.base_delay * max(attempt, 1)


def classify_change(current_amount: int, new_amount: int) -> ChangeType:
    if new_amount > current_amount:
        return ChangeType.UPGRADE
    if new_amount < current_amount:
        return ChangeType.DOWNGRADE
    return ChangeType.SAME


def _days_between(start: datetime, end: datetime) -> int:
    return math.ceil((end - start) / timedelta(days=1))


def calculate_proration(
    price_delta: int,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> int:
    """Charge for the rest of the current period at the higher price.

    ``round(price_delta * remaining_days / total_days)`` with halves rounded
    up, computed on integers.

    Args:
        price_delta: New minus current amount, in minor units
        period_start: Current period start
        period_end: Current period end
        now: Instant of the change

    Returns:
        Non-negative charge in minor units
    """
    total_days = _days_between(period_start, period_end)
    if price_delta <= 0 or total_days <= 0:
        return 0
    remaining_days = min(max(_days_between(now, period_end), 0), total_days)
    return (2 * price_delta * remaining_days + total_days) // (2 * total_days)


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency.upper()}"


def describe_change(request: PlanChangeRequest) -> str:
    """Human-readable summary of a previewed change."""
    new_price = f"{format_amount(request.new_amount, request.currency)} per {request.interval}"

    if request.change_type == ChangeType.UPGRADE:
        return (
            f"Upgrade from {request.current_plan} to {request.new_plan}. "
            f"You will be charged {format_amount(request.immediate_charge, request.currency)} "
            f"for the remaining {request.remaining_days} days of this billing period, "
            f"then {new_price}."
        )
    if request.change_type == ChangeType.DOWNGRADE:
        effective = request.scheduled_date.strftime("%B %d, %Y")
        return (
            f"Downgrade from {request.current_plan} to {request.new_plan} "
            f"takes effect on {effective}. You keep your current plan until then, "
            f"then pay {new_price}."
        )
    return (
        f"Switch from {request.current_plan} to {request.new_plan} at the same price "
        f"({new_price}). Nothing is charged today."
    )


def _replaced_was_cancelling(deferred: StripeSubscriptionData) -> bool:
    return deferred.metadata.get(REPLACED_WAS_CANCELLING_KEY) == "true"


class PlanChangeOrchestrator:
    """Previews, executes and cancels plan changes against Stripe."""

    def __init__(
        self,
        stripe_client: StripeClient,
        auditor: SubscriptionAuditor,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.stripe_client = stripe_client
        self.auditor = auditor
        self.poll_config = PaymentMethodPollConfig(
            max_attempts=config.PAYMENT_METHOD_POLL_ATTEMPTS,
            base_delay=config.PAYMENT_METHOD_POLL_DELAY_SECONDS,
        )
        self._sleep = sleep

    # ==================== Preview ====================

    async def preview(
        self,
        user: User,
        customer_id: str,
        new_price_id: str,
        now: Optional[datetime] = None,
    ) -> PlanChangeRequest:
        """Preview moving the canonical subscription to a new price.

        Args:
            user: Subscription owner
            customer_id: Stripe customer ID
            new_price_id: Target Stripe price ID
            now: Instant of the change (defaults to the wall clock)

        Returns:
            PlanChangeRequest in the ``previewed`` state
        """
        now = ensure_utc(now or datetime.now(timezone.utc))
        subscription = await self.auditor.resolve_canonical_subscription(customer_id, user)
        new_price = self.stripe_client.get_price(new_price_id)
        return self._build_request(subscription, new_price, now)

    def _build_request(
        self,
        subscription: StripeSubscriptionData,
        new_price: StripePriceData,
        now: datetime,
    ) -> PlanChangeRequest:
        current_price = subscription.price
        period_start = ensure_utc(subscription.current_period_start)
        period_end = ensure_utc(subscription.current_period_end)

        change_type = classify_change(current_price.unit_amount, new_price.unit_amount)
        if change_type == ChangeType.UPGRADE:
            immediate_charge = calculate_proration(
                new_price.unit_amount - current_price.unit_amount,
                period_start,
                period_end,
                now,
            )
        else:
            immediate_charge = 0

        total_days = max(_days_between(period_start, period_end), 0)
        remaining_days = min(max(_days_between(now, period_end), 0), total_days)
        is_downgrade = change_type == ChangeType.DOWNGRADE

        request = PlanChangeRequest(
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            subscription_item_id=subscription.item_id,
            current_price_id=current_price.id,
            new_price_id=new_price.id,
            change_type=change_type,
            timing=ChangeTiming.END_OF_PERIOD if is_downgrade else ChangeTiming.IMMEDIATE,
            current_plan=current_price.display_name,
            new_plan=new_price.display_name,
            current_amount=current_price.unit_amount,
            new_amount=new_price.unit_amount,
            currency=new_price.currency,
            interval=new_price.interval or subscription.interval,
            immediate_charge=immediate_charge,
            prorated_credit=0,
            next_billing_amount=new_price.unit_amount,
            remaining_days=remaining_days,
            total_period_days=total_days,
            description="",
            scheduled_date=period_end if is_downgrade else None,
            cancel_at_period_end=subscription.cancel_at_period_end,
        )
        request.description = describe_change(request)
        return request

    # ==================== Execution ====================

    async def execute(
        self,
        user: User,
        customer_id: str,
        new_price_id: str,
        change_type: Optional[ChangeType] = None,
        now: Optional[datetime] = None,
    ) -> PlanChangeResult:
        """Execute a plan change.

        The change is re-classified against live prices; a ``change_type``
        from an outdated preview fails instead of executing. Provider errors
        come back as a failed result rather than raising. The canonical
        pointer is refreshed only after Stripe confirmed the change.

        Args:
            user: Subscription owner
            customer_id: Stripe customer ID
            new_price_id: Target Stripe price ID
            change_type: Change type the caller previewed, if any
            now: Instant of the change (defaults to the wall clock)

        Returns:
            PlanChangeResult
        """
        label = change_type.value if change_type else "unknown"
        try:
            request = await self.preview(user, customer_id, new_price_id, now)
            label = request.change_type.value

            if change_type is not None and change_type != request.change_type:
                result = PlanChangeResult(
                    success=False,
                    state=PlanChangeState.FAILED,
                    change_type=request.change_type,
                    message=(
                        f"Requested a {change_type.value} but moving to this price "
                        f"is a {request.change_type.value}; preview again"
                    ),
                    subscription_id=request.subscription_id,
                    error_code="change_type_mismatch",
                )
            elif request.change_type == ChangeType.DOWNGRADE:
                result = await self._execute_downgrade(request, user)
            else:
                result = await self._execute_immediate(request)
        except PaymentMethodRequiredError as e:
            result = PlanChangeResult(
                success=False,
                state=PlanChangeState.PREVIEWED,
                message=str(e),
                requires_payment_method=True,
                setup_intent_id=e.setup_intent_id,
                client_secret=e.client_secret,
                error_code="payment_method_required",
            )
        except TransientProviderError as e:
            result = self._failure(e, "provider_unavailable", retryable=True)
        except NotFoundError as e:
            result = self._failure(e, "not_found")
        except BillingServiceError as e:
            result = self._failure(e, "provider_error")

        if result.change_type is None and label != "unknown":
            result.change_type = ChangeType(label)

        record_plan_change(label, result.error_code or result.state.value)

        if result.success:
            log_info(
                logger,
                "Plan change executed",
                user_id=user.id,
                customer_id=customer_id,
                new_price_id=new_price_id,
                change_type=label,
                state=result.state.value,
            )
            await self._refresh_canonical_pointer(customer_id, user)
        else:
            log_warning(
                logger,
                "Plan change not executed",
                user_id=user.id,
                customer_id=customer_id,
                new_price_id=new_price_id,
                change_type=label,
                error_code=result.error_code,
            )
        return result

    async def _execute_immediate(self, request: PlanChangeRequest) -> PlanChangeResult:
        if request.new_price_id == request.current_price_id:
            return PlanChangeResult(
                success=True,
                state=PlanChangeState.COMPLETED,
                change_type=request.change_type,
                message="Already subscribed to this price",
                subscription_id=request.subscription_id,
            )

        if not request.new_price_is_free:
            await self.ensure_payment_method(request.customer_id)

        updated = self.stripe_client.update_subscription_price(
            request.subscription_id,
            request.subscription_item_id,
            request.new_price_id,
        )

        intent = updated.latest_payment_intent
        if intent is not None and intent.needs_customer_action:
            return PlanChangeResult(
                success=True,
                state=PlanChangeState.EXECUTED_IMMEDIATE,
                change_type=request.change_type,
                message="Plan changed; the prorated payment needs confirmation",
                subscription_id=updated.id,
                requires_payment_action=True,
                client_secret=intent.client_secret,
            )

        settled = updated.status in ("active", "trialing")
        return PlanChangeResult(
            success=True,
            state=PlanChangeState.COMPLETED if settled else PlanChangeState.EXECUTED_IMMEDIATE,
            change_type=request.change_type,
            message=f"Switched to {request.new_plan}",
            subscription_id=updated.id,
        )

    async def _execute_downgrade(
        self,
        request: PlanChangeRequest,
        user: User,
    ) -> PlanChangeResult:
        deferred = self._pending_deferred_subscription(request)
        if deferred is not None and deferred.price_id == request.new_price_id:
            return self._scheduled_result(request, deferred)

        # The flag a pending downgrade set is not the user's own
        if deferred is not None:
            was_cancelling = _replaced_was_cancelling(deferred)
        else:
            was_cancelling = request.cancel_at_period_end

        if not request.cancel_at_period_end:
            self.stripe_client.set_cancel_at_period_end(request.subscription_id, True)
        try:
            if deferred is not None:
                # Replacing an earlier scheduled downgrade
                self.stripe_client.cancel_subscription(deferred.id)
            deferred = self.stripe_client.create_subscription(
                customer_id=request.customer_id,
                price_id=request.new_price_id,
                trial_end=request.scheduled_date,
                metadata={
                    DEFERRED_CHANGE_KEY: ChangeType.DOWNGRADE.value,
                    REPLACES_SUBSCRIPTION_KEY: request.subscription_id,
                    REPLACED_WAS_CANCELLING_KEY: "true" if was_cancelling else "false",
                    "userId": str(user.id),
                },
            )
        except BillingServiceError as e:
            if was_cancelling:
                raise
            try:
                self.stripe_client.set_cancel_at_period_end(request.subscription_id, False)
            except BillingServiceError as rollback_error:
                log_error(
                    logger,
                    "Could not restore subscription after failed downgrade",
                    rollback_error,
                    user_id=user.id,
                    subscription_id=request.subscription_id,
                )
                return PlanChangeResult(
                    success=False,
                    state=PlanChangeState.FAILED,
                    change_type=ChangeType.DOWNGRADE,
                    message=(
                        f"Downgrade failed ({e}) and the current subscription is "
                        f"still set to cancel at period end"
                    ),
                    subscription_id=request.subscription_id,
                    error_code="partial_failure",
                )
            raise

        return self._scheduled_result(request, deferred)

    def _pending_deferred_subscription(
        self,
        request: PlanChangeRequest,
    ) -> Optional[StripeSubscriptionData]:
        for subscription in self.stripe_client.list_subscriptions(
            request.customer_id, status="trialing"
        ):
            if subscription.metadata.get(REPLACES_SUBSCRIPTION_KEY) == request.subscription_id:
                return subscription
        return None

    def _scheduled_result(
        self,
        request: PlanChangeRequest,
        deferred: StripeSubscriptionData,
    ) -> PlanChangeResult:
        return PlanChangeResult(
            success=True,
            state=PlanChangeState.SCHEDULED,
            change_type=ChangeType.DOWNGRADE,
            message=request.description,
            subscription_id=request.subscription_id,
            scheduled_change_id=deferred.id,
            scheduled_date=request.scheduled_date,
        )

    async def ensure_payment_method(self, customer_id: str) -> list[StripePaymentMethodData]:
        """Wait for the customer to have a usable payment method.

        Polls a bounded number of times with linearly growing delays, since
        a card attached moments ago may not be listed yet. Also makes sure
        one of the methods is the customer's default.

        Raises:
            PaymentMethodRequiredError: With a fresh SetupIntent, if none appears
        """
        for attempt in range(1, self.poll_config.max_attempts + 1):
            methods = self.stripe_client.list_payment_methods(customer_id)
            if methods:
                customer = self.stripe_client.get_customer(customer_id)
                if customer is not None and not customer.default_payment_method:
                    self.stripe_client.set_default_payment_method(customer_id, methods[0].id)
                return methods
            if attempt < self.poll_config.max_attempts:
                await self._sleep(self.poll_config.calculate_delay(attempt))

        setup_intent = self.stripe_client.create_setup_intent(customer_id)
        raise PaymentMethodRequiredError(
            "Add a payment method to change to a paid plan",
            setup_intent_id=setup_intent.id,
            client_secret=setup_intent.client_secret,
        )

    async def _refresh_canonical_pointer(self, customer_id: str, user: User) -> None:
        try:
            await self.auditor.resolve_canonical_subscription(customer_id, user)
        except TransientProviderError as e:
            # The next read re-resolves the pointer
            log_error(
                logger,
                "Could not refresh canonical subscription after plan change",
                e,
                user_id=user.id,
                customer_id=customer_id,
            )

    def _failure(
        self,
        error: BillingServiceError,
        error_code: str,
        retryable: bool = False,
    ) -> PlanChangeResult:
        return PlanChangeResult(
            success=False,
            state=PlanChangeState.FAILED,
            message=str(error),
            error_code=error_code,
            retryable=retryable,
        )

    # ==================== Scheduled Changes ====================

    def list_scheduled_changes(
        self,
        customer_id: str,
        now: Optional[datetime] = None,
    ) -> list[ScheduledChange]:
        """List plan changes waiting for a future boundary, soonest first."""
        now = ensure_utc(now or datetime.now(timezone.utc))
        changes = []

        for subscription in self.stripe_client.list_subscriptions(customer_id, status="all"):
            if (
                subscription.status == "trialing"
                and subscription.trial_end is not None
                and ensure_utc(subscription.trial_end) > now
            ):
                changes.append(ScheduledChange(
                    id=subscription.id,
                    kind=ScheduledChangeKind.DEFERRED_SUBSCRIPTION,
                    status="scheduled",
                    effective_date=subscription.trial_end,
                    subscription_id=subscription.id,
                    price_id=subscription.price.id,
                    plan_name=subscription.price.display_name,
                    replaces_subscription_id=subscription.metadata.get(REPLACES_SUBSCRIPTION_KEY),
                ))
            elif subscription.status == "active" and subscription.cancel_at_period_end:
                changes.append(ScheduledChange(
                    id=subscription.id,
                    kind=ScheduledChangeKind.CANCELLATION,
                    status="cancelling",
                    effective_date=subscription.current_period_end,
                    subscription_id=subscription.id,
                    price_id=subscription.price.id,
                    plan_name=subscription.price.display_name,
                ))

        for schedule in self.stripe_client.list_subscription_schedules(customer_id):
            if schedule.status not in ("not_started", "active"):
                continue
            upcoming = [p for p in schedule.phases if ensure_utc(p.start_date) > now]
            if not upcoming:
                continue
            phase = min(upcoming, key=lambda p: p.start_date)
            changes.append(ScheduledChange(
                id=schedule.id,
                kind=ScheduledChangeKind.SUBSCRIPTION_SCHEDULE,
                status="scheduled",
                effective_date=phase.start_date,
                subscription_id=schedule.subscription_id,
                price_id=phase.price_ids[0] if phase.price_ids else None,
            ))

        far_future = datetime.max.replace(tzinfo=timezone.utc)
        changes.sort(key=lambda c: ensure_utc(c.effective_date) if c.effective_date else far_future)
        return changes

    async def cancel_scheduled_change(
        self,
        schedule_id: str,
        customer_id: Optional[str] = None,
    ) -> PlanChangeResult:
        """Undo a scheduled change, restoring the subscription as it was.

        Accepts a deferred subscription id, a subscription set to cancel at
        period end, or a subscription schedule id.

        Args:
            schedule_id: Id returned by ``list_scheduled_changes``
            customer_id: If given, the change must belong to this customer

        Raises:
            SubscriptionNotFoundError: If the change does not exist or
                belongs to another customer
        """
        if schedule_id.startswith(SCHEDULE_ID_PREFIX):
            schedule = self.stripe_client.get_subscription_schedule(schedule_id)
            self._check_owner(schedule.customer_id, customer_id, schedule_id)
            self.stripe_client.release_subscription_schedule(schedule_id)
            return PlanChangeResult(
                success=True,
                state=PlanChangeState.CANCELLED,
                message="Scheduled plan change released",
                subscription_id=schedule.subscription_id,
                scheduled_change_id=schedule_id,
            )

        subscription = self.stripe_client.get_subscription(schedule_id)
        self._check_owner(subscription.customer_id, customer_id, schedule_id)

        if subscription.status == "trialing":
            self.stripe_client.cancel_subscription(subscription.id)
            replaced_id = subscription.metadata.get(REPLACES_SUBSCRIPTION_KEY)
            if replaced_id and not _replaced_was_cancelling(subscription):
                self._restore_replaced_subscription(replaced_id)
            return PlanChangeResult(
                success=True,
                state=PlanChangeState.CANCELLED,
                change_type=ChangeType.DOWNGRADE,
                message="Scheduled plan change cancelled",
                subscription_id=replaced_id,
                scheduled_change_id=subscription.id,
            )

        if subscription.cancel_at_period_end:
            self.stripe_client.set_cancel_at_period_end(subscription.id, False)
            return PlanChangeResult(
                success=True,
                state=PlanChangeState.CANCELLED,
                message="Subscription will renew as usual",
                subscription_id=subscription.id,
                scheduled_change_id=subscription.id,
            )

        return PlanChangeResult(
            success=False,
            state=PlanChangeState.FAILED,
            message="Nothing is scheduled for this subscription",
            subscription_id=subscription.id,
            error_code="nothing_scheduled",
        )

    def _restore_replaced_subscription(self, subscription_id: str) -> None:
        try:
            self.stripe_client.set_cancel_at_period_end(subscription_id, False)
        except (SubscriptionNotFoundError, ProviderRequestError) as e:
            # Already ended; the next read provisions a subscription again
            log_warning(
                logger,
                "Replaced subscription could not be restored",
                subscription_id=subscription_id,
                error=str(e),
            )

    def _check_owner(
        self,
        owner_customer_id: str,
        customer_id: Optional[str],
        schedule_id: str,
    ) -> None:
        if customer_id is not None and owner_customer_id != customer_id:
            raise SubscriptionNotFoundError(f"Scheduled change {schedule_id} not found")

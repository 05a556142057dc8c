"""Pydantic schemas for the billing API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.modules.billing.metering import UsageTrend
from app.modules.billing.plan_changes import (
    ChangeTiming,
    ChangeType,
    PlanChangeState,
    ScheduledChangeKind,
)


# ==================== Subscription Schemas ====================

class ProductResponse(BaseModel):
    """Stripe product summary."""
    id: str
    name: str
    metadata: dict = Field(default_factory=dict)

    class Config:
        from_attributes = True


class PriceResponse(BaseModel):
    """Stripe price summary."""
    id: str
    unit_amount: int = Field(..., description="Amount in minor currency units")
    currency: str
    interval: Optional[str] = None
    nickname: Optional[str] = None
    product_id: str
    product: Optional[ProductResponse] = None

    class Config:
        from_attributes = True


class SubscriptionResponse(BaseModel):
    """Canonical subscription as reported by Stripe."""
    id: str
    customer_id: str
    status: str
    created: datetime
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    trial_end: Optional[datetime] = None
    price: PriceResponse

    class Config:
        from_attributes = True


class CurrentSubscriptionResponse(BaseModel):
    """Canonical subscription with its word limit."""
    subscription: SubscriptionResponse
    word_limit: int

    class Config:
        from_attributes = True


class DuplicateCleanupResponse(BaseModel):
    """Subscriptions cancelled by duplicate cleanup."""
    canonical_subscription_id: str
    cancelled_subscription_ids: list[str]

    class Config:
        from_attributes = True


# ==================== Usage Schemas ====================

class BillingCycleWindowResponse(BaseModel):
    """Half-open usage window; ``end`` is exclusive."""
    start: datetime
    end: datetime

    class Config:
        from_attributes = True


class UsageReportEntryResponse(BaseModel):
    """A recording inside a usage report."""
    id: int
    name: str
    created_at: datetime
    word_count: int
    duration: int
    order: int = Field(..., description="1-based chronological position")
    is_active: bool

    class Config:
        from_attributes = True


class UsageReportResponse(BaseModel):
    """Usage aggregated over a window."""
    window: BillingCycleWindowResponse
    total_word_count: int
    recording_count: int
    total_duration: int
    first_recording_created_at: Optional[datetime] = None
    last_recording_created_at: Optional[datetime] = None
    recordings: list[UsageReportEntryResponse]

    class Config:
        from_attributes = True


class CycleAnalyticsResponse(BaseModel):
    """Usage measured against the word limit."""
    word_limit: int
    current_usage: int
    usage_percentage: int
    remaining_words: int
    has_exceeded_limit: bool
    days_remaining: int
    average_words_per_recording: int
    total_recording_duration: int
    average_duration_per_recording: int

    class Config:
        from_attributes = True


class BillingCycleAnalyticsResponse(BaseModel):
    """Current cycle usage."""
    subscription: SubscriptionResponse
    word_limit: int
    window: BillingCycleWindowResponse
    usage_report: UsageReportResponse
    analytics: CycleAnalyticsResponse

    class Config:
        from_attributes = True


class HistoricalCycleResponse(BaseModel):
    """One cycle of historical usage; cycle 0 is the current one."""
    cycle_number: int
    window: BillingCycleWindowResponse
    usage_report: UsageReportResponse
    analytics: CycleAnalyticsResponse

    class Config:
        from_attributes = True


class CycleComparisonResponse(BaseModel):
    cycle: str
    words: int
    recordings: int
    change: str

    class Config:
        from_attributes = True


class TrendAnalyticsResponse(BaseModel):
    """Usage trend across cycles."""
    total_words_across_cycles: int
    average_words_per_cycle: int
    usage_trend: UsageTrend
    cycle_comparison: list[CycleComparisonResponse]

    class Config:
        from_attributes = True


class HistoricalUsageResponse(BaseModel):
    """Historical usage with trend."""
    user_id: int
    subscription_id: str
    word_limit: int
    cycles_analyzed: int
    generated_at: datetime
    trend_analytics: TrendAnalyticsResponse
    historical_cycles: list[HistoricalCycleResponse]

    class Config:
        from_attributes = True


# ==================== Plan Change Schemas ====================

class PlanChangePreviewRequest(BaseModel):
    """Request to preview a plan change."""
    new_price_id: str = Field(..., min_length=1, description="Target Stripe price ID")


class PlanChangeExecuteRequest(BaseModel):
    """Request to execute a plan change."""
    new_price_id: str = Field(..., min_length=1, description="Target Stripe price ID")
    change_type: Optional[ChangeType] = Field(
        None, description="Change type shown in the preview"
    )


class PlanChangePreviewResponse(BaseModel):
    """Previewed plan change. Amounts are in minor currency units."""
    subscription_id: str
    current_price_id: str
    new_price_id: str
    change_type: ChangeType
    timing: ChangeTiming
    current_plan: str
    new_plan: str
    current_amount: int
    new_amount: int
    currency: str
    immediate_charge: int
    prorated_credit: int
    next_billing_amount: int
    remaining_days: int
    total_period_days: int
    description: str
    scheduled_date: Optional[datetime] = None
    state: PlanChangeState

    class Config:
        from_attributes = True


class PlanChangeResultResponse(BaseModel):
    """Outcome of a plan change or of cancelling one."""
    success: bool
    state: PlanChangeState
    change_type: Optional[ChangeType] = None
    message: str
    subscription_id: Optional[str] = None
    scheduled_change_id: Optional[str] = None
    scheduled_date: Optional[datetime] = None
    requires_payment_method: bool = False
    requires_payment_action: bool = False
    setup_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False

    class Config:
        from_attributes = True


class ScheduledChangeResponse(BaseModel):
    """A plan change waiting for a future boundary."""
    id: str
    kind: ScheduledChangeKind
    status: str
    effective_date: Optional[datetime] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    plan_name: Optional[str] = None
    replaces_subscription_id: Optional[str] = None

    class Config:
        from_attributes = True


class ScheduledChangeListResponse(BaseModel):
    changes: list[ScheduledChangeResponse]


# ==================== Payment Method Schemas ====================

class PaymentMethodResponse(BaseModel):
    """Saved payment method."""
    id: str
    type: str
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    is_default: bool = False

    class Config:
        from_attributes = True


class PaymentMethodListResponse(BaseModel):
    payment_methods: list[PaymentMethodResponse]


class SetDefaultPaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1)


class SetupIntentResponse(BaseModel):
    """SetupIntent the client confirms to save a card."""
    id: str
    client_secret: Optional[str] = None
    status: str

    class Config:
        from_attributes = True

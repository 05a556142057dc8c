"""API Router for the billing service.

Session auth lives outside this module, so routes take the user id in the
path like the rest of the API.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_session
from app.modules.billing.exceptions import (
    BillingServiceError,
    NotFoundError,
    PaymentMethodRequiredError,
    ProviderInconsistencyError,
    TransientProviderError,
)
from app.modules.billing.schemas import (
    BillingCycleAnalyticsResponse,
    CurrentSubscriptionResponse,
    DuplicateCleanupResponse,
    HistoricalUsageResponse,
    PaymentMethodListResponse,
    PaymentMethodResponse,
    PlanChangeExecuteRequest,
    PlanChangePreviewRequest,
    PlanChangePreviewResponse,
    PlanChangeResultResponse,
    ScheduledChangeListResponse,
    ScheduledChangeResponse,
    SetDefaultPaymentMethodRequest,
    SetupIntentResponse,
    SubscriptionResponse,
)
from app.modules.billing.service import BillingService
from app.modules.billing.stripe_client import StripeClient

router = APIRouter(prefix="/billing", tags=["billing"])


def get_stripe_client(request: Request) -> StripeClient:
    """Stripe client created at startup."""
    return request.app.state.stripe_client


def get_billing_service(
    session: AsyncSession = Depends(get_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> BillingService:
    return BillingService(session, stripe_client)


def _http_error(error: BillingServiceError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, PaymentMethodRequiredError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": str(error),
                "setup_intent_id": error.setup_intent_id,
                "client_secret": error.client_secret,
            },
        )
    if isinstance(error, ProviderInconsistencyError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, TransientProviderError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider is temporarily unavailable, please retry",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


# ==================== Subscription ====================

@router.get("/subscriptions/{user_id}/current", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    user_id: int,
    service: BillingService = Depends(get_billing_service),
):
    """Get the user's canonical subscription, creating the default plan if missing."""
    try:
        current = await service.get_current_subscription(user_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return CurrentSubscriptionResponse.model_validate(current)


@router.post("/subscriptions/{user_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    user_id: int,
    service: BillingService = Depends(get_billing_service),
):
    """Cancel the user's subscription at the end of the current period."""
    try:
        subscription = await service.cancel_subscription(user_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return SubscriptionResponse.model_validate(subscription)


@router.post(
    "/subscriptions/{user_id}/duplicates/cancel",
    response_model=DuplicateCleanupResponse,
)
async def cancel_duplicate_subscriptions(
    user_id: int,
    service: BillingService = Depends(get_billing_service),
):
    """Cancel every active subscription except the canonical one."""
    try:
        result = await service.cancel_duplicate_subscriptions(user_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return DuplicateCleanupResponse.model_validate(result)


# ==================== Usage ====================

@router.get("/usage/{user_id}/cycle", response_model=BillingCycleAnalyticsResponse)
async def get_billing_cycle_analytics(
    user_id: int,
    service: BillingService = Depends(get_billing_service),
):
    """Get word usage for the current billing cycle."""
    try:
        cycle = await service.get_billing_cycle_analytics(user_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return BillingCycleAnalyticsResponse.model_validate(cycle)


@router.get("/usage/{user_id}/history", response_model=HistoricalUsageResponse)
async def get_historical_usage(
    user_id: int,
    cycles: int = Query(
        settings.DEFAULT_HISTORY_CYCLES, ge=1, le=settings.MAX_HISTORY_CYCLES
    ),
    service: BillingService = Depends(get_billing_service),
):
    """Get word usage for recent billing cycles with the usage trend."""
    try:
        history = await service.get_historical_usage(user_id, cycles)
    except BillingServiceError as e:
        raise _http_error(e) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HistoricalUsageResponse.model_validate(history)


# ==================== Plan Changes ====================

@router.post("/plan-changes/{user_id}/preview", response_model=PlanChangePreviewResponse)
async def preview_plan_change(
    user_id: int,
    data: PlanChangePreviewRequest,
    service: BillingService = Depends(get_billing_service),
):
    """Preview the cost and timing of moving to a new price."""
    try:
        preview = await service.preview_plan_change(user_id, data.new_price_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return PlanChangePreviewResponse.model_validate(preview)


@router.post("/plan-changes/{user_id}/execute", response_model=PlanChangeResultResponse)
async def execute_plan_change(
    user_id: int,
    data: PlanChangeExecuteRequest,
    service: BillingService = Depends(get_billing_service),
):
    """Execute a plan change.

    Provider failures during execution come back in the body with
    ``success`` false rather than as an error status.
    """
    try:
        result = await service.execute_plan_change(
            user_id, data.new_price_id, data.change_type
        )
    except BillingServiceError as e:
        raise _http_error(e) from e
    return PlanChangeResultResponse.model_validate(result)


@router.get("/plan-changes/{user_id}/scheduled", response_model=ScheduledChangeListResponse)
async def list_scheduled_changes(
    user_id: int,
    service: BillingService = Depends(get_billing_service),
):
    """List plan changes waiting for a future billing boundary."""
    try:
        changes = await service.list_scheduled_changes(user_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return ScheduledChangeListResponse(
        changes=[ScheduledChangeResponse.model_validate(c) for c in changes]
    )


@router.delete(
    "/plan-changes/{user_id}/scheduled/{schedule_id}",
    response_model=PlanChangeResultResponse,
)
async def cancel_scheduled_change(
    user_id: int,
    schedule_id: str,
    service: BillingService = Depends(get_billing_service),
):
    """Cancel a scheduled plan change."""
    try:
        result = await service.cancel_scheduled_change(user_id, schedule_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return PlanChangeResultResponse.model_validate(result)


# ==================== Payment Methods ====================

@router.get("/payment-methods/{user_id}", response_model=PaymentMethodListResponse)
async def list_payment_methods(
    user_id: int,
    service: BillingService = Depends(get_billing_service),
):
    """List the user's saved cards."""
    try:
        methods = await service.list_payment_methods(user_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return PaymentMethodListResponse(
        payment_methods=[PaymentMethodResponse.model_validate(m) for m in methods]
    )


@router.post("/payment-methods/{user_id}/default", response_model=PaymentMethodListResponse)
async def set_default_payment_method(
    user_id: int,
    data: SetDefaultPaymentMethodRequest,
    service: BillingService = Depends(get_billing_service),
):
    """Make a saved card the default for future invoices."""
    try:
        methods = await service.set_default_payment_method(user_id, data.payment_method_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return PaymentMethodListResponse(
        payment_methods=[PaymentMethodResponse.model_validate(m) for m in methods]
    )


@router.post(
    "/payment-methods/{user_id}/setup-intent",
    response_model=SetupIntentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_setup_intent(
    user_id: int,
    service: BillingService = Depends(get_billing_service),
):
    """Start saving a new card."""
    try:
        intent = await service.create_setup_intent(user_id)
    except BillingServiceError as e:
        raise _http_error(e) from e
    return SetupIntentResponse.model_validate(intent)

"""Billing error taxonomy.

``ProviderInconsistencyError`` is healed inside the module where a
deterministic recovery exists and only reaches the caller once recovery
itself has failed.
``PaymentMethodRequiredError`` is actionable and always reaches the caller
with a setup handle. ``TransientProviderError`` is retryable and bubbles up.
"""

from typing import Optional


class BillingServiceError(Exception):
    """Base exception for billing errors."""
    pass


class NotFoundError(BillingServiceError):
    """A user, customer, subscription or price does not exist."""
    pass


class UserNotFoundError(NotFoundError):
    pass


class CustomerNotFoundError(NotFoundError):
    pass


class SubscriptionNotFoundError(NotFoundError):
    pass


class PriceNotFoundError(NotFoundError):
    pass


class ProviderInconsistencyError(BillingServiceError):
    """Local state and the provider disagree with no automatic recovery."""
    pass


class PaymentMethodRequiredError(BillingServiceError):
    """The customer must attach a payment method before continuing.

    Carries the SetupIntent that lets the client finish card setup
    out-of-band and then retry the operation.
    """

    def __init__(
        self,
        message: str,
        setup_intent_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ):
        super().__init__(message)
        self.setup_intent_id = setup_intent_id
        self.client_secret = client_secret


class TransientProviderError(BillingServiceError):
    """Network failure, timeout, rate limit or 5xx from the provider."""
    pass


class ProviderUnavailableError(TransientProviderError):
    pass


class ProviderRequestError(BillingServiceError):
    """The provider rejected a request; retrying it unchanged will not help."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

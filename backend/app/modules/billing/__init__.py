"""Billing module.

Subscription and usage-cycle reconciliation against Stripe.
"""

from app.modules.billing.router import router
from app.modules.billing.service import BillingService
from app.modules.billing.models import Recording, RecordingStatus, User

__all__ = [
    "router",
    "BillingService",
    "Recording",
    "RecordingStatus",
    "User",
]

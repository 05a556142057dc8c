"""Coaching platform billing backend.

Modules:
    - core: Configuration, database, logging, metrics and middleware
    - modules.billing: Subscription and word-usage reconciliation against Stripe
"""

__version__ = "0.1.0"

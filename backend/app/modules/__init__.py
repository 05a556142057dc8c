"""Application modules.

- billing: Stripe customers, canonical subscriptions, usage cycles and plan changes
"""

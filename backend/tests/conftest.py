"""Test configuration shared by every test package.

Settings are read when ``app.core.config`` is first imported, so the
environment has to be in place before any test module imports the app.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_billing_suite")
os.environ.setdefault("LOG_JSON", "false")

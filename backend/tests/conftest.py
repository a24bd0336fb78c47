"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Skip MongoDB startup when running under pytest; never reach Stripe from tests.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_API_KEY"] = ""
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import asyncio
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from models import Subscription, SubscriptionStatus
from services.billing_client import BillingBackend
from services.plan_catalog import plan_catalog
from services.subscription_service import add_billing_period

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def build_subscription(
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    plan_id: str = "professional",
    user_id: str = "user-1",
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    **extra,
) -> Subscription:
    period_start = period_start or NOW - timedelta(days=3)
    if period_end is None:
        period_end = period_start + (timedelta(days=7) if status == SubscriptionStatus.TRIAL else timedelta(days=30))
    if status == SubscriptionStatus.TRIAL:
        extra.setdefault("trial_ends_at", period_end)
    if status == SubscriptionStatus.CANCELED:
        extra.setdefault("canceled_at", period_start + timedelta(days=1))
    return Subscription(
        user_id=user_id,
        plan_id=plan_id,
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        **extra,
    )


class FakeBillingBackend(BillingBackend):
    """In-memory billing backend that records every call.

    Set ``gate`` to an asyncio.Event to hold calls open until it is set, and
    ``failures[name]`` to make a call raise.
    """

    def __init__(self, current: Optional[Subscription] = None, catalog=plan_catalog):
        self.current = current
        self.catalog = catalog
        self.calls = []
        self.failures = {}
        self.gate: Optional[asyncio.Event] = None

    async def _enter(self, name, *args):
        self.calls.append((name, args))
        if self.gate is not None:
            await self.gate.wait()
        if name in self.failures:
            raise self.failures[name]

    def call_names(self):
        return [name for name, _ in self.calls]

    async def fetch_current(self):
        await self._enter("fetch_current")
        return self.current

    async def start(self, plan_id, payment_method_id=None):
        await self._enter("start", plan_id)
        plan = self.catalog.get_plan(plan_id)
        if plan.trial_days > 0:
            self.current = build_subscription(
                SubscriptionStatus.TRIAL, plan_id, period_start=NOW, period_end=NOW + timedelta(days=plan.trial_days)
            )
        else:
            self.current = build_subscription(
                SubscriptionStatus.ACTIVE, plan_id, period_start=NOW,
                period_end=add_billing_period(NOW, plan.interval),
            )
        return self.current

    async def change_plan(self, plan_id):
        await self._enter("change_plan", plan_id)
        self.current = self.current.model_copy(update={"plan_id": plan_id})
        return self.current

    async def cancel(self):
        await self._enter("cancel")
        self.current = self.current.model_copy(
            update={"status": SubscriptionStatus.CANCELED, "canceled_at": NOW}
        )
        return self.current

    async def reactivate(self):
        await self._enter("reactivate")
        self.current = build_subscription(SubscriptionStatus.ACTIVE, self.current.plan_id, period_start=NOW)
        return self.current


@pytest.fixture
def fake_backend():
    return FakeBillingBackend()


@pytest.fixture
def auth_headers():
    token = create_access_token({"user_id": "user-1", "email": "user@example.com"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app)."""
    from server import app
    return TestClient(app)

"""
Lifecycle controller tests: start / change-plan / cancel / reactivate.
- Pre-condition failures are answered locally with no billing call
- Trial length 0 starts an active subscription
- Plan change is a trial-only operation; status is unchanged
- Cancel keeps access until period end (checked through the entitlement guard)
- A double submit while a call is outstanding is suppressed
- Billing failures are classified, never retried; 401 redirects to sign-in
"""
import asyncio
import pytest
import sys
from datetime import timedelta
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from conftest import NOW, FakeBillingBackend, build_subscription
from models import SubscriptionErrorType, SubscriptionStatus
from services.billing_client import BillingBackendError
from services.entitlement_guard import AuthState, DecisionOutcome, DenyReason, Requirement, decide
from services.lifecycle_controller import (
    CANNOT_CHANGE_ACTIVE,
    IN_PROGRESS,
    LifecycleController,
    LifecycleOutcomeStatus,
)
from services.plan_catalog import PLAN_DEFINITIONS, PlanCatalogService, PlanCode, build_catalog
from services.subscription_store import SubscriptionStore
from utils.i18n import get_translator


def _controller(current=None, catalog=None, loaded=True):
    backend = FakeBillingBackend(current) if catalog is None else FakeBillingBackend(current, catalog)
    store = SubscriptionStore(backend)
    if loaded:
        store.apply(current)
    controller = LifecycleController(store) if catalog is None else LifecycleController(store, catalog)
    return controller, store, backend


def _no_trial_catalog():
    definitions = {code: dict(d, trial_days=0) for code, d in PLAN_DEFINITIONS.items()}
    return PlanCatalogService(build_catalog(definitions))


async def _until(predicate):
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestStart:
    @pytest.mark.asyncio
    async def test_start_with_trial(self):
        controller, store, backend = _controller()
        outcome = await controller.start("professional")

        assert outcome.status == LifecycleOutcomeStatus.SUCCEEDED
        assert outcome.subscription.status == SubscriptionStatus.TRIAL
        assert outcome.message.render()["description"] == "Your 7-day free trial of the Professional Plan has started."
        assert backend.call_names() == ["start"]
        assert store.current() == outcome.subscription

    @pytest.mark.asyncio
    async def test_zero_trial_days_starts_active(self):
        controller, _, _ = _controller(catalog=_no_trial_catalog())
        outcome = await controller.start("basic")

        assert outcome.status == LifecycleOutcomeStatus.SUCCEEDED
        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.subscription.trial_ends_at is None
        assert outcome.message.title == "Subscription Created"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    ])
    async def test_existing_subscription_rejects_without_call(self, status):
        controller, _, backend = _controller(build_subscription(status))
        outcome = await controller.start("basic")

        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert outcome.message.title == "Subscription Already Exists"
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_rejection_text_depends_on_status(self):
        trial, _, _ = _controller(build_subscription(SubscriptionStatus.TRIAL))
        canceled, _, _ = _controller(build_subscription(SubscriptionStatus.CANCELED))

        trial_text = (await trial.start("basic")).message.description
        canceled_text = (await canceled.start("basic")).message.description
        assert "trial period" in trial_text
        assert "reactivate" in canceled_text

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected_without_call(self):
        controller, _, backend = _controller()
        outcome = await controller.start("platinum")

        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert outcome.error_kind == SubscriptionErrorType.INVALID_PLAN
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_unloaded_store_is_fetched_first(self):
        controller, _, backend = _controller(build_subscription(), loaded=False)
        outcome = await controller.start("basic")

        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert backend.call_names() == ["fetch_current"]

    @pytest.mark.asyncio
    async def test_invalidated_store_is_refetched(self):
        controller, store, backend = _controller()
        backend.current = build_subscription(SubscriptionStatus.TRIAL)
        store.invalidate()
        outcome = await controller.start("basic")

        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert outcome.subscription.status == SubscriptionStatus.TRIAL
        assert backend.call_names() == ["fetch_current"]

    @pytest.mark.asyncio
    async def test_expired_store_is_refetched(self):
        backend = FakeBillingBackend()
        now = [0.0]
        store = SubscriptionStore(backend, max_age=30, clock=lambda: now[0])
        store.apply(None)
        backend.current = build_subscription(SubscriptionStatus.ACTIVE)
        now[0] += 31
        outcome = await LifecycleController(store).start("basic")

        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert "start" not in backend.call_names()

    @pytest.mark.asyncio
    async def test_double_submit_is_suppressed(self):
        controller, _, backend = _controller()
        backend.gate = asyncio.Event()

        first = asyncio.create_task(controller.start("basic"))
        await _until(lambda: backend.calls)
        second = await controller.start("basic")

        assert second.status == LifecycleOutcomeStatus.SUPPRESSED
        assert second.message == IN_PROGRESS

        backend.gate.set()
        assert (await first).status == LifecycleOutcomeStatus.SUCCEEDED
        assert backend.call_names() == ["start"]


class TestChangePlan:
    @pytest.mark.asyncio
    async def test_active_subscription_rejected_without_call(self):
        controller, _, backend = _controller(build_subscription(SubscriptionStatus.ACTIVE))
        outcome = await controller.change_plan("enterprise")

        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert outcome.message == CANNOT_CHANGE_ACTIVE
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_trial_plan_change_keeps_status(self):
        controller, store, backend = _controller(build_subscription(SubscriptionStatus.TRIAL, "basic"))
        outcome = await controller.change_plan("enterprise")

        assert outcome.status == LifecycleOutcomeStatus.SUCCEEDED
        assert outcome.subscription.plan_id == "enterprise"
        assert outcome.subscription.status == SubscriptionStatus.TRIAL
        assert outcome.message.render()["description"] == "Your subscription has been changed to the Enterprise Plan."
        assert backend.call_names() == ["change_plan"]
        assert store.is_stale()

    @pytest.mark.asyncio
    async def test_no_subscription_rejected(self):
        controller, _, backend = _controller()
        outcome = await controller.change_plan("enterprise")
        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_canceled_or_past_due_rejected(self):
        for status in (SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE):
            controller, _, backend = _controller(build_subscription(status))
            outcome = await controller.change_plan("enterprise")
            assert outcome.status == LifecycleOutcomeStatus.REJECTED
            assert "free trial" in outcome.message.description
            assert backend.calls == []

    @pytest.mark.asyncio
    async def test_same_plan_is_noop(self):
        controller, _, backend = _controller(build_subscription(SubscriptionStatus.TRIAL, "basic"))
        outcome = await controller.change_plan("basic")
        assert outcome.status == LifecycleOutcomeStatus.NOOP
        assert outcome.ok
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected(self):
        controller, _, backend = _controller(build_subscription(SubscriptionStatus.TRIAL))
        outcome = await controller.change_plan("platinum")
        assert outcome.error_kind == SubscriptionErrorType.INVALID_PLAN
        assert backend.calls == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_keeps_access_until_period_end(self):
        active = build_subscription(SubscriptionStatus.ACTIVE, period_start=NOW, period_end=NOW + timedelta(days=30))
        controller, store, _ = _controller(active)
        outcome = await controller.cancel()

        assert outcome.status == LifecycleOutcomeStatus.SUCCEEDED
        assert outcome.subscription.status == SubscriptionStatus.CANCELED
        assert outcome.subscription.current_period_end == active.current_period_end

        auth = AuthState(authenticated=True, user_id="user-1")
        snapshot = store.snapshot()
        before_end = decide(Requirement.SUBSCRIBED, auth, snapshot, now=NOW + timedelta(days=29))
        after_end = decide(Requirement.SUBSCRIBED, auth, snapshot, now=NOW + timedelta(days=31))
        assert before_end.outcome == DecisionOutcome.ALLOW
        assert after_end.outcome == DecisionOutcome.DENY
        assert after_end.reason == DenyReason.EXPIRED

    @pytest.mark.asyncio
    async def test_cancel_trial(self):
        controller, _, backend = _controller(build_subscription(SubscriptionStatus.TRIAL))
        outcome = await controller.cancel()
        assert outcome.status == LifecycleOutcomeStatus.SUCCEEDED
        assert backend.call_names() == ["cancel"]

    @pytest.mark.asyncio
    async def test_nothing_to_cancel_is_noop(self):
        for current in (None, build_subscription(SubscriptionStatus.CANCELED)):
            controller, _, backend = _controller(current)
            outcome = await controller.cancel()
            assert outcome.status == LifecycleOutcomeStatus.NOOP
            assert backend.calls == []

    @pytest.mark.asyncio
    async def test_past_due_rejected(self):
        controller, _, backend = _controller(build_subscription(SubscriptionStatus.PAST_DUE))
        outcome = await controller.cancel()
        assert outcome.status == LifecycleOutcomeStatus.REJECTED
        assert backend.calls == []


class TestReactivate:
    @pytest.mark.asyncio
    async def test_reactivate_canceled(self):
        controller, _, backend = _controller(build_subscription(SubscriptionStatus.CANCELED, "enterprise"))
        outcome = await controller.reactivate()

        assert outcome.status == LifecycleOutcomeStatus.SUCCEEDED
        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.message.render()["description"] == "Your Enterprise Plan subscription has been reactivated."
        assert backend.call_names() == ["reactivate"]

    @pytest.mark.asyncio
    async def test_only_canceled_can_be_reactivated(self):
        for current in (None, build_subscription(SubscriptionStatus.ACTIVE)):
            controller, _, backend = _controller(current)
            outcome = await controller.reactivate()
            assert outcome.status == LifecycleOutcomeStatus.REJECTED
            assert backend.calls == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_card_declined_is_classified(self):
        controller, store, backend = _controller()
        backend.failures["start"] = BillingBackendError(
            402, {"error": {"type": "card_declined", "message": "x", "code": 402}}
        )
        outcome = await controller.start("basic")

        assert outcome.status == LifecycleOutcomeStatus.FAILED
        assert outcome.error_kind == SubscriptionErrorType.CARD_DECLINED
        assert outcome.error_code == 402
        assert outcome.message.title == "Card Declined"
        assert outcome.redirect_to is None
        assert store.current() is None
        assert store.is_stale()

    @pytest.mark.asyncio
    async def test_failure_is_not_retried(self):
        controller, _, backend = _controller(build_subscription(SubscriptionStatus.ACTIVE))
        backend.failures["cancel"] = BillingBackendError(None, None)
        outcome = await controller.cancel()

        assert outcome.status == LifecycleOutcomeStatus.FAILED
        assert backend.call_names() == ["cancel"]

    @pytest.mark.asyncio
    async def test_unauthorized_redirects_to_sign_in(self):
        controller, _, backend = _controller()
        backend.failures["start"] = BillingBackendError(401, {"message": "Not authenticated"})
        outcome = await controller.start("basic")

        assert outcome.status == LifecycleOutcomeStatus.FAILED
        assert outcome.redirect_to == "/auth"
        assert outcome.message.description == "Not authenticated"

    @pytest.mark.asyncio
    async def test_initial_fetch_failure(self):
        controller, _, backend = _controller(loaded=False)
        backend.failures["fetch_current"] = BillingBackendError(
            None, {"error": {"type": "service_unavailable", "message": "down"}}
        )
        outcome = await controller.start("basic")

        assert outcome.status == LifecycleOutcomeStatus.FAILED
        assert outcome.error_kind == SubscriptionErrorType.SERVICE_UNAVAILABLE
        assert backend.call_names() == ["fetch_current"]

    @pytest.mark.asyncio
    async def test_outcome_translates(self):
        controller, _, _ = _controller(build_subscription(SubscriptionStatus.ACTIVE))
        outcome = await controller.change_plan("enterprise")
        data = outcome.to_dict(get_translator("fr"))

        assert data["status"] == "rejected"
        assert data["ok"] is False
        assert data["title"] != "Cannot Change Plan"
        assert data["subscription"]["status"] == "active"

"""
Lifecycle Controller - start, change-plan, cancel and reactivate.

Each operation checks its pre-conditions against the Subscription Store before
calling the billing backend. A failed pre-condition is answered locally and no
request is sent. Backend failures are passed through the error classifier and
never retried: a billing mutation runs once, to completion or explicit failure.

While the store is loading (a fetch or another mutation is outstanding) every
operation is suppressed, so a double submit cannot race the pre-condition.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from models import SubscriptionErrorType, SubscriptionStatus, Subscription
from services.billing_client import BillingBackendError
from services.error_classifier import (
    ERROR_MESSAGES,
    classify_subscription_error,
    get_subscription_error_code,
)
from services.plan_catalog import PlanCatalogService, plan_catalog
from services.subscription_store import SubscriptionStore
from utils.i18n import Translator, UserMessage

logger = logging.getLogger(__name__)

SIGN_IN_PATH = "/auth"


class LifecycleOperation(str, Enum):
    START = "start"
    CHANGE_PLAN = "change_plan"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"


class LifecycleOutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    NOOP = "noop"
    REJECTED = "rejected"      # pre-condition failed, no backend call
    FAILED = "failed"          # backend call failed
    SUPPRESSED = "suppressed"  # another call outstanding, no backend call


# ============================================================================
# MESSAGES
# ============================================================================
ALREADY_EXISTS_TITLE = "Subscription Already Exists"
ALREADY_EXISTS_BY_STATUS = {
    SubscriptionStatus.ACTIVE: "You already have a subscription. Please use the dashboard to manage your subscription.",
    SubscriptionStatus.TRIAL: (
        "You already have a subscription. You are currently in a trial period. "
        "Please wait until your trial ends or cancel it before starting a new subscription."
    ),
    SubscriptionStatus.CANCELED: (
        "You already have a subscription. Please reactivate your canceled subscription "
        "from the dashboard instead of creating a new one."
    ),
}
ALREADY_EXISTS_DEFAULT = "You already have a subscription. Please manage your existing subscription from the dashboard."

IN_PROGRESS = UserMessage(
    "Request In Progress",
    "Your previous subscription request is still being processed. Please wait.",
)
TRIAL_STARTED = UserMessage("Free Trial Started", "Your {days}-day free trial of the {plan} has started.")
SUBSCRIPTION_CREATED = UserMessage("Subscription Created", "Your subscription to the {plan} is now active.")
PLAN_UPDATED = UserMessage("Plan Updated", "Your subscription has been changed to the {plan}.")
PLAN_UNCHANGED = UserMessage("No Change", "You are already on the {plan}.")
CANNOT_CHANGE_ACTIVE = UserMessage(
    "Cannot Change Plan",
    "You already have an active subscription. Please use the dashboard to manage your subscription.",
)
CANNOT_CHANGE_OTHER = UserMessage(
    "Cannot Change Plan",
    "Plans can only be changed during your free trial. Please manage your subscription from the dashboard.",
)
NO_SUBSCRIPTION_TO_CHANGE = UserMessage(
    "No Subscription",
    "You don't have a subscription to change. Please choose a plan to get started.",
)
SUBSCRIPTION_CANCELED = UserMessage(
    "Subscription Canceled",
    "Your subscription has been canceled. You will have access until the end of your billing period.",
)
NOTHING_TO_CANCEL = UserMessage("Nothing to Cancel", "You don't have an active subscription to cancel.")
CANNOT_CANCEL_PAST_DUE = UserMessage(
    "Cannot Cancel Subscription",
    "Your subscription has an outstanding payment. Please manage your subscription from the dashboard.",
)
SUBSCRIPTION_REACTIVATED = UserMessage("Subscription Reactivated", "Your {plan} subscription has been reactivated.")
NO_SUBSCRIPTION_TO_REACTIVATE = UserMessage(
    "No Subscription",
    "You don't have a canceled subscription to reactivate. Please choose a plan to get started.",
)
CANNOT_REACTIVATE = UserMessage("Cannot Reactivate", "Only canceled subscriptions can be reactivated.")


@dataclass(frozen=True)
class LifecycleOutcome:
    operation: LifecycleOperation
    status: LifecycleOutcomeStatus
    message: UserMessage
    subscription: Optional[Subscription] = None
    error_kind: Optional[SubscriptionErrorType] = None
    error_code: Optional[int] = None
    redirect_to: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (LifecycleOutcomeStatus.SUCCEEDED, LifecycleOutcomeStatus.NOOP)

    def to_dict(self, translate: Optional[Translator] = None) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "status": self.status.value,
            "ok": self.ok,
            **self.message.render(translate),
            "subscription": self.subscription.to_public() if self.subscription else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_code": self.error_code,
            "redirect_to": self.redirect_to,
        }


class LifecycleController:
    def __init__(self, store: SubscriptionStore, catalog: PlanCatalogService = plan_catalog):
        self.store = store
        self.catalog = catalog

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def start(self, plan_id: str, payment_method_id: Optional[str] = None) -> LifecycleOutcome:
        op = LifecycleOperation.START
        blocked = await self._ready(op)
        if blocked:
            return blocked

        current = self.store.current()
        if current is not None:
            description = ALREADY_EXISTS_BY_STATUS.get(current.status, ALREADY_EXISTS_DEFAULT)
            return self._reject(op, UserMessage(ALREADY_EXISTS_TITLE, description), current)

        plan = self.catalog.find_plan(plan_id)
        if plan is None:
            title, description = ERROR_MESSAGES[SubscriptionErrorType.INVALID_PLAN]
            return self._reject(
                op, UserMessage(title, description), None, error_kind=SubscriptionErrorType.INVALID_PLAN
            )

        if plan.trial_days > 0:
            success = TRIAL_STARTED.with_params(days=str(plan.trial_days), plan=plan.name)
        else:
            success = SUBSCRIPTION_CREATED.with_params(plan=plan.name)
        return await self._run(op, lambda: self.store.backend.start(plan.id, payment_method_id), success)

    async def change_plan(self, plan_id: str) -> LifecycleOutcome:
        op = LifecycleOperation.CHANGE_PLAN
        blocked = await self._ready(op)
        if blocked:
            return blocked

        current = self.store.current()
        if current is None:
            return self._reject(op, NO_SUBSCRIPTION_TO_CHANGE, None)
        if current.status == SubscriptionStatus.ACTIVE:
            return self._reject(op, CANNOT_CHANGE_ACTIVE, current)
        if current.status != SubscriptionStatus.TRIAL:
            return self._reject(op, CANNOT_CHANGE_OTHER, current)

        plan = self.catalog.find_plan(plan_id)
        if plan is None:
            title, description = ERROR_MESSAGES[SubscriptionErrorType.INVALID_PLAN]
            return self._reject(
                op, UserMessage(title, description), current, error_kind=SubscriptionErrorType.INVALID_PLAN
            )
        if plan.id == current.plan_id:
            return LifecycleOutcome(op, LifecycleOutcomeStatus.NOOP, PLAN_UNCHANGED.with_params(plan=plan.name), current)

        return await self._run(
            op,
            lambda: self.store.backend.change_plan(plan.id),
            PLAN_UPDATED.with_params(plan=plan.name),
        )

    async def cancel(self) -> LifecycleOutcome:
        op = LifecycleOperation.CANCEL
        blocked = await self._ready(op)
        if blocked:
            return blocked

        current = self.store.current()
        if current is None or current.status == SubscriptionStatus.CANCELED:
            return LifecycleOutcome(op, LifecycleOutcomeStatus.NOOP, NOTHING_TO_CANCEL, current)
        if current.status == SubscriptionStatus.PAST_DUE:
            return self._reject(op, CANNOT_CANCEL_PAST_DUE, current)

        return await self._run(op, self.store.backend.cancel, SUBSCRIPTION_CANCELED)

    async def reactivate(self) -> LifecycleOutcome:
        op = LifecycleOperation.REACTIVATE
        blocked = await self._ready(op)
        if blocked:
            return blocked

        current = self.store.current()
        if current is None:
            return self._reject(op, NO_SUBSCRIPTION_TO_REACTIVATE, None)
        if current.status != SubscriptionStatus.CANCELED:
            return self._reject(op, CANNOT_REACTIVATE, current)

        plan = self.catalog.find_plan(current.plan_id)
        plan_name = plan.name if plan else current.plan_id
        return await self._run(
            op,
            self.store.backend.reactivate,
            SUBSCRIPTION_REACTIVATED.with_params(plan=plan_name),
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _ready(self, op: LifecycleOperation) -> Optional[LifecycleOutcome]:
        """Suppress while busy; refetch when the store is unloaded, invalidated or expired."""
        if self.store.is_loading():
            logger.info(f"Suppressed {op.value}: subscription request already outstanding")
            return LifecycleOutcome(op, LifecycleOutcomeStatus.SUPPRESSED, IN_PROGRESS, self.store.current())

        try:
            await self.store.ensure_fresh()
        except BillingBackendError as e:
            return self._failure(op, e)
        return None

    def _reject(
        self,
        op: LifecycleOperation,
        message: UserMessage,
        current: Optional[Subscription],
        error_kind: Optional[SubscriptionErrorType] = None,
    ) -> LifecycleOutcome:
        status = current.status.value if current else SubscriptionStatus.NONE.value
        logger.warning(f"Rejected {op.value} (status={status}): {message.title}")
        return LifecycleOutcome(op, LifecycleOutcomeStatus.REJECTED, message, current, error_kind=error_kind)

    def _failure(self, op: LifecycleOperation, error: BillingBackendError) -> LifecycleOutcome:
        classified = classify_subscription_error(error)
        code = get_subscription_error_code(error)
        logger.error(
            f"Subscription {op.value} failed: kind={classified.kind.value} "
            f"status={error.status_code} code={code}"
        )
        return LifecycleOutcome(
            op,
            LifecycleOutcomeStatus.FAILED,
            UserMessage(classified.title_key, classified.description_key),
            self.store.current(),
            error_kind=classified.kind,
            error_code=code,
            redirect_to=SIGN_IN_PATH if error.is_unauthorized else None,
        )

    async def _run(
        self,
        op: LifecycleOperation,
        call: Callable[[], Awaitable[Subscription]],
        success: UserMessage,
    ) -> LifecycleOutcome:
        try:
            async with self.store.mutation():
                subscription = await call()
                self.store.apply(subscription)
        except BillingBackendError as e:
            return self._failure(op, e)
        finally:
            self.store.invalidate()

        logger.info(
            f"Subscription {op.value} succeeded: {subscription.subscription_id} "
            f"plan={subscription.plan_id} status={subscription.status.value}"
        )
        return LifecycleOutcome(op, LifecycleOutcomeStatus.SUCCEEDED, success, subscription)

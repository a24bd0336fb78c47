"""Subscription Service - the billing backend's record keeping.

Owns the ``user_subscriptions`` collection. Records are never deleted: a
canceled record stays as history and a later start or reactivation inserts a
new record with a new subscription_id.

One live subscription per user is enforced by the database, not by callers.
Live records carry ``is_current: True`` and a unique partial index on
``user_id`` (see database.Database._create_indexes) rejects a second one. The
pre-insert lookup only produces a friendlier error; a concurrent insert that
slips past it still fails with DuplicateKeyError, reported as
``already_subscribed``.
"""
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import LIVE_SUBSCRIPTION_INDEX, database
from models import (
    AuditAction,
    BillingInterval,
    PlanDefinition,
    Subscription,
    SubscriptionErrorType,
    SubscriptionStatus,
    UserRole,
)
from services.payment_provider import PaymentProviderError, StripePaymentProvider, payment_provider
from services.plan_catalog import PlanCatalogService, plan_catalog
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class SubscriptionAPIError(Exception):
    """A billing backend failure with a structured, client-readable body."""

    def __init__(
        self,
        error_type: SubscriptionErrorType,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.error_type = error_type
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        return {
            "error": {
                "type": self.error_type.value,
                "message": self.message,
                "code": self.status_code,
                "details": self.details,
            }
        }


def add_billing_period(start: datetime, interval: BillingInterval) -> datetime:
    """One calendar month or year after ``start``, clamping the day of month."""
    if interval == BillingInterval.YEAR:
        year, month = start.year + 1, start.month
    else:
        year = start.year + (1 if start.month == 12 else 0)
        month = 1 if start.month == 12 else start.month + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _to_doc(subscription: Subscription, is_current: bool) -> Dict[str, Any]:
    doc = subscription.model_dump()
    doc["status"] = subscription.status.value
    doc["is_current"] = is_current
    return doc


def _from_doc(doc: Optional[Dict[str, Any]]) -> Optional[Subscription]:
    if not doc:
        return None
    return Subscription.model_validate(doc)


class SubscriptionService:
    def __init__(self, catalog: PlanCatalogService = plan_catalog, provider: StripePaymentProvider = payment_provider):
        self.catalog = catalog
        self.provider = provider

    def _collection(self):
        return database.get_db().user_subscriptions

    def _require_plan(self, plan_id: str) -> PlanDefinition:
        plan = self.catalog.find_plan(plan_id)
        if plan is None:
            logger.warning(f"Rejected unknown plan id: {plan_id}")
            raise SubscriptionAPIError(
                SubscriptionErrorType.INVALID_PLAN,
                "Subscription plan not found",
                400,
                {"plan_id": plan_id},
            )
        return plan

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_current(self, user_id: str) -> Optional[Subscription]:
        """Most recent record for the user, live or canceled."""
        doc = await self._collection().find_one(
            {"user_id": user_id},
            {"_id": 0},
            sort=[("created_at", -1)],
        )
        return _from_doc(doc)

    async def get_live(self, user_id: str) -> Optional[Subscription]:
        doc = await self._collection().find_one({"user_id": user_id, "is_current": True}, {"_id": 0})
        return _from_doc(doc)

    async def status_check(self, user_id: str) -> Dict[str, Any]:
        current = await self.get_current(user_id)
        if current is None:
            return {
                "has_subscription": False,
                "can_create_new": True,
                "subscription_status": SubscriptionStatus.NONE.value,
                "message": "No subscription found",
            }
        can_create_new = not current.is_live
        return {
            "has_subscription": True,
            "can_create_new": can_create_new,
            "subscription_status": current.status.value,
            "message": (
                "Previous subscription is canceled"
                if can_create_new
                else f"User already has a {current.status.value} subscription"
            ),
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(
        self,
        user_id: str,
        plan_id: str,
        email: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        plan = self._require_plan(plan_id)

        live = await self.get_live(user_id)
        if live is not None:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_START_REJECTED,
                actor_role=UserRole.ROLE_USER,
                actor_id=user_id,
                user_id=user_id,
                resource_type="subscription",
                resource_id=live.subscription_id,
                reason_code=SubscriptionErrorType.ALREADY_SUBSCRIBED.value,
                metadata={"requested_plan_id": plan.id, "status": live.status.value},
            )
            raise SubscriptionAPIError(
                SubscriptionErrorType.ALREADY_SUBSCRIBED,
                "User already has a subscription",
                409,
                {"status": live.status.value, "subscription_id": live.subscription_id},
            )

        now = now or datetime.now(timezone.utc)
        try:
            provider_sub = await self.provider.create_subscription(
                user_id, email, plan, plan.trial_days, payment_method_id
            )
        except PaymentProviderError as e:
            raise SubscriptionAPIError(e.error_type, e.message, e.status_code, {"provider_code": e.provider_code})

        if plan.trial_days > 0:
            status = SubscriptionStatus.TRIAL
            period_end = now + timedelta(days=plan.trial_days)
            trial_ends_at = period_end
        else:
            status = SubscriptionStatus.ACTIVE
            period_end = add_billing_period(now, plan.interval)
            trial_ends_at = None

        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=status,
            current_period_start=now,
            current_period_end=period_end,
            trial_ends_at=trial_ends_at,
            payment_last4=provider_sub.payment_last4,
            provider_customer_id=provider_sub.customer_id,
            provider_subscription_id=provider_sub.subscription_id,
            created_at=now,
            updated_at=now,
        )
        await self._insert_live(subscription, provider_sub.subscription_id)

        logger.info(f"Subscription {subscription.subscription_id} started for {user_id}: {plan.id} ({status.value})")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_STARTED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            after_state=subscription.to_public(),
            metadata={"plan_id": plan.id, "trial_days": plan.trial_days},
        )
        return subscription

    async def change_plan(self, user_id: str, plan_id: str, now: Optional[datetime] = None) -> Subscription:
        plan = self._require_plan(plan_id)
        live = await self.get_live(user_id)
        if live is None:
            raise SubscriptionAPIError(
                SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND, "No subscription to change", 404
            )
        if live.plan_id == plan.id:
            return live

        try:
            await self.provider.change_price(live.provider_subscription_id, plan)
        except PaymentProviderError as e:
            raise SubscriptionAPIError(e.error_type, e.message, e.status_code, {"provider_code": e.provider_code})

        now = now or datetime.now(timezone.utc)
        doc = await self._collection().find_one_and_update(
            {"subscription_id": live.subscription_id, "is_current": True},
            {"$set": {"plan_id": plan.id, "updated_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        updated = _from_doc(doc)
        if updated is None:
            raise SubscriptionAPIError(
                SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND, "Subscription changed while updating plan", 404
            )

        logger.info(f"Subscription {updated.subscription_id} moved from {live.plan_id} to {plan.id}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_PLAN_CHANGED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=updated.subscription_id,
            before_state={"plan_id": live.plan_id},
            after_state={"plan_id": updated.plan_id},
        )
        return updated

    async def cancel(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        live = await self.get_live(user_id)
        if live is None:
            raise SubscriptionAPIError(
                SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND, "No active subscription to cancel", 404
            )

        try:
            await self.provider.cancel_at_period_end(live.provider_subscription_id)
        except PaymentProviderError as e:
            raise SubscriptionAPIError(e.error_type, e.message, e.status_code, {"provider_code": e.provider_code})

        now = now or datetime.now(timezone.utc)
        doc = await self._collection().find_one_and_update(
            {"subscription_id": live.subscription_id, "is_current": True},
            {"$set": {
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": now,
                "updated_at": now,
                "is_current": False,
            }},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        canceled = _from_doc(doc)
        if canceled is None:
            raise SubscriptionAPIError(
                SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND, "Subscription changed while canceling", 404
            )

        logger.info(
            f"Subscription {canceled.subscription_id} canceled for {user_id}; "
            f"access until {canceled.current_period_end.isoformat()}"
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=canceled.subscription_id,
            before_state={"status": live.status.value},
            after_state={"status": canceled.status.value},
            metadata={"access_until": canceled.current_period_end.isoformat()},
        )
        return canceled

    async def reactivate(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """Start a new active record on the plan of the user's canceled subscription."""
        live = await self.get_live(user_id)
        if live is not None:
            raise SubscriptionAPIError(
                SubscriptionErrorType.ALREADY_SUBSCRIBED,
                "User already has a subscription",
                409,
                {"status": live.status.value, "subscription_id": live.subscription_id},
            )

        previous = await self.get_current(user_id)
        if previous is None or previous.status != SubscriptionStatus.CANCELED:
            raise SubscriptionAPIError(
                SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND, "No canceled subscription to reactivate", 404
            )
        plan = self._require_plan(previous.plan_id)

        now = now or datetime.now(timezone.utc)
        in_grace = now <= previous.current_period_end
        resumed = False
        try:
            if in_grace and await self.provider.resume(previous.provider_subscription_id):
                resumed = True
                customer_id = previous.provider_customer_id
                provider_subscription_id = previous.provider_subscription_id
                last4 = previous.payment_last4
            else:
                provider_sub = await self.provider.create_subscription(user_id, None, plan, 0)
                customer_id = provider_sub.customer_id
                provider_subscription_id = provider_sub.subscription_id
                last4 = provider_sub.payment_last4 or previous.payment_last4
        except PaymentProviderError as e:
            raise SubscriptionAPIError(e.error_type, e.message, e.status_code, {"provider_code": e.provider_code})

        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=previous.current_period_end if in_grace else add_billing_period(now, plan.interval),
            payment_last4=last4,
            provider_customer_id=customer_id,
            provider_subscription_id=provider_subscription_id,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._insert_live(subscription, None if resumed else provider_subscription_id)
        except SubscriptionAPIError:
            if resumed:
                await self._restore_pending_cancel(provider_subscription_id)
            raise

        logger.info(f"Subscription {previous.subscription_id} reactivated as {subscription.subscription_id}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_REACTIVATED,
            actor_role=UserRole.ROLE_USER,
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            after_state=subscription.to_public(),
            metadata={"previous_subscription_id": previous.subscription_id, "in_grace_period": in_grace},
        )
        return subscription

    async def _restore_pending_cancel(self, provider_subscription_id: Optional[str]) -> None:
        """Put back cancel_at_period_end on a resumed subscription whose record was never written."""
        try:
            await self.provider.cancel_at_period_end(provider_subscription_id)
        except PaymentProviderError as e:
            logger.error(f"Could not restore pending cancel on {provider_subscription_id}: {e.message}")

    async def _insert_live(self, subscription: Subscription, abandon_on_conflict: Optional[str]) -> None:
        try:
            await self._collection().insert_one(_to_doc(subscription, is_current=True))
        except DuplicateKeyError as e:
            logger.warning(f"Live subscription already exists for {subscription.user_id}; insert rejected: {e}")
            if abandon_on_conflict:
                await self.provider.abandon(abandon_on_conflict)
            raise SubscriptionAPIError(
                SubscriptionErrorType.ALREADY_SUBSCRIBED,
                "User already has a subscription",
                409,
                {"constraint": LIVE_SUBSCRIPTION_INDEX},
            )


# Singleton instance
subscription_service = SubscriptionService()

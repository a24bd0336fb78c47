"""Stripe Webhook Service - keeps subscription records in step with Stripe.

Key Principles:
1. Idempotency: every event id is processed once (stripe_events collection)
2. Signature verification whenever STRIPE_WEBHOOK_SECRET is set
3. Plan is derived from the subscription's price id via the plan catalog
4. Canceled records are terminal; events cannot revive them
5. Every status change is audit logged

Events Handled:
- customer.subscription.created / customer.subscription.updated
- customer.subscription.deleted
- customer.subscription.trial_will_end
- invoice.paid / invoice.payment_succeeded
- invoice.payment_failed
"""
import stripe
import os
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

from pydantic import ValidationError

from database import database
from models import AuditAction, Subscription, SubscriptionStatus, UserRole
from services.plan_catalog import plan_catalog
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIAL,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def _get_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(stripe_sub: Dict) -> Dict:
    items = (stripe_sub.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _invoice_subscription_id(invoice: Dict) -> Optional[str]:
    sub = invoice.get("subscription")
    if isinstance(sub, dict):
        return sub.get("id")
    if sub:
        return sub
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


class StripeWebhookService:
    """Verifies, deduplicates and applies Stripe subscription events."""

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: str) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)
        """
        webhook_secret = _get_webhook_secret()
        try:
            if webhook_secret:
                stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, webhook_secret)
            else:
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Webhook signature verification failed: {e}")
            return False, "Invalid signature", None
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", None

        if not isinstance(event, dict) or not event.get("id"):
            return False, "Invalid payload", None

        event_id = event["id"]
        event_type = event.get("type")
        logger.info(f"WEBHOOK_RECEIVED event_id={event_id} event_type={event_type}")

        db = database.get_db()
        existing = await db.stripe_events.find_one({"event_id": event_id})
        if existing and existing.get("status") == "PROCESSED":
            logger.info(f"Event {event_id} already processed - skipping")
            return True, "Already processed", {"event_id": event_id}

        event_record = {
            "event_id": event_id,
            "type": event_type,
            "created": datetime.now(timezone.utc),
            "processed_at": None,
            "status": "PROCESSING",
            "error": None,
        }
        if existing:
            await db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
        else:
            try:
                await db.stripe_events.insert_one(event_record)
            except Exception as insert_err:
                if "duplicate key" in str(insert_err).lower() or "E11000" in str(insert_err):
                    logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                    return True, "Already processed", {"event_id": event_id}
                raise

        try:
            result = await self._handle_event(event)
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {
                    "status": "PROCESSED",
                    "processed_at": datetime.now(timezone.utc),
                    "related_subscription_id": result.get("subscription_id"),
                }},
            )
            logger.info(f"WEBHOOK_PROCESSED_OK event_id={event_id} event_type={event_type}")
            return True, "Processed", result

        except Exception as e:
            logger.error(f"WEBHOOK_PROCESSING_FAILED event_id={event_id} event_type={event_type} error={e}")
            await db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {
                    "status": "FAILED",
                    "processed_at": datetime.now(timezone.utc),
                    "error": str(e),
                }},
            )
            await create_audit_log(
                action=AuditAction.STRIPE_WEBHOOK_FAILED,
                actor_role=UserRole.SYSTEM,
                metadata={"event_id": event_id, "event_type": event_type, "error": str(e)},
            )
            # Answer 200 so Stripe does not retry; the failure is recorded above
            return True, "Event logged with error", {"event_id": event_id, "error": str(e)}

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        event_type = event.get("type")
        data = (event.get("data") or {}).get("object") or {}

        handlers = {
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "customer.subscription.trial_will_end": self._handle_trial_will_end,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _find_record(self, provider_subscription_id: Optional[str]) -> Optional[Dict]:
        """Live record for a Stripe subscription, else its most recent record."""
        if not provider_subscription_id:
            return None
        db = database.get_db()
        record = await db.user_subscriptions.find_one(
            {"provider_subscription_id": provider_subscription_id, "is_current": True},
            {"_id": 0},
        )
        if record:
            return record
        return await db.user_subscriptions.find_one(
            {"provider_subscription_id": provider_subscription_id},
            {"_id": 0},
            sort=[("created_at", -1)],
        )

    async def _apply_sync(self, record: Dict, updates: Dict[str, Any], event: Dict) -> Dict:
        """Validate and write ``updates`` onto ``record``; canceled records are left alone."""
        subscription_id = record.get("subscription_id")
        if record.get("status") == SubscriptionStatus.CANCELED.value:
            logger.warning(
                f"Ignoring {event.get('type')} for canceled subscription {subscription_id}"
            )
            return {"handled": False, "subscription_id": subscription_id, "reason": "terminal"}

        new_status = updates.get("status", record.get("status"))
        if new_status == SubscriptionStatus.CANCELED.value:
            updates["is_current"] = False
            updates.setdefault("canceled_at", datetime.now(timezone.utc))
        if new_status != SubscriptionStatus.TRIAL.value:
            updates.setdefault("trial_ends_at", None)

        # Reject updates that would leave the record inconsistent
        try:
            Subscription.model_validate({**record, **updates})
        except ValidationError as e:
            raise ValueError(f"Stripe event would corrupt subscription {subscription_id}: {e}")

        updates["updated_at"] = datetime.now(timezone.utc)
        db = database.get_db()
        await db.user_subscriptions.update_one({"subscription_id": subscription_id}, {"$set": updates})

        before = {k: record.get(k) for k in ("status", "plan_id")}
        after = {k: updates.get(k, record.get(k)) for k in ("status", "plan_id")}
        logger.info(f"Subscription {subscription_id} synced from Stripe: {before} -> {after}")
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_STATUS_SYNCED,
            actor_role=UserRole.SYSTEM,
            user_id=record.get("user_id"),
            resource_type="subscription",
            resource_id=subscription_id,
            before_state=before,
            after_state=after,
            metadata={"event_id": event.get("id"), "event_type": event.get("type")},
        )
        return {"handled": True, "subscription_id": subscription_id, "status": new_status}

    async def _handle_subscription_change(self, stripe_sub: Dict, event: Dict) -> Dict:
        record = await self._find_record(stripe_sub.get("id"))
        if not record:
            logger.warning(f"No subscription record for Stripe subscription {stripe_sub.get('id')}")
            return {"handled": False, "reason": "unknown_subscription"}

        updates: Dict[str, Any] = {}
        status = STRIPE_STATUS_MAP.get(stripe_sub.get("status"))
        if status:
            updates["status"] = status.value

        item = _first_item(stripe_sub)
        period_start = stripe_sub.get("current_period_start") or item.get("current_period_start")
        period_end = stripe_sub.get("current_period_end") or item.get("current_period_end")
        if period_start:
            updates["current_period_start"] = _timestamp(period_start)
        if period_end:
            updates["current_period_end"] = _timestamp(period_end)
        if stripe_sub.get("trial_end") and status == SubscriptionStatus.TRIAL:
            updates["trial_ends_at"] = _timestamp(stripe_sub["trial_end"])
        if stripe_sub.get("canceled_at"):
            updates["canceled_at"] = _timestamp(stripe_sub["canceled_at"])

        plan = plan_catalog.get_plan_by_provider_price((item.get("price") or {}).get("id"))
        if plan:
            updates["plan_id"] = plan.id

        return await self._apply_sync(record, updates, event)

    async def _handle_subscription_deleted(self, stripe_sub: Dict, event: Dict) -> Dict:
        record = await self._find_record(stripe_sub.get("id"))
        if not record:
            return {"handled": False, "reason": "unknown_subscription"}
        updates = {"status": SubscriptionStatus.CANCELED.value}
        if stripe_sub.get("canceled_at"):
            updates["canceled_at"] = _timestamp(stripe_sub["canceled_at"])
        return await self._apply_sync(record, updates, event)

    async def _handle_trial_will_end(self, stripe_sub: Dict, event: Dict) -> Dict:
        record = await self._find_record(stripe_sub.get("id"))
        if not record:
            return {"handled": False, "reason": "unknown_subscription"}
        logger.info(
            f"Trial ending for subscription {record.get('subscription_id')} "
            f"at {_timestamp(stripe_sub.get('trial_end'))}"
        )
        return {"handled": True, "subscription_id": record.get("subscription_id")}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        record = await self._find_record(_invoice_subscription_id(invoice))
        if not record:
            return {"handled": False, "reason": "unknown_subscription"}

        updates: Dict[str, Any] = {}
        if record.get("status") == SubscriptionStatus.PAST_DUE.value:
            updates["status"] = SubscriptionStatus.ACTIVE.value
        lines = (invoice.get("lines") or {}).get("data") or []
        period = (lines[0].get("period") or {}) if lines else {}
        if period.get("start") and period.get("end") and record.get("status") != SubscriptionStatus.TRIAL.value:
            updates["current_period_start"] = _timestamp(period["start"])
            updates["current_period_end"] = _timestamp(period["end"])
        if not updates:
            return {"handled": True, "subscription_id": record.get("subscription_id")}
        return await self._apply_sync(record, updates, event)

    async def _handle_payment_failed(self, invoice: Dict, event: Dict) -> Dict:
        record = await self._find_record(_invoice_subscription_id(invoice))
        if not record:
            return {"handled": False, "reason": "unknown_subscription"}
        if record.get("status") not in (SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value):
            return {"handled": True, "subscription_id": record.get("subscription_id")}
        return await self._apply_sync(record, {"status": SubscriptionStatus.PAST_DUE.value}, event)


# Singleton instance
stripe_webhook_service = StripeWebhookService()

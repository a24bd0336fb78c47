"""Payment provider - the Stripe calls behind the billing backend.

Stripe failures are translated into PaymentProviderError carrying a
SubscriptionErrorType, so the subscription service never inspects Stripe
exception classes itself.

When no Stripe key is configured (local development, tests) subscriptions are
recorded with local ``cus_local_``/``sub_local_`` identifiers and no provider
call is made.
"""
import stripe
import os
import uuid
import logging
from dataclasses import dataclass
from typing import Optional

from models import PlanDefinition, SubscriptionErrorType

logger = logging.getLogger(__name__)

stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

LOCAL_ID_PREFIXES = ("cus_local_", "sub_local_")


class PaymentProviderError(Exception):
    def __init__(self, error_type: SubscriptionErrorType, message: str, status_code: int = 502, provider_code: Optional[str] = None):
        self.error_type = error_type
        self.message = message
        self.status_code = status_code
        self.provider_code = provider_code
        super().__init__(message)


@dataclass(frozen=True)
class ProviderSubscription:
    customer_id: str
    subscription_id: str
    payment_last4: Optional[str] = None


def _is_local(provider_id: Optional[str]) -> bool:
    return not provider_id or provider_id.startswith(LOCAL_ID_PREFIXES)


def translate_stripe_error(e: Exception) -> PaymentProviderError:
    """Map a Stripe exception onto the billing error taxonomy."""
    if isinstance(e, stripe.CardError):
        code = getattr(e, "code", None)
        if code == "card_declined":
            return PaymentProviderError(SubscriptionErrorType.CARD_DECLINED, "Card declined", 402, code)
        return PaymentProviderError(SubscriptionErrorType.PAYMENT_FAILED, "Payment failed", 402, code)
    if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
        return PaymentProviderError(SubscriptionErrorType.SERVICE_UNAVAILABLE, "Payment provider unavailable", 503)
    return PaymentProviderError(
        SubscriptionErrorType.PROVIDER_ERROR,
        "Payment provider error",
        502,
        getattr(e, "code", None),
    )


class StripePaymentProvider:
    """Creates, changes and cancels provider subscriptions."""

    @property
    def enabled(self) -> bool:
        return bool((stripe.api_key or "").strip())

    async def create_subscription(
        self,
        user_id: str,
        email: Optional[str],
        plan: PlanDefinition,
        trial_days: int,
        payment_method_id: Optional[str] = None,
    ) -> ProviderSubscription:
        if not self.enabled:
            logger.warning("Stripe not configured - recording subscription without provider")
            return ProviderSubscription(
                customer_id=f"cus_local_{uuid.uuid4().hex[:16]}",
                subscription_id=f"sub_local_{uuid.uuid4().hex[:16]}",
            )

        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"user_id": user_id},
            )

            last4 = None
            params = {
                "customer": customer.id,
                "items": [{"price": plan.provider_price_id}],
                "metadata": {"user_id": user_id, "plan_id": plan.id},
            }
            if trial_days > 0:
                params["trial_period_days"] = trial_days
            if payment_method_id:
                payment_method = stripe.PaymentMethod.attach(payment_method_id, customer=customer.id)
                params["default_payment_method"] = payment_method.id
                card = getattr(payment_method, "card", None)
                last4 = getattr(card, "last4", None) if card else None

            subscription = stripe.Subscription.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe subscription creation failed for user {user_id}: {e}")
            raise translate_stripe_error(e)

        logger.info(f"Stripe subscription {subscription.id} created for user {user_id}")
        return ProviderSubscription(
            customer_id=customer.id,
            subscription_id=subscription.id,
            payment_last4=last4,
        )

    async def change_price(self, provider_subscription_id: Optional[str], plan: PlanDefinition) -> None:
        if not self.enabled or _is_local(provider_subscription_id):
            return
        try:
            subscription = stripe.Subscription.retrieve(provider_subscription_id)
            item_id = subscription["items"]["data"][0]["id"]
            stripe.Subscription.modify(
                provider_subscription_id,
                items=[{"id": item_id, "price": plan.provider_price_id}],
                proration_behavior="none",
                metadata={"plan_id": plan.id},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe plan change failed for {provider_subscription_id}: {e}")
            raise translate_stripe_error(e)

    async def cancel_at_period_end(self, provider_subscription_id: Optional[str]) -> None:
        if not self.enabled or _is_local(provider_subscription_id):
            return
        try:
            stripe.Subscription.modify(provider_subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            logger.error(f"Stripe cancel failed for {provider_subscription_id}: {e}")
            raise translate_stripe_error(e)

    async def resume(self, provider_subscription_id: Optional[str]) -> bool:
        """Undo a pending cancel-at-period-end. False when there is nothing to resume."""
        if not self.enabled or _is_local(provider_subscription_id):
            return False
        try:
            subscription = stripe.Subscription.retrieve(provider_subscription_id)
            if subscription.get("status") == "canceled":
                return False
            stripe.Subscription.modify(provider_subscription_id, cancel_at_period_end=False)
        except stripe.StripeError as e:
            logger.error(f"Stripe resume failed for {provider_subscription_id}: {e}")
            raise translate_stripe_error(e)
        return True

    async def abandon(self, provider_subscription_id: Optional[str]) -> None:
        """Best-effort removal of a provider subscription that was never recorded."""
        if not self.enabled or _is_local(provider_subscription_id):
            return
        try:
            stripe.Subscription.cancel(provider_subscription_id)
            logger.warning(f"Abandoned unrecorded Stripe subscription {provider_subscription_id}")
        except stripe.StripeError as e:
            logger.error(f"Could not abandon Stripe subscription {provider_subscription_id}: {e}")


# Singleton instance
payment_provider = StripePaymentProvider()

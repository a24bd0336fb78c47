"""
Entitlement Guard - decides whether a protected route or feature may be used.

``decide`` is a pure function of the requirement, the caller's auth state and a
snapshot of the Subscription Store. It performs no I/O; the HTTP layer turns
its Decision into a response (see middleware.require_entitlement).

Period-end enforcement lives only here: a canceled subscription keeps access
until current_period_end, whenever the cancellation happened.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from models import SubscriptionStatus
from services.plan_catalog import PlanCatalogService, plan_catalog
from services.subscription_store import SubscriptionSnapshot
from utils.i18n import Translator, UserMessage

SIGN_IN_PATH = "/auth"
PLANS_PATH = "/subscription-plans"


class Requirement(str, Enum):
    NONE = "none"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "authenticated+subscribed"


class DecisionOutcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    PENDING = "pending"


class DenyReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    NO_SUBSCRIPTION = "no_subscription"
    EXPIRED = "expired"
    FEATURE_NOT_INCLUDED = "feature_not_included"


# ============================================================================
# ROUTE REQUIREMENTS - portal pages and what they need
# ============================================================================
ROUTE_REQUIREMENTS: Dict[str, Requirement] = {
    "/auth": Requirement.NONE,
    "/subscription-plans": Requirement.NONE,
    "/account": Requirement.AUTHENTICATED,
    "/": Requirement.SUBSCRIBED,
    "/legal-assistant": Requirement.SUBSCRIBED,
    "/document-generator": Requirement.SUBSCRIBED,
    "/document-generator/{id}": Requirement.SUBSCRIBED,
    "/legal-research": Requirement.SUBSCRIBED,
}

# Anything not listed is treated as a paid page.
DEFAULT_ROUTE_REQUIREMENT = Requirement.SUBSCRIBED


def _matches(template: str, path: str) -> bool:
    template_parts = template.strip("/").split("/")
    path_parts = path.strip("/").split("/")
    if len(template_parts) != len(path_parts):
        return False
    for expected, actual in zip(template_parts, path_parts):
        if expected.startswith("{") and expected.endswith("}"):
            if not actual:
                return False
        elif expected != actual:
            return False
    return True


def requirement_for_path(path: str) -> Requirement:
    path = (path or "/").split("?", 1)[0]
    if path in ROUTE_REQUIREMENTS:
        return ROUTE_REQUIREMENTS[path]
    for template, requirement in ROUTE_REQUIREMENTS.items():
        if "{" in template and _matches(template, path):
            return requirement
    return DEFAULT_ROUTE_REQUIREMENT


# ============================================================================
# DECISION TYPES
# ============================================================================
@dataclass(frozen=True)
class AuthState:
    authenticated: bool
    user_id: Optional[str] = None
    loading: bool = False

    @classmethod
    def anonymous(cls) -> "AuthState":
        return cls(authenticated=False)

    @classmethod
    def from_user(cls, user: Optional[dict]) -> "AuthState":
        if not user:
            return cls.anonymous()
        return cls(authenticated=True, user_id=user.get("user_id") or user.get("sub"))


@dataclass(frozen=True)
class Decision:
    outcome: DecisionOutcome
    reason: Optional[DenyReason] = None
    message: Optional[UserMessage] = None
    redirect_to: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.ALLOW

    def to_dict(self, translate: Optional[Translator] = None) -> Dict[str, Any]:
        data = {
            "decision": self.outcome.value,
            "reason": self.reason.value if self.reason else None,
            "redirect_to": self.redirect_to,
        }
        if self.message:
            data.update(self.message.render(translate))
        return data


ALLOW = Decision(DecisionOutcome.ALLOW)

PENDING = Decision(
    DecisionOutcome.PENDING,
    message=UserMessage(
        "Checking Subscription",
        "We're confirming your subscription status. Please wait a moment.",
    ),
)

UNAUTHENTICATED = Decision(
    DecisionOutcome.DENY,
    DenyReason.UNAUTHENTICATED,
    UserMessage(
        "Authentication Required",
        "You must be logged in to access this page. Please sign in or create an account.",
    ),
    SIGN_IN_PATH,
)

NO_SUBSCRIPTION = Decision(
    DecisionOutcome.DENY,
    DenyReason.NO_SUBSCRIPTION,
    UserMessage(
        "Subscription Required",
        "This feature requires a subscription. Choose a plan to start your free trial.",
    ),
    PLANS_PATH,
)

EXPIRED = Decision(
    DecisionOutcome.DENY,
    DenyReason.EXPIRED,
    UserMessage(
        "Subscription Expired",
        "Your subscription has ended. Please choose a plan to restore access.",
    ),
    PLANS_PATH,
)

PAST_DUE = Decision(
    DecisionOutcome.DENY,
    DenyReason.EXPIRED,
    UserMessage(
        "Payment Past Due",
        "Your last payment failed. Please update your payment details from the dashboard to restore access.",
    ),
    PLANS_PATH,
)

FEATURE_NOT_INCLUDED = UserMessage("Upgrade Required", "{feature} is not included in your current plan.")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def decide(
    requirement: Requirement,
    auth: AuthState,
    subscription: SubscriptionSnapshot,
    now: Optional[datetime] = None,
    feature: Optional[str] = None,
    catalog: PlanCatalogService = plan_catalog,
) -> Decision:
    """Decide allow / deny(reason) / pending for one protected action."""
    if requirement == Requirement.NONE:
        return ALLOW

    if auth.loading:
        return PENDING
    if not auth.authenticated:
        return UNAUTHENTICATED

    if requirement == Requirement.AUTHENTICATED:
        return ALLOW

    if subscription.loading or not subscription.loaded:
        return PENDING

    current = subscription.subscription
    if current is None:
        return NO_SUBSCRIPTION

    if current.status in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE):
        decision = ALLOW
    elif current.status == SubscriptionStatus.CANCELED:
        now = _as_utc(now or datetime.now(timezone.utc))
        decision = ALLOW if now <= _as_utc(current.current_period_end) else EXPIRED
    elif current.status == SubscriptionStatus.PAST_DUE:
        decision = PAST_DUE
    else:
        decision = EXPIRED

    if decision.allowed and feature:
        plan = catalog.find_plan(current.plan_id)
        feature_def = plan.get_feature(feature) if plan else None
        if feature_def is None or not feature_def.included:
            return Decision(
                DecisionOutcome.DENY,
                DenyReason.FEATURE_NOT_INCLUDED,
                FEATURE_NOT_INCLUDED.with_params(feature=feature),
                PLANS_PATH,
            )

    return decision

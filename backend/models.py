from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, Dict, Any, Tuple
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"

# Statuses that occupy the single live slot a user may hold.
LIVE_STATUSES = frozenset({
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
})

class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"

class SubscriptionErrorType(str, Enum):
    """Error types carried in the billing backend's structured error body."""
    PAYMENT_FAILED = "payment_failed"
    CARD_DECLINED = "card_declined"
    ALREADY_SUBSCRIBED = "already_subscribed"
    TRIAL_ENDED = "trial_ended"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    PROVIDER_ERROR = "provider_error"
    INVALID_PLAN = "invalid_plan"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"

class UserRole(str, Enum):
    ROLE_USER = "ROLE_USER"
    ROLE_ADMIN = "ROLE_ADMIN"
    SYSTEM = "SYSTEM"

class AuditAction(str, Enum):
    SUBSCRIPTION_STARTED = "SUBSCRIPTION_STARTED"
    SUBSCRIPTION_START_REJECTED = "SUBSCRIPTION_START_REJECTED"
    SUBSCRIPTION_PLAN_CHANGED = "SUBSCRIPTION_PLAN_CHANGED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    SUBSCRIPTION_STATUS_SYNCED = "SUBSCRIPTION_STATUS_SYNCED"
    STRIPE_WEBHOOK_FAILED = "STRIPE_WEBHOOK_FAILED"
    ENTITLEMENT_DENIED = "ENTITLEMENT_DENIED"

# ============================================================================
# PLAN CATALOG
# ============================================================================

class PlanFeature(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    included: bool
    limit: Optional[str] = None

class PlanDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    price: float
    interval: BillingInterval = BillingInterval.MONTH
    trial_days: int = Field(default=0, ge=0)
    features: Tuple[PlanFeature, ...] = ()
    is_popular: bool = False
    provider_price_id: Optional[str] = None

    def get_feature(self, name: str) -> Optional[PlanFeature]:
        for feature in self.features:
            if feature.name.lower() == name.lower():
                return feature
        return None

# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Subscription(BaseModel):
    """A user's subscription record as owned by the billing backend."""
    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(default_factory=lambda: f"SUB-{uuid.uuid4().hex[:12].upper()}")
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    payment_last4: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("payment_last4")
    @classmethod
    def _check_last4(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and (len(value) != 4 or not value.isdigit()):
            raise ValueError("payment_last4 must be exactly four digits")
        return value

    @model_validator(mode="after")
    def _check_status_fields(self):
        if self.status == SubscriptionStatus.NONE:
            raise ValueError("a subscription record cannot have status 'none'")
        if self.status == SubscriptionStatus.TRIAL:
            if self.trial_ends_at is None:
                raise ValueError("trial subscriptions require trial_ends_at")
            if self.trial_ends_at < self.current_period_start:
                raise ValueError("trial_ends_at must not precede current_period_start")
        return self

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_public(self) -> Dict[str, Any]:
        """JSON-safe view without provider identifiers."""
        return self.model_dump(
            mode="json",
            exclude={"provider_customer_id", "provider_subscription_id"},
        )

# ============================================================================
# REQUEST BODIES
# ============================================================================

class StartSubscriptionRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, validation_alias=AliasChoices("plan_id", "planId"))
    payment_method_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("payment_method_id", "paymentMethodId")
    )

class ChangePlanRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, validation_alias=AliasChoices("plan_id", "planId"))

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

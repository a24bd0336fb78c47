"""Plan Catalog - bundled registry of purchasable subscription plans.

The catalog ships with the deployment and is never fetched at runtime. The
portal layer and the billing backend both read this module, so entitlement
decisions and lifecycle checks always agree on what a plan includes.

Plan Structure:
- basic: Basic Plan ($14.99/mo, 7 day trial)
- professional: Professional Plan ($29.99/mo, 7 day trial, featured)
- enterprise: Enterprise Plan ($79.99/mo, 7 day trial)
"""
from enum import Enum
from typing import Dict, List, Optional, Tuple
import os
import logging

from models import BillingInterval, PlanDefinition, PlanFeature

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_DAYS = 7


class PlanNotFoundError(LookupError):
    """Raised when a plan id has no entry in the catalog."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Unknown subscription plan: {plan_id}")


# ============================================================================
# PLAN CODES
# ============================================================================
class PlanCode(str, Enum):
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# ============================================================================
# FEATURE NAMES - shared by every plan, in display order
# ============================================================================
FEATURE_DOCUMENT_GENERATION = "Document Generation"
FEATURE_LEGAL_RESEARCH = "Legal Research"
FEATURE_CONTRACT_ANALYSIS = "Contract Analysis"
FEATURE_AI_ASSISTANT = "AI Legal Assistant"
FEATURE_DOCUMENT_STORAGE = "Document Storage"
FEATURE_EMAIL_SUPPORT = "Email Support"
FEATURE_MULTILINGUAL = "Multilingual Support"
FEATURE_ADVANCED_TEMPLATES = "Advanced Templates"
FEATURE_API_ACCESS = "API Access"
FEATURE_TEAM_MANAGEMENT = "Team Management"
FEATURE_ACCOUNT_MANAGER = "Dedicated Account Manager"


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
# Feature rows are (name, description, included, limit).
PLAN_DEFINITIONS: Dict[PlanCode, dict] = {
    PlanCode.BASIC: {
        "name": "Basic Plan",
        "description": "Essential legal tools for individuals and small businesses",
        "price": 14.99,
        "interval": BillingInterval.MONTH,
        "trial_days": DEFAULT_TRIAL_DAYS,
        "is_popular": False,
        "provider_price_id": os.getenv("STRIPE_PRICE_BASIC", "price_basic_monthly"),
        "features": [
            (FEATURE_DOCUMENT_GENERATION, "Generate common legal documents", True, "10 documents/month"),
            (FEATURE_LEGAL_RESEARCH, "Basic legal research capabilities", True, "20 queries/month"),
            (FEATURE_CONTRACT_ANALYSIS, "Basic contract review", True, "5 documents/month"),
            (FEATURE_AI_ASSISTANT, "Chat with AI legal assistant", True, "50 messages/month"),
            (FEATURE_DOCUMENT_STORAGE, "Securely store your legal documents", True, "100 MB"),
            (FEATURE_EMAIL_SUPPORT, "Business hours email support", True, None),
            (FEATURE_MULTILINGUAL, "Support for multiple languages", False, None),
            (FEATURE_ADVANCED_TEMPLATES, "Access to premium document templates", False, None),
            (FEATURE_API_ACCESS, "Programmatic access to legal tools", False, None),
            (FEATURE_TEAM_MANAGEMENT, "Collaborate with team members", False, None),
            (FEATURE_ACCOUNT_MANAGER, "Personal support contact", False, None),
        ],
    },
    PlanCode.PROFESSIONAL: {
        "name": "Professional Plan",
        "description": "Advanced legal tools for professionals and growing businesses",
        "price": 29.99,
        "interval": BillingInterval.MONTH,
        "trial_days": DEFAULT_TRIAL_DAYS,
        "is_popular": True,
        "provider_price_id": os.getenv("STRIPE_PRICE_PROFESSIONAL", "price_pro_monthly"),
        "features": [
            (FEATURE_DOCUMENT_GENERATION, "Generate comprehensive legal documents", True, "Unlimited"),
            (FEATURE_LEGAL_RESEARCH, "Advanced legal research with case law", True, "100 queries/month"),
            (FEATURE_CONTRACT_ANALYSIS, "Detailed contract review and analysis", True, "20 documents/month"),
            (FEATURE_AI_ASSISTANT, "Advanced AI legal assistance", True, "200 messages/month"),
            (FEATURE_DOCUMENT_STORAGE, "Securely store your legal documents", True, "500 MB"),
            (FEATURE_EMAIL_SUPPORT, "Priority email support", True, None),
            (FEATURE_MULTILINGUAL, "English and French language support", True, None),
            (FEATURE_ADVANCED_TEMPLATES, "Access to premium document templates", True, None),
            (FEATURE_API_ACCESS, "Programmatic access to legal tools", False, None),
            (FEATURE_TEAM_MANAGEMENT, "Collaborate with up to 3 team members", False, None),
            (FEATURE_ACCOUNT_MANAGER, "Personal support contact", False, None),
        ],
    },
    PlanCode.ENTERPRISE: {
        "name": "Enterprise Plan",
        "description": "Comprehensive legal solution for law firms and large organizations",
        "price": 79.99,
        "interval": BillingInterval.MONTH,
        "trial_days": DEFAULT_TRIAL_DAYS,
        "is_popular": False,
        "provider_price_id": os.getenv("STRIPE_PRICE_ENTERPRISE", "price_enterprise_monthly"),
        "features": [
            (FEATURE_DOCUMENT_GENERATION, "Generate comprehensive legal documents with custom branding", True, "Unlimited"),
            (FEATURE_LEGAL_RESEARCH, "Comprehensive legal research with case law and advanced filters", True, "Unlimited"),
            (FEATURE_CONTRACT_ANALYSIS, "Advanced contract review with risk analysis", True, "Unlimited"),
            (FEATURE_AI_ASSISTANT, "Premium AI legal assistance with priority processing", True, "Unlimited"),
            (FEATURE_DOCUMENT_STORAGE, "Securely store your legal documents", True, "2 GB"),
            (FEATURE_EMAIL_SUPPORT, "24/7 priority email support", True, None),
            (FEATURE_MULTILINGUAL, "English and French language support", True, None),
            (FEATURE_ADVANCED_TEMPLATES, "Access to premium document templates and custom template creation", True, None),
            (FEATURE_API_ACCESS, "Full programmatic access to legal tools", True, None),
            (FEATURE_TEAM_MANAGEMENT, "Collaborate with unlimited team members", True, None),
            (FEATURE_ACCOUNT_MANAGER, "Personal enterprise account manager", True, None),
        ],
    },
}


def _build_plan(code: PlanCode, definition: dict) -> PlanDefinition:
    features = tuple(
        PlanFeature(name=name, description=description, included=included, limit=limit)
        for name, description, included, limit in definition["features"]
    )
    return PlanDefinition(
        id=code.value,
        name=definition["name"],
        description=definition["description"],
        price=definition["price"],
        interval=definition["interval"],
        trial_days=definition["trial_days"],
        features=features,
        is_popular=definition["is_popular"],
        provider_price_id=definition["provider_price_id"],
    )


def build_catalog(definitions: Dict[PlanCode, dict]) -> Tuple[PlanDefinition, ...]:
    """Build and validate the ordered plan tuple from raw definitions."""
    plans = tuple(_build_plan(code, definition) for code, definition in definitions.items())
    if not plans:
        raise ValueError("Plan catalog is empty")
    ids = [plan.id for plan in plans]
    if len(ids) != len(set(ids)):
        raise ValueError(f"Duplicate plan ids in catalog: {ids}")
    return plans


class PlanCatalogService:
    """Read-only access to the bundled plans."""

    def __init__(self, plans: Tuple[PlanDefinition, ...]):
        self._plans = plans
        self._by_id = {plan.id: plan for plan in plans}

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    def list_plans(self) -> List[PlanDefinition]:
        """All plans in display order."""
        return list(self._plans)

    def get_plan(self, plan_id: str) -> PlanDefinition:
        plan = self._by_id.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def find_plan(self, plan_id: Optional[str]) -> Optional[PlanDefinition]:
        if not plan_id:
            return None
        return self._by_id.get(plan_id)

    def get_popular_plan(self) -> Optional[PlanDefinition]:
        for plan in self._plans:
            if plan.is_popular:
                return plan
        return None

    def get_trial_days(self, plan_id: str = PlanCode.PROFESSIONAL.value, default: int = DEFAULT_TRIAL_DAYS) -> int:
        plan = self.find_plan(plan_id)
        return plan.trial_days if plan and plan.trial_days else default

    def get_plan_by_provider_price(self, price_id: Optional[str]) -> Optional[PlanDefinition]:
        """Resolve a Stripe price id back to its plan (used by webhook sync)."""
        if not price_id:
            return None
        for plan in self._plans:
            if plan.provider_price_id == price_id:
                return plan
        logger.warning(f"No catalog plan for provider price {price_id}")
        return None

    # -------------------------------------------------------------------------
    # Feature Entitlements
    # -------------------------------------------------------------------------

    def is_feature_included(self, plan_id: str, feature_name: str) -> Tuple[bool, Optional[str]]:
        """Return (included, limit) for a feature on a plan.

        Raises PlanNotFoundError for an unknown plan; an unknown feature name is
        simply not included.
        """
        feature = self.get_plan(plan_id).get_feature(feature_name)
        if feature is None:
            return False, None
        return feature.included, feature.limit


# Singleton instance
plan_catalog = PlanCatalogService(build_catalog(PLAN_DEFINITIONS))

"""Portal Routes - subscription lifecycle and entitlements for the signed-in user.

Endpoints:
- GET /api/portal/plans - Plan catalog
- GET /api/portal/subscription - Subscription snapshot (trial days remaining, access)
- POST /api/portal/subscription/start - Start a plan
- PATCH /api/portal/subscription/plan - Change plan during trial
- POST /api/portal/subscription/cancel - Cancel (access kept until period end)
- POST /api/portal/subscription/reactivate - Reactivate a canceled subscription
- GET /api/portal/access?path=... - Entitlement decision for a portal page
- GET /api/portal/entitlements - Features of the current plan (subscribers only)
- GET /api/portal/features/{feature_name} - Check one feature (subscribers only)

Titles and descriptions are localized from Accept-Language (en, fr).
"""
import math
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from middleware import (
    enforce_entitlement,
    get_current_user,
    get_portal_session,
    load_snapshot,
    request_translator,
    require_entitlement,
    user_id_of,
    get_bearer_token,
)
from models import ChangePlanRequest, StartSubscriptionRequest, SubscriptionStatus
from services.entitlement_guard import AuthState, Requirement, decide, requirement_for_path
from services.lifecycle_controller import LifecycleOperation, LifecycleOutcome, LifecycleOutcomeStatus
from services.plan_catalog import plan_catalog
from services.portal_sessions import PortalSession, portal_sessions
from services.subscription_store import SubscriptionSnapshot

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/portal", tags=["portal"])


def trial_days_remaining(trial_ends_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    """Whole days left in a trial, rounded up; 0 once it has ended."""
    if trial_ends_at is None:
        return 0
    now = now or datetime.now(timezone.utc)
    if trial_ends_at.tzinfo is None:
        trial_ends_at = trial_ends_at.replace(tzinfo=timezone.utc)
    seconds = (trial_ends_at - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def _outcome_response(outcome: LifecycleOutcome, request: Request) -> JSONResponse:
    if outcome.status == LifecycleOutcomeStatus.SUCCEEDED:
        created = outcome.operation in (LifecycleOperation.START, LifecycleOperation.REACTIVATE)
        status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    elif outcome.status == LifecycleOutcomeStatus.NOOP:
        status_code = status.HTTP_200_OK
    elif outcome.status in (LifecycleOutcomeStatus.REJECTED, LifecycleOutcomeStatus.SUPPRESSED):
        status_code = status.HTTP_409_CONFLICT
    elif outcome.redirect_to:
        status_code = status.HTTP_401_UNAUTHORIZED
    else:
        status_code = status.HTTP_502_BAD_GATEWAY

    headers = {"X-Redirect": outcome.redirect_to} if outcome.redirect_to else None
    return JSONResponse(
        status_code=status_code,
        content=outcome.to_dict(request_translator(request)),
        headers=headers,
    )


@router.get("/plans")
async def list_plans():
    popular = plan_catalog.get_popular_plan()
    return {
        "plans": [plan.model_dump(mode="json") for plan in plan_catalog.list_plans()],
        "popular_plan_id": popular.id if popular else None,
    }


@router.get("/subscription")
async def get_subscription(request: Request, session: PortalSession = Depends(get_portal_session)):
    snapshot = await load_snapshot(session, request_translator(request))
    current = snapshot.subscription
    plan = plan_catalog.find_plan(current.plan_id) if current else None
    is_trial = current is not None and current.status == SubscriptionStatus.TRIAL
    decision = decide(Requirement.SUBSCRIBED, AuthState(authenticated=True, user_id=session.user_id), snapshot)

    return {
        "status": snapshot.status.value,
        "subscription": current.to_public() if current else None,
        "plan": plan.model_dump(mode="json") if plan else None,
        "is_loading": snapshot.loading,
        "is_trial_active": is_trial,
        "trial_days_remaining": trial_days_remaining(current.trial_ends_at) if is_trial else 0,
        "has_access": decision.allowed,
    }


@router.post("/subscription/start")
async def start_subscription(
    body: StartSubscriptionRequest,
    request: Request,
    session: PortalSession = Depends(get_portal_session),
):
    outcome = await session.controller.start(body.plan_id, body.payment_method_id)
    return _outcome_response(outcome, request)


@router.patch("/subscription/plan")
async def change_plan(
    body: ChangePlanRequest,
    request: Request,
    session: PortalSession = Depends(get_portal_session),
):
    outcome = await session.controller.change_plan(body.plan_id)
    return _outcome_response(outcome, request)


@router.post("/subscription/cancel")
async def cancel_subscription(request: Request, session: PortalSession = Depends(get_portal_session)):
    outcome = await session.controller.cancel()
    return _outcome_response(outcome, request)


@router.post("/subscription/reactivate")
async def reactivate_subscription(request: Request, session: PortalSession = Depends(get_portal_session)):
    outcome = await session.controller.reactivate()
    return _outcome_response(outcome, request)


@router.get("/access")
async def check_access(request: Request, path: str = Query("/", min_length=1)):
    """Guard decision for a portal page, without raising on deny."""
    translate = request_translator(request)
    requirement = requirement_for_path(path)
    user = await get_current_user(request)

    snapshot = SubscriptionSnapshot(loaded=False, loading=False)
    if user and requirement == Requirement.SUBSCRIBED:
        session = portal_sessions.get_or_create(user_id_of(user), get_bearer_token(request))
        snapshot = await load_snapshot(session, translate)

    decision = decide(requirement, AuthState.from_user(user), snapshot)
    return {"path": path, "requirement": requirement.value, **decision.to_dict(translate)}


@router.get("/entitlements")
async def list_entitlements(session: PortalSession = Depends(require_entitlement(Requirement.SUBSCRIBED))):
    current = session.store.current()
    plan = plan_catalog.get_plan(current.plan_id)
    return {
        "plan_id": plan.id,
        "status": current.status.value,
        "features": [feature.model_dump() for feature in plan.features],
    }


@router.get("/features/{feature_name}")
async def check_feature(feature_name: str, request: Request):
    session = await enforce_entitlement(request, Requirement.SUBSCRIBED, feature=feature_name)
    included, limit = plan_catalog.is_feature_included(session.store.current().plan_id, feature_name)
    return {"feature": feature_name, "allowed": included, "limit": limit}

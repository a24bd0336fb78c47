from fastapi import HTTPException, Request, status
from typing import Optional
import logging

from auth import decode_access_token
from models import AuditAction, UserRole
from services.billing_client import BillingBackendError
from services.entitlement_guard import (
    AuthState,
    DecisionOutcome,
    DenyReason,
    Requirement,
    decide,
)
from services.error_classifier import classify_subscription_error
from services.portal_sessions import PortalSession, portal_sessions
from services.subscription_store import SubscriptionSnapshot
from utils.audit import create_audit_log
from utils.i18n import get_translator, language_from_header

logger = logging.getLogger(__name__)

def get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header.split(" ", 1)[1].strip() or None

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    token = get_bearer_token(request)
    if not token:
        return None
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

def request_translator(request: Request):
    return get_translator(language_from_header(request.headers.get("Accept-Language")))

def user_id_of(user: dict) -> str:
    return user.get("user_id") or user.get("sub")

async def get_portal_session(request: Request) -> PortalSession:
    """Portal session for the authenticated caller."""
    user = await require_auth(request)
    return portal_sessions.get_or_create(user_id_of(user), get_bearer_token(request))

async def load_snapshot(session: PortalSession, translate=None) -> SubscriptionSnapshot:
    """Bring the session store up to date unless a request is already outstanding.

    A failed fetch is reported as 503 with the classified message rather than
    leaving the caller waiting on a store that will never load.
    """
    if not session.store.is_loading():
        try:
            await session.store.ensure_fresh()
        except BillingBackendError as e:
            classified = classify_subscription_error(e, translate)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"kind": classified.kind.value, "title": classified.title, "description": classified.description},
            )
    return session.store.snapshot()

async def enforce_entitlement(
    request: Request, requirement: Requirement, feature: Optional[str] = None
) -> Optional[PortalSession]:
    """
    Run the entitlement guard for this request and raise when it does not allow.

    Deny (unauthenticated) -> 401 with X-Redirect to sign-in.
    Deny (subscription)    -> 403 with X-Redirect to the plans page.
    Pending                -> 503 with Retry-After.
    """
    translate = request_translator(request)
    user = await get_current_user(request)
    auth_state = AuthState.from_user(user)

    session = None
    snapshot = SubscriptionSnapshot(loaded=False, loading=False)
    if user:
        session = portal_sessions.get_or_create(user_id_of(user), get_bearer_token(request))
        if requirement == Requirement.SUBSCRIBED:
            snapshot = await load_snapshot(session, translate)

    decision = decide(requirement, auth_state, snapshot, feature=feature)
    if decision.outcome == DecisionOutcome.ALLOW:
        return session

    detail = decision.to_dict(translate)
    if decision.outcome == DecisionOutcome.PENDING:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": "1"},
        )

    if decision.reason == DenyReason.UNAUTHENTICATED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"X-Redirect": decision.redirect_to},
        )

    logger.warning(
        f"Entitlement denied for user {auth_state.user_id} on {request.url.path}: "
        f"{decision.reason.value}"
    )
    await create_audit_log(
        action=AuditAction.ENTITLEMENT_DENIED,
        actor_role=UserRole.ROLE_USER,
        actor_id=auth_state.user_id,
        user_id=auth_state.user_id,
        resource_type="route",
        resource_id=request.url.path,
        reason_code=decision.reason.value,
        metadata={"requirement": requirement.value, "feature": feature},
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail,
        headers={"X-Redirect": decision.redirect_to},
    )

def require_entitlement(requirement: Requirement, feature: Optional[str] = None):
    """
    Dependency factory around enforce_entitlement.

    Usage:
        @router.get("/endpoint")
        async def my_endpoint(session = Depends(require_entitlement(Requirement.SUBSCRIBED))):
            ...
    """
    async def dependency(request: Request) -> Optional[PortalSession]:
        return await enforce_entitlement(request, requirement, feature)

    return dependency

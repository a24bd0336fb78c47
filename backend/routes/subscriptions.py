"""Subscription Routes - the billing backend API.

Endpoints:
- GET /api/subscriptions/plans - Plan catalog (no auth)
- GET /api/subscriptions/current - Latest subscription record (404 when none)
- GET /api/subscriptions/status-check - Whether a new subscription may be created
- POST /api/subscriptions/create - Start a subscription
- PATCH /api/subscriptions/change-plan - Change plan of the live subscription
- POST /api/subscriptions/cancel - Cancel the live subscription
- POST /api/subscriptions/reactivate - Start a new record after cancellation

Failures are returned as {"error": {"type", "message", "code", "details"}}.
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
import logging

from middleware import require_auth, user_id_of
from models import ChangePlanRequest, StartSubscriptionRequest, SubscriptionErrorType
from services.plan_catalog import plan_catalog
from services.subscription_service import SubscriptionAPIError, subscription_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _error_response(error: SubscriptionAPIError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_response())


def _unexpected(action: str, e: Exception) -> JSONResponse:
    logger.error(f"Failed to {action}: {e}")
    return _error_response(SubscriptionAPIError(
        SubscriptionErrorType.UNKNOWN,
        f"Failed to {action}",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    ))


@router.get("/plans")
async def get_plans():
    """Available plans, for the pricing page."""
    return {"plans": [plan.model_dump(mode="json") for plan in plan_catalog.list_plans()]}


@router.get("/current")
async def get_current_subscription(user: dict = Depends(require_auth)):
    try:
        subscription = await subscription_service.get_current(user_id_of(user))
    except Exception as e:
        return _unexpected("fetch subscription", e)

    if subscription is None:
        return _error_response(SubscriptionAPIError(
            SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND,
            "No subscription found",
            status.HTTP_404_NOT_FOUND,
        ))
    return {"subscription": subscription.to_public()}


@router.get("/status-check")
async def status_check(user: dict = Depends(require_auth)):
    try:
        return await subscription_service.status_check(user_id_of(user))
    except Exception as e:
        return _unexpected("check subscription status", e)


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_subscription(body: StartSubscriptionRequest, user: dict = Depends(require_auth)):
    try:
        subscription = await subscription_service.start(
            user_id_of(user),
            body.plan_id,
            email=user.get("email"),
            payment_method_id=body.payment_method_id,
        )
    except SubscriptionAPIError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected("create subscription", e)
    return {"subscription": subscription.to_public()}


@router.patch("/change-plan")
async def change_plan(body: ChangePlanRequest, user: dict = Depends(require_auth)):
    try:
        subscription = await subscription_service.change_plan(user_id_of(user), body.plan_id)
    except SubscriptionAPIError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected("change subscription plan", e)
    return {"subscription": subscription.to_public()}


@router.post("/cancel")
async def cancel_subscription(user: dict = Depends(require_auth)):
    try:
        subscription = await subscription_service.cancel(user_id_of(user))
    except SubscriptionAPIError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected("cancel subscription", e)
    return {"subscription": subscription.to_public()}


@router.post("/reactivate")
async def reactivate_subscription(user: dict = Depends(require_auth)):
    try:
        subscription = await subscription_service.reactivate(user_id_of(user))
    except SubscriptionAPIError as e:
        return _error_response(e)
    except Exception as e:
        return _unexpected("reactivate subscription", e)
    return {"subscription": subscription.to_public()}

"""
Billing API route tests (/api/subscriptions/*).
- Plans are public; everything else needs a bearer token
- Success bodies are {"subscription": ...} without provider ids
- Failures are {"error": {"type", "message", "code", "details"}} with the matching status
"""
import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import build_subscription
from models import SubscriptionErrorType, SubscriptionStatus
from routes import subscriptions
from services.subscription_service import SubscriptionAPIError


@pytest.fixture
def service():
    mock_service = MagicMock()
    for name in ("get_current", "status_check", "start", "change_plan", "cancel", "reactivate"):
        setattr(mock_service, name, AsyncMock())
    with patch("routes.subscriptions.subscription_service", mock_service):
        yield mock_service


@pytest.fixture
def api():
    app = FastAPI()
    app.include_router(subscriptions.router)
    return TestClient(app)


def test_plans_are_public(api):
    response = api.get("/api/subscriptions/plans")
    assert response.status_code == 200
    assert [p["id"] for p in response.json()["plans"]] == ["basic", "professional", "enterprise"]


def test_current_requires_auth(api, service):
    response = api.get("/api/subscriptions/current")
    assert response.status_code == 401
    service.get_current.assert_not_called()


def test_invalid_token_rejected(api, service):
    response = api.get("/api/subscriptions/current", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_current_without_subscription_is_404(api, service, auth_headers):
    service.get_current.return_value = None
    response = api.get("/api/subscriptions/current", headers=auth_headers)

    assert response.status_code == 404
    assert response.json()["error"]["type"] == "subscription_not_found"
    service.get_current.assert_awaited_once_with("user-1")


def test_current_hides_provider_ids(api, service, auth_headers):
    service.get_current.return_value = build_subscription(
        SubscriptionStatus.ACTIVE, provider_customer_id="cus_1", provider_subscription_id="sub_1"
    )
    response = api.get("/api/subscriptions/current", headers=auth_headers)

    body = response.json()["subscription"]
    assert response.status_code == 200
    assert body["status"] == "active"
    assert "provider_subscription_id" not in body
    assert "provider_customer_id" not in body


def test_create_accepts_camel_case(api, service, auth_headers):
    service.start.return_value = build_subscription(SubscriptionStatus.TRIAL, "basic")
    response = api.post(
        "/api/subscriptions/create",
        json={"planId": "basic", "paymentMethodId": "pm_1"},
        headers=auth_headers,
    )

    assert response.status_code == 201
    assert response.json()["subscription"]["status"] == "trial"
    service.start.assert_awaited_once_with(
        "user-1", "basic", email="user@example.com", payment_method_id="pm_1"
    )


def test_create_requires_plan(api, service, auth_headers):
    response = api.post("/api/subscriptions/create", json={"plan_id": ""}, headers=auth_headers)
    assert response.status_code == 422
    service.start.assert_not_called()


def test_create_already_subscribed(api, service, auth_headers):
    service.start.side_effect = SubscriptionAPIError(
        SubscriptionErrorType.ALREADY_SUBSCRIBED, "User already has a subscription", 409, {"status": "trial"}
    )
    response = api.post("/api/subscriptions/create", json={"plan_id": "basic"}, headers=auth_headers)

    assert response.status_code == 409
    assert response.json() == {
        "error": {
            "type": "already_subscribed",
            "message": "User already has a subscription",
            "code": 409,
            "details": {"status": "trial"},
        }
    }


def test_unexpected_failure_is_unknown_500(api, service, auth_headers):
    service.cancel.side_effect = RuntimeError("mongo went away")
    response = api.post("/api/subscriptions/cancel", headers=auth_headers)

    assert response.status_code == 500
    error = response.json()["error"]
    assert error["type"] == "unknown"
    assert "mongo" not in error["message"]


def test_change_plan(api, service, auth_headers):
    service.change_plan.return_value = build_subscription(SubscriptionStatus.TRIAL, "enterprise")
    response = api.patch("/api/subscriptions/change-plan", json={"plan_id": "enterprise"}, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["subscription"]["plan_id"] == "enterprise"
    service.change_plan.assert_awaited_once_with("user-1", "enterprise")


def test_reactivate_not_found(api, service, auth_headers):
    service.reactivate.side_effect = SubscriptionAPIError(
        SubscriptionErrorType.SUBSCRIPTION_NOT_FOUND, "No canceled subscription to reactivate", 404
    )
    response = api.post("/api/subscriptions/reactivate", headers=auth_headers)
    assert response.status_code == 404


def test_status_check(api, service, auth_headers):
    service.status_check.return_value = {
        "has_subscription": False,
        "can_create_new": True,
        "subscription_status": "none",
        "message": "No subscription found",
    }
    response = api.get("/api/subscriptions/status-check", headers=auth_headers)
    assert response.json()["can_create_new"] is True


def test_health(client):
    assert client.get("/api/health").json()["status"] == "healthy"

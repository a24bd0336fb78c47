"""
Billing backend client used by the portal layer.

The portal never touches subscription records directly; it reads and mutates
them through the billing backend's HTTP API. BillingBackend is the interface
the Subscription Store and Lifecycle Controller depend on, HttpBillingBackend
the httpx implementation.
"""
import os
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from models import Subscription, SubscriptionErrorType
from services.plan_catalog import plan_catalog

logger = logging.getLogger(__name__)

BILLING_API_URL = os.getenv("BILLING_API_URL", "http://127.0.0.1:8001").rstrip("/")
BILLING_API_TIMEOUT = float(os.getenv("BILLING_API_TIMEOUT", "15"))


class BillingBackendError(Exception):
    """A billing call that did not produce a usable result.

    ``payload`` is the decoded response body (or a synthesized structured error
    for transport failures); ``status_code`` is None when no response arrived.
    The ``error`` and ``message`` properties expose the payload in the shape the
    error classifier reads.
    """

    def __init__(self, status_code: Optional[int], payload: Any = None):
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"Billing backend error (status={status_code})")

    @property
    def error(self) -> Any:
        if isinstance(self.payload, dict):
            return self.payload.get("error")
        return None

    @property
    def message(self) -> Optional[str]:
        if isinstance(self.payload, dict) and isinstance(self.payload.get("message"), str):
            return self.payload["message"]
        return None

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class SubscriptionIntegrityError(BillingBackendError):
    """The backend returned a subscription the portal cannot trust."""


def _structured(error_type: SubscriptionErrorType, message: str, code: Optional[int] = None) -> Dict[str, Any]:
    return {"error": {"type": error_type.value, "message": message, "code": code, "details": None}}


def _normalize_error_body(body: Any) -> Any:
    """Keep structured errors; reduce FastAPI ``detail`` strings to a message."""
    if isinstance(body, dict):
        if isinstance(body.get("error"), dict):
            return body
        if isinstance(body.get("detail"), str):
            return {"message": body["detail"]}
    return None


class BillingBackend(ABC):
    """Operations the portal consumes from the billing backend."""

    @abstractmethod
    async def fetch_current(self) -> Optional[Subscription]:
        """Latest subscription record for the caller, or None."""

    @abstractmethod
    async def start(self, plan_id: str, payment_method_id: Optional[str] = None) -> Subscription:
        pass

    @abstractmethod
    async def change_plan(self, plan_id: str) -> Subscription:
        pass

    @abstractmethod
    async def cancel(self) -> Subscription:
        pass

    @abstractmethod
    async def reactivate(self) -> Subscription:
        pass


class HttpBillingBackend(BillingBackend):
    """BillingBackend over the /api/subscriptions HTTP API."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = (base_url or BILLING_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else BILLING_API_TIMEOUT
        self._transport = transport

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException:
            logger.error(f"Billing backend timeout: {method} {path}")
            raise BillingBackendError(None, _structured(
                SubscriptionErrorType.SERVICE_UNAVAILABLE, "Billing backend timed out"
            ))
        except httpx.HTTPError as e:
            logger.error(f"Billing backend unreachable: {method} {path}: {e}")
            raise BillingBackendError(None, _structured(
                SubscriptionErrorType.SERVICE_UNAVAILABLE, "Billing backend unreachable"
            ))

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            logger.warning(f"Billing backend returned {response.status_code} for {method} {path}")
            raise BillingBackendError(response.status_code, _normalize_error_body(body))

        return body

    def _parse_subscription(self, body: Any) -> Subscription:
        raw = body.get("subscription") if isinstance(body, dict) else None
        if not isinstance(raw, dict):
            logger.error("Billing backend response has no subscription object")
            raise BillingBackendError(200, None)
        try:
            subscription = Subscription.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Billing backend returned an invalid subscription: {e}")
            raise BillingBackendError(200, None)

        if plan_catalog.find_plan(subscription.plan_id) is None:
            logger.error(
                f"Subscription {subscription.subscription_id} references unknown plan {subscription.plan_id}"
            )
            raise SubscriptionIntegrityError(200, None)
        return subscription

    async def fetch_current(self) -> Optional[Subscription]:
        try:
            body = await self._request("GET", "/api/subscriptions/current")
        except BillingBackendError as e:
            if e.status_code == 404:
                return None
            raise
        if isinstance(body, dict) and body.get("subscription") is None:
            return None
        return self._parse_subscription(body)

    async def start(self, plan_id: str, payment_method_id: Optional[str] = None) -> Subscription:
        payload = {"plan_id": plan_id}
        if payment_method_id:
            payload["payment_method_id"] = payment_method_id
        body = await self._request("POST", "/api/subscriptions/create", json=payload)
        return self._parse_subscription(body)

    async def change_plan(self, plan_id: str) -> Subscription:
        body = await self._request("PATCH", "/api/subscriptions/change-plan", json={"plan_id": plan_id})
        return self._parse_subscription(body)

    async def cancel(self) -> Subscription:
        body = await self._request("POST", "/api/subscriptions/cancel", json={})
        return self._parse_subscription(body)

    async def reactivate(self) -> Subscription:
        body = await self._request("POST", "/api/subscriptions/reactivate", json={})
        return self._parse_subscription(body)

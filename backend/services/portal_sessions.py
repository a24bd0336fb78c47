"""Per-user portal sessions.

Each authenticated user gets one PortalSession holding their Subscription
Store and Lifecycle Controller. Sessions share nothing with each other; the
billing backend's records are the only cross-session state.

The registry is bounded: sessions idle for longer than ``idle_timeout`` are
dropped, and past ``max_sessions`` the least recently used one goes first.
A session with a request outstanding is never evicted.
"""
import os
import time
import logging
from collections import OrderedDict
from typing import Callable, Optional

from services.billing_client import BillingBackend, HttpBillingBackend
from services.lifecycle_controller import LifecycleController
from services.subscription_store import SUBSCRIPTION_MAX_AGE, SubscriptionStore

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Optional[str]], BillingBackend]

PORTAL_MAX_SESSIONS = int(os.getenv("PORTAL_MAX_SESSIONS", "10000"))
PORTAL_SESSION_IDLE_SECONDS = float(os.getenv("PORTAL_SESSION_IDLE_SECONDS", "1800"))


class PortalSession:
    def __init__(self, user_id: str, backend: BillingBackend, max_age: Optional[float] = SUBSCRIPTION_MAX_AGE):
        self.user_id = user_id
        self.store = SubscriptionStore(backend, max_age=max_age)
        self.controller = LifecycleController(self.store)
        self.last_used: float = 0.0

    def update_token(self, token: Optional[str]) -> None:
        """Forward the caller's latest bearer token to the billing backend."""
        if token and hasattr(self.store.backend, "token"):
            self.store.backend.token = token

    def is_busy(self) -> bool:
        return self.store.is_loading()


class PortalSessionRegistry:
    def __init__(
        self,
        backend_factory: BackendFactory = None,
        max_age: Optional[float] = SUBSCRIPTION_MAX_AGE,
        max_sessions: int = PORTAL_MAX_SESSIONS,
        idle_timeout: Optional[float] = PORTAL_SESSION_IDLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._backend_factory = backend_factory or (lambda token: HttpBillingBackend(token=token))
        self.max_age = max_age
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self._clock = clock
        # least recently used first
        self._sessions: "OrderedDict[str, PortalSession]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def get_or_create(self, user_id: str, token: Optional[str] = None) -> PortalSession:
        now = self._clock()
        session = self._sessions.get(user_id)
        if session is None:
            session = PortalSession(user_id, self._backend_factory(token), self.max_age)
            self._sessions[user_id] = session
            logger.info(f"Portal session opened for user {user_id}")
        else:
            session.update_token(token)
            self._sessions.move_to_end(user_id)
        session.last_used = now
        self._evict(now, keep=user_id)
        return session

    def get(self, user_id: str) -> Optional[PortalSession]:
        return self._sessions.get(user_id)

    def discard(self, user_id: str) -> None:
        if self._sessions.pop(user_id, None) is not None:
            logger.info(f"Portal session closed for user {user_id}")

    def clear(self) -> None:
        self._sessions.clear()

    def configure(self, backend_factory: BackendFactory, max_age: Optional[float] = SUBSCRIPTION_MAX_AGE) -> None:
        """Swap how billing backends are built; drops existing sessions."""
        self._backend_factory = backend_factory
        self.max_age = max_age
        self._sessions.clear()

    def _evict(self, now: float, keep: str) -> None:
        overflow = len(self._sessions) - self.max_sessions
        for user_id, session in list(self._sessions.items()):
            if user_id == keep or session.is_busy():
                continue
            idle = self.idle_timeout is not None and now - session.last_used >= self.idle_timeout
            if not idle and overflow <= 0:
                # entries are in use order, so nothing further along is idle either
                break
            del self._sessions[user_id]
            overflow -= 1
            reason = "idle" if idle else "capacity"
            logger.info(f"Portal session evicted for user {user_id} ({reason})")


# Singleton instance
portal_sessions = PortalSessionRegistry()

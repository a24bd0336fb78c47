"""
Subscription Store - the single writer for one session's subscription state.

Both the Lifecycle Controller and the Entitlement Guard read from the same
store instance, so a guard decision and a controller pre-condition taken at the
same moment see the same record.

A loaded value also expires after ``max_age`` seconds, so status changes made
outside this session (Stripe webhooks, other workers) reach the guard.

Fetches and applied mutations are numbered. A fetch response is applied only
if it was issued after whatever was last applied, so a slow response to an
older fetch can never overwrite newer state.
"""
import os
import time
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from models import Subscription, SubscriptionStatus
from services.billing_client import BillingBackend, BillingBackendError

logger = logging.getLogger(__name__)

SUBSCRIPTION_MAX_AGE = float(os.getenv("SUBSCRIPTION_MAX_AGE_SECONDS", "30"))


class StoreBusyError(RuntimeError):
    """A lifecycle mutation was started while another one is outstanding."""


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Point-in-time view of the store, as consumed by the entitlement guard."""
    loaded: bool
    loading: bool
    subscription: Optional[Subscription] = None

    @property
    def status(self) -> SubscriptionStatus:
        if self.subscription is None:
            return SubscriptionStatus.NONE
        return self.subscription.status


class SubscriptionStore:
    def __init__(
        self,
        backend: BillingBackend,
        max_age: Optional[float] = SUBSCRIPTION_MAX_AGE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.max_age = max_age
        self._clock = clock
        self._loaded_at: Optional[float] = None
        self._subscription: Optional[Subscription] = None
        self._loaded = False
        self._stale = True
        self._fetches_in_flight = 0
        self._mutating = False
        self._generation = 0
        self._applied_generation = 0
        self.last_error: Optional[BillingBackendError] = None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def current(self) -> Optional[Subscription]:
        return self._subscription

    def is_loading(self) -> bool:
        return self._mutating or self._fetches_in_flight > 0

    def is_loaded(self) -> bool:
        return self._loaded

    def is_stale(self) -> bool:
        """Invalidated, never loaded, or older than max_age."""
        if self._stale or self._loaded_at is None:
            return True
        return self.max_age is not None and self._clock() - self._loaded_at >= self.max_age

    def snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            loaded=self._loaded,
            loading=self.is_loading(),
            subscription=self._subscription,
        )

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    def invalidate(self) -> None:
        self._stale = True

    async def refresh(self) -> Optional[Subscription]:
        """Fetch the current record from the billing backend.

        Raises BillingBackendError when the fetch fails; the previous value is
        kept in that case.
        """
        self._generation += 1
        generation = self._generation
        self._fetches_in_flight += 1
        try:
            subscription = await self.backend.fetch_current()
        except BillingBackendError as e:
            if generation > self._applied_generation:
                self.last_error = e
            logger.warning(f"Subscription fetch failed (status={e.status_code})")
            raise
        finally:
            self._fetches_in_flight -= 1

        if generation <= self._applied_generation:
            logger.info(f"Discarding stale subscription fetch #{generation}")
            return self._subscription

        self._applied_generation = generation
        self._subscription = subscription
        self._loaded = True
        self._stale = False
        self._loaded_at = self._clock()
        self.last_error = None
        return subscription

    async def ensure_fresh(self) -> Optional[Subscription]:
        """Refetch only when never loaded, invalidated or expired."""
        if self._loaded and not self.is_stale():
            return self._subscription
        return await self.refresh()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def mutation(self):
        """Mark a lifecycle mutation as outstanding for the duration of the block."""
        if self._mutating:
            raise StoreBusyError("A subscription change is already in progress")
        self._mutating = True
        try:
            yield self
        finally:
            self._mutating = False

    def apply(self, subscription: Optional[Subscription]) -> None:
        """Record the result of a successful mutation.

        Any fetch issued before this point is now older than the stored value
        and will be discarded when it arrives.
        """
        self._generation += 1
        self._applied_generation = self._generation
        self._subscription = subscription
        self._loaded = True
        self._stale = False
        self._loaded_at = self._clock()

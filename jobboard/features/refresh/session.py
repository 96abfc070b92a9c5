"""
jobboard/features/refresh/session.py

Refresh session: runs the RefreshScheduler on asyncio for one client view.

- mount() forces one reconciliation and starts the periodic task
- request_refresh() goes through the scheduler (run, delay or coalesce)
- handle_navigation() turns payment-return markers into a forced refresh
- unmount() cancels timers; results still in flight are discarded
- switch_identity() resets state; results for the old identity are discarded

Reconciliation is blocking (store + Stripe), so it runs in a worker thread
under a timeout. Every fetch carries a generation number and only results
newer than the last applied one update the bundle. A failed or timed-out
fetch keeps the last-known-good bundle and posts a retryable notification,
one per error code; the next clean fetch clears them.
"""

import asyncio
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from jobboard.core.auth import Identity
from jobboard.core.config import settings
from jobboard.core.errors import AppError, RemoteTimeoutError
from jobboard.features.entitlements.service import ReconciliationResult, reconcile_entitlements
from jobboard.features.refresh.scheduler import (
    Clock,
    PaymentReturnMarker,
    RefreshAction,
    RefreshDecision,
    RefreshScheduler,
    parse_marker,
    strip_markers,
)
from jobboard.models.subscription import FeatureEntitlementBundle


logger = logging.getLogger(__name__)

_notification_ids = itertools.count(1)

MAX_NOTIFICATIONS = 20

Reconciler = Callable[..., ReconciliationResult]


@dataclass
class Notification:
    """User-facing notice; errors are retryable, all are dismissible."""
    kind: str  # error | success
    code: str
    message: str
    retryable: bool = False
    dismissible: bool = True
    dismissed: bool = False
    id: int = field(default_factory=lambda: next(_notification_ids))


@dataclass(frozen=True)
class NavigationResult:
    url: str
    marker: Optional[PaymentReturnMarker] = None
    accepted: bool = False


class SubscriptionSession:
    """Entitlement refresh loop for one identity."""

    def __init__(
        self,
        identity: Identity,
        *,
        reconcile: Reconciler = reconcile_entitlements,
        clock: Optional[Clock] = None,
        scheduler: Optional[RefreshScheduler] = None,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        payment_return_delay: Optional[float] = None,
        auto_schedule: bool = True,
    ):
        self.identity = identity
        self._reconcile = reconcile
        self.interval = settings.REFRESH_INTERVAL_SECONDS if interval is None else interval
        self.timeout = settings.REMOTE_CALL_TIMEOUT_SECONDS if timeout is None else timeout
        self.payment_return_delay = (
            settings.PAYMENT_RETURN_DELAY_SECONDS if payment_return_delay is None else payment_return_delay
        )
        self.auto_schedule = auto_schedule

        self.scheduler = scheduler or RefreshScheduler(clock)
        self.bundle: Optional[FeatureEntitlementBundle] = None
        self.last_result: Optional[ReconciliationResult] = None
        self.notifications: List[Notification] = []
        self.alive = False

        self._generation = 0
        self._applied_generation = 0
        self._discard_up_to = 0
        self._periodic_task: Optional[asyncio.Task] = None
        self._pending_task: Optional[asyncio.Task] = None

    # Lifecycle

    async def mount(self) -> Optional[FeatureEntitlementBundle]:
        """Force one reconciliation and start the periodic refresh."""
        self.alive = True
        await self._fetch(force=True)
        if self.interval > 0 and self._periodic_task is None:
            self._periodic_task = asyncio.create_task(self._periodic_loop())
        return self.bundle

    async def unmount(self) -> None:
        """Stop timers; anything still in flight is discarded on arrival."""
        self.alive = False
        self._cancel_pending()
        task, self._periodic_task = self._periodic_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def switch_identity(self, identity: Identity) -> Optional[FeatureEntitlementBundle]:
        """Reset to a new identity; results for the previous one are dropped."""
        logger.info(
            "[refresh] identity switched",
            extra={"previous_user_id": self.identity.id, "user_id": identity.id},
        )
        self._cancel_pending()
        self._discard_up_to = self._generation
        self.identity = identity
        previous = self.scheduler
        self.scheduler = RefreshScheduler(
            previous.clock,
            min_interval=previous.min_interval,
            backoff_step=previous.backoff_step,
            max_delay=previous.max_delay,
        )
        self.bundle = None
        self.last_result = None
        self.notifications = []
        if self.alive:
            await self._fetch(force=True)
        return self.bundle

    # Triggers

    async def request_refresh(self, force: bool = False) -> RefreshDecision:
        """Ask for a refresh; runs it now, schedules it, or folds it into one already coming."""
        decision = self.scheduler.request(force=force)
        if decision.action == RefreshAction.RUN:
            await self._fetch(force=decision.force)
        elif decision.action == RefreshAction.DELAY:
            if self.auto_schedule:
                self._schedule(decision.delay, force=False)
            else:
                self.scheduler.cancel_pending()
        return decision

    async def handle_navigation(self, url: str, *, schedule: bool = True) -> NavigationResult:
        """
        Process payment-return markers in `url`.

        A new marker posts a success notice and (with `schedule`) a forced
        refresh after the payment-return delay. The returned URL has the
        markers stripped.
        """
        marker = parse_marker(url)
        if marker is None:
            return NavigationResult(url=url)

        clean_url = strip_markers(url)
        if not self.scheduler.accept_marker(marker):
            return NavigationResult(url=clean_url, marker=marker, accepted=False)

        if marker.kind == "payment_success":
            message = f"Your payment for {marker.plan} has been completed."
        else:
            message = "Your subscription has been updated."
        self._notify("success", marker.kind, message)
        logger.info(
            "[refresh] PAYMENT_RETURN",
            extra={"user_id": self.identity.id, "marker": marker.kind, "plan": marker.plan, "ts": marker.token},
        )

        if schedule:
            self._schedule(self.payment_return_delay, force=True)
        return NavigationResult(url=clean_url, marker=marker, accepted=True)

    # Notifications

    @property
    def active_notifications(self) -> List[Notification]:
        return [n for n in self.notifications if not n.dismissed]

    def dismiss(self, notification_id: int) -> bool:
        for notification in self.notifications:
            if notification.id == notification_id and notification.dismissible:
                notification.dismissed = True
                return True
        return False

    def _notify(self, kind: str, code: str, message: str, retryable: bool = False) -> Notification:
        """Post a notice. An error replaces the earlier notice with the same code."""
        if kind == "error":
            self.notifications = [
                n for n in self.notifications if not (n.kind == "error" and n.code == code)
            ]
        notification = Notification(kind=kind, code=code, message=message, retryable=retryable)
        self.notifications.append(notification)
        del self.notifications[:-MAX_NOTIFICATIONS]
        return notification

    def _clear_errors(self) -> None:
        self.notifications = [n for n in self.notifications if n.kind != "error"]

    # Internals

    def _schedule(self, delay: float, *, force: bool) -> None:
        self._cancel_pending()
        self._pending_task = asyncio.create_task(self._delayed_fetch(delay, force))

    def _cancel_pending(self) -> None:
        task, self._pending_task = self._pending_task, None
        if task is not None and not task.done():
            task.cancel()
        self.scheduler.cancel_pending()

    async def _delayed_fetch(self, delay: float, force: bool) -> None:
        await asyncio.sleep(delay)
        self._pending_task = None
        await self._fetch(force=force)

    async def _periodic_loop(self) -> None:
        while self.alive:
            await asyncio.sleep(self.interval)
            if not self.alive:
                break
            try:
                await self.request_refresh(force=False)
            except Exception:
                logger.exception("[refresh] periodic refresh crashed", extra={"user_id": self.identity.id})

    async def _fetch(self, *, force: bool) -> Optional[ReconciliationResult]:
        if not self.alive:
            return None

        self._generation += 1
        generation = self._generation
        identity = self.identity
        scheduler = self.scheduler
        scheduler.begin()

        # complete() runs on every exit, cancellation included
        success = False
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._reconcile, identity, force_billing=force),
                timeout=self.timeout,
            )
            success = result.billing_ok
        except asyncio.TimeoutError:
            error = RemoteTimeoutError(f"Subscription refresh timed out after {self.timeout}s")
            self._fail(generation, error)
            return None
        except AppError as e:
            self._fail(generation, e)
            return None
        finally:
            scheduler.complete(success=success)

        if not self._is_current(generation):
            logger.debug(
                "[refresh] discarded stale result",
                extra={"user_id": identity.id, "generation": generation, "applied": self._applied_generation},
            )
            return None

        self._applied_generation = generation
        self.bundle = result.bundle
        self.last_result = result
        if result.error is not None:
            self._notify(
                "error",
                result.error.code,
                "Could not verify your subscription right now. Showing the last known plan.",
                retryable=result.error.retryable,
            )
        else:
            self._clear_errors()
        return result

    def _is_current(self, generation: int) -> bool:
        return self.alive and generation > self._discard_up_to and generation > self._applied_generation

    def _fail(self, generation: int, error: AppError) -> None:
        logger.warning(
            "[refresh] FETCH_FAILED",
            extra={"user_id": self.identity.id, "generation": generation, "error_code": error.code},
        )
        if not self.alive or generation <= self._discard_up_to:
            return
        self._notify(
            "error",
            error.code,
            "Could not refresh your subscription. Showing the last known plan.",
            retryable=error.retryable,
        )


class SessionRegistry:
    """
    Server-side sessions keyed by user id, oldest evicted first.

    API sessions do not run timers: a throttled request is answered with
    the delay instead of being scheduled.
    """

    def __init__(self, max_sessions: int = 10000, reconcile: Optional[Reconciler] = None):
        self.max_sessions = max_sessions
        self._reconcile = reconcile
        self._sessions: "OrderedDict[str, SubscriptionSession]" = OrderedDict()

    def get(self, identity: Identity) -> SubscriptionSession:
        session = self._sessions.get(identity.id)
        if session is None:
            kwargs = {"reconcile": self._reconcile} if self._reconcile else {}
            session = SubscriptionSession(identity, interval=0, auto_schedule=False, **kwargs)
            session.alive = True
            self._sessions[identity.id] = session
            while len(self._sessions) > self.max_sessions:
                self._sessions.popitem(last=False)
        else:
            self._sessions.move_to_end(identity.id)
            session.identity = identity
        return session

    def clear(self) -> None:
        self._sessions.clear()


registry = SessionRegistry()

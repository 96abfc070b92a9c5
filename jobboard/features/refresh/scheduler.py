"""
jobboard/features/refresh/scheduler.py

Refresh scheduler.

Decides when a reconciliation should run. Pure state machine: no timers,
no I/O, time comes from an injected clock.

States: IDLE -> THROTTLED -> FETCHING -> (SUCCESS | FAILURE) -> IDLE

- Forced requests (mount, payment return, manual force) run immediately.
- Non-forced requests within `min_interval` of the last completed fetch are
  delayed by backoff_step * burst_count, capped at max_delay.
- Requests arriving while a fetch is in flight or a delayed fetch is pending
  are coalesced into it.
- Payment-return markers are accepted once per token; markers without a
  token are never accepted.
"""

from dataclasses import dataclass
from enum import Enum
from collections import OrderedDict
from typing import Optional, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
import logging
import time

from jobboard.core.config import settings


logger = logging.getLogger(__name__)

MARKER_PARAMS = ("payment_success", "subscription_updated", "plan", "ts")

# Tokens remembered per scheduler; older ones fall out first
MAX_PROCESSED_MARKERS = 100


class RefreshState(str, Enum):
    IDLE = "idle"
    THROTTLED = "throttled"
    FETCHING = "fetching"
    SUCCESS = "success"
    FAILURE = "failure"


class RefreshAction(str, Enum):
    RUN = "run"
    DELAY = "delay"
    COALESCE = "coalesce"


class Clock(Protocol):
    def monotonic(self) -> float:
        ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()


@dataclass(frozen=True)
class RefreshDecision:
    action: RefreshAction
    delay: float = 0.0
    force: bool = False

    @property
    def should_run(self) -> bool:
        return self.action == RefreshAction.RUN


@dataclass(frozen=True)
class PaymentReturnMarker:
    """Query markers the billing flow appends to the return URL."""
    kind: str  # payment_success | subscription_updated
    plan: Optional[str] = None
    token: Optional[str] = None

    @property
    def dedup_key(self) -> Optional[str]:
        return f"ts:{self.token}" if self.token else None


def parse_marker(url: Optional[str]) -> Optional[PaymentReturnMarker]:
    """Extract the payment-return marker from a URL, if any."""
    if not url:
        return None
    params = dict(parse_qsl(urlsplit(url).query))
    token = params.get("ts") or None
    if params.get("payment_success") == "true" and params.get("plan"):
        return PaymentReturnMarker(kind="payment_success", plan=params["plan"], token=token)
    if params.get("subscription_updated") == "true":
        return PaymentReturnMarker(kind="subscription_updated", token=token)
    return None


def strip_markers(url: str) -> str:
    """Remove payment-return markers, keeping every other query parameter."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in MARKER_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


class RefreshScheduler:
    """Throttle/coalesce state for one client view."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        min_interval: Optional[float] = None,
        backoff_step: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self.clock = clock or SystemClock()
        self.min_interval = settings.REFRESH_MIN_INTERVAL_SECONDS if min_interval is None else min_interval
        self.backoff_step = settings.REFRESH_BACKOFF_STEP_SECONDS if backoff_step is None else backoff_step
        self.max_delay = settings.REFRESH_MAX_DELAY_SECONDS if max_delay is None else max_delay

        self.state = RefreshState.IDLE
        self.last_fetch_time: Optional[float] = None
        self.burst_count = 0
        self.in_flight = 0
        self._processed_markers: "OrderedDict[str, None]" = OrderedDict()

    def request(self, force: bool = False) -> RefreshDecision:
        """Decide what to do with a refresh request."""
        if self.state in (RefreshState.SUCCESS, RefreshState.FAILURE):
            self.state = RefreshState.IDLE

        if force:
            self.burst_count = 0
            return RefreshDecision(RefreshAction.RUN, force=True)

        if self.state == RefreshState.FETCHING:
            return RefreshDecision(RefreshAction.COALESCE)

        now = self.clock.monotonic()
        if self.last_fetch_time is not None and now - self.last_fetch_time < self.min_interval:
            self.burst_count += 1
            self.state = RefreshState.THROTTLED
            delay = min(self.backoff_step * self.burst_count, self.max_delay)
            logger.debug("[refresh] throttled", extra={"burst_count": self.burst_count, "delay": delay})
            return RefreshDecision(RefreshAction.DELAY, delay=delay)

        if self.state == RefreshState.THROTTLED:
            # The pending delayed fetch is due; let it run
            return RefreshDecision(RefreshAction.COALESCE)

        self.burst_count = 0
        return RefreshDecision(RefreshAction.RUN)

    def begin(self) -> None:
        self.in_flight += 1
        self.state = RefreshState.FETCHING

    def complete(self, success: bool) -> None:
        self.in_flight = max(self.in_flight - 1, 0)
        self.last_fetch_time = self.clock.monotonic()
        if self.in_flight == 0:
            self.state = RefreshState.SUCCESS if success else RefreshState.FAILURE

    def cancel_pending(self) -> None:
        """The delayed fetch was dropped (unmount, identity switch)."""
        if self.state == RefreshState.THROTTLED:
            self.state = RefreshState.IDLE

    def accept_marker(self, marker: PaymentReturnMarker) -> bool:
        """True the first time a token is seen; repeats and token-less markers are ignored."""
        key = marker.dedup_key
        if key is None:
            logger.info("[refresh] payment-return marker without token ignored", extra={"marker": marker.kind})
            return False
        if key in self._processed_markers:
            logger.info("[refresh] duplicate payment-return marker ignored", extra={"marker": key})
            return False
        self._processed_markers[key] = None
        while len(self._processed_markers) > MAX_PROCESSED_MARKERS:
            self._processed_markers.popitem(last=False)
        return True

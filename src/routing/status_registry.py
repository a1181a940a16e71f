"""
Per-provider connectivity state machine.

States: connected | degraded | recovering | throttled | offline
Only the code that just attempted a provider call records an outcome here;
everything else reads.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from src.log import get_logger

logger = get_logger(__name__)


class ProviderState(str, Enum):
    connected = "connected"
    degraded = "degraded"
    recovering = "recovering"
    throttled = "throttled"
    offline = "offline"


class Outcome(str, Enum):
    success = "success"
    rate_limited = "rate_limited"
    server_error = "server_error"
    auth_error = "auth_error"


# Ordering used by health scoring: worst -> best
STATE_ORDER = (
    ProviderState.offline,
    ProviderState.throttled,
    ProviderState.degraded,
    ProviderState.recovering,
    ProviderState.connected,
)

_FAILURE_STATES = {
    Outcome.rate_limited: ProviderState.throttled,
    Outcome.server_error: ProviderState.degraded,
    Outcome.auth_error: ProviderState.offline,
}


@dataclass(frozen=True)
class ProviderStatus:
    name: str
    state: ProviderState
    model_version: str = ""
    last_updated: float = 0.0
    consecutive_successes: int = 0
    last_error: Optional[str] = None
    credential_present: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "state": self.state.value,
            "model_version": self.model_version,
            "last_updated": self.last_updated,
            "consecutive_successes": self.consecutive_successes,
            "last_error": self.last_error,
            "credential_present": self.credential_present,
        }


StatusListener = Callable[[str, ProviderState, ProviderState], None]


class ProviderStatusRegistry:
    """Last-writer-wins map of provider name -> ProviderStatus."""

    def __init__(self, recovery_threshold: int = 3, clock: Callable[[], float] = time.time):
        self.recovery_threshold = max(1, int(recovery_threshold))
        self._clock = clock
        self._lock = threading.Lock()
        self._statuses: Dict[str, ProviderStatus] = {}
        self._listeners: List[StatusListener] = []

    def register(self, name: str, credential_present: bool, model_version: str = "") -> ProviderStatus:
        status = ProviderStatus(
            name=name,
            state=ProviderState.connected if credential_present else ProviderState.offline,
            model_version=model_version,
            last_updated=self._clock(),
            credential_present=credential_present,
            last_error=None if credential_present else "API key not configured",
        )
        with self._lock:
            self._statuses[name] = status
        logger.info("[registry] %s registered state=%s model=%s", name, status.state.value, model_version or "-")
        return status

    def add_listener(self, fn: StatusListener) -> None:
        self._listeners.append(fn)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._statuses)

    def get_status(self, name: str) -> ProviderStatus:
        """Current status; unknown providers get a synthetic offline status."""
        status = self._statuses.get(name)
        if status is None:
            return ProviderStatus(name=name, state=ProviderState.offline, last_updated=self._clock())
        return status

    def is_eligible(self, name: str) -> bool:
        return self.get_status(name).state != ProviderState.offline

    def snapshot(self) -> Dict[str, ProviderStatus]:
        with self._lock:
            return dict(self._statuses)

    def record_outcome(
        self,
        name: str,
        outcome: Outcome,
        error: Optional[str] = None,
        model_version: Optional[str] = None,
    ) -> ProviderStatus:
        outcome = Outcome(outcome)
        with self._lock:
            prev = self._statuses.get(name) or ProviderStatus(name=name, state=ProviderState.offline)
            new = self._next(prev, outcome)
            new = replace(
                new,
                last_updated=self._clock(),
                last_error=None if outcome == Outcome.success else (error or outcome.value),
                model_version=model_version or prev.model_version,
            )
            self._statuses[name] = new

        if new.state != prev.state:
            logger.info("[registry] %s %s -> %s (%s)", name, prev.state.value, new.state.value, outcome.value)
            for fn in list(self._listeners):
                try:
                    fn(name, prev.state, new.state)
                except Exception as e:
                    logger.warning("[registry] listener failed for %s: %s", name, e)
        return new

    def _next(self, prev: ProviderStatus, outcome: Outcome) -> ProviderStatus:
        if outcome != Outcome.success:
            return replace(prev, state=_FAILURE_STATES[outcome], consecutive_successes=0)

        if prev.state in (ProviderState.degraded, ProviderState.offline):
            count = 1
        elif prev.state == ProviderState.recovering:
            count = prev.consecutive_successes + 1
        else:
            return replace(prev, state=ProviderState.connected, consecutive_successes=prev.consecutive_successes + 1)

        if count >= self.recovery_threshold:
            return replace(prev, state=ProviderState.connected, consecutive_successes=count)
        return replace(prev, state=ProviderState.recovering, consecutive_successes=count)

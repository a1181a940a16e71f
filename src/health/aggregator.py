"""
Composite health score.

`compute_snapshot` is a pure function of `HealthInputs`; `HealthAggregator`
gathers live inputs (registry, psutil, credentials, writable dirs) and calls it.

Weights (sum 100):
    memory       25   healthy=25, unhealthy=0, unreadable=12.5
    credentials  20   20 * (providers with keys / required providers)
    filesystem    5
    providers    50   split equally, scaled by state factor
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import psutil

from src.log import get_logger
from src.routing.status_registry import ProviderState, ProviderStatusRegistry

logger = get_logger(__name__)

MEMORY_WEIGHT = 25.0
CREDENTIALS_WEIGHT = 20.0
FILESYSTEM_WEIGHT = 5.0
PROVIDERS_WEIGHT = 50.0

HEALTHY_CUTOFF = 80
DEGRADED_CUTOFF = 50

STATE_FACTORS: Dict[ProviderState, float] = {
    ProviderState.connected: 1.0,
    ProviderState.recovering: 0.75,
    ProviderState.degraded: 0.5,
    ProviderState.throttled: 0.25,
    ProviderState.offline: 0.0,
}


@dataclass(frozen=True)
class MemoryReading:
    usage_percent: Optional[float]
    healthy: Optional[bool]

    def to_dict(self) -> Dict[str, object]:
        return {"usage_percent": self.usage_percent, "healthy": self.healthy}


@dataclass(frozen=True)
class HealthInputs:
    provider_states: Mapping[str, ProviderState] = field(default_factory=dict)
    memory_usage_percent: Optional[float] = None
    memory_threshold_percent: float = 90.0
    api_keys_present: Mapping[str, bool] = field(default_factory=dict)
    filesystem_ready: bool = False
    timestamp: float = 0.0


@dataclass(frozen=True)
class HealthSnapshot:
    overall_status: str
    memory: MemoryReading
    api_keys_present: Dict[str, bool]
    filesystem_ready: bool
    provider_scores: Dict[str, float]
    composite_score: int
    providers: Dict[str, str]
    timestamp: float


def _memory_points(inputs: HealthInputs) -> tuple[float, MemoryReading]:
    usage = inputs.memory_usage_percent
    if usage is None:
        return MEMORY_WEIGHT / 2, MemoryReading(usage_percent=None, healthy=None)
    healthy = usage <= inputs.memory_threshold_percent
    return (MEMORY_WEIGHT if healthy else 0.0), MemoryReading(usage_percent=round(usage, 2), healthy=healthy)


def _status_for(score: int) -> str:
    if score >= HEALTHY_CUTOFF:
        return "healthy"
    if score >= DEGRADED_CUTOFF:
        return "degraded"
    return "critical"


def compute_snapshot(inputs: HealthInputs) -> HealthSnapshot:
    """Deterministic: identical inputs always give an identical snapshot."""
    memory_points, memory = _memory_points(inputs)

    keys = dict(sorted(inputs.api_keys_present.items()))
    required = len(keys)
    with_keys = sum(1 for v in keys.values() if v)
    credential_points = CREDENTIALS_WEIGHT * (with_keys / required) if required else 0.0

    filesystem_points = FILESYSTEM_WEIGHT if inputs.filesystem_ready else 0.0

    states = dict(sorted(inputs.provider_states.items()))
    provider_scores: Dict[str, float] = {}
    if states:
        share = PROVIDERS_WEIGHT / len(states)
        for name, state in states.items():
            provider_scores[name] = round(share * STATE_FACTORS.get(ProviderState(state), 0.0), 4)

    total = memory_points + credential_points + filesystem_points + sum(provider_scores.values())
    composite = int(round(min(100.0, max(0.0, total))))

    return HealthSnapshot(
        overall_status=_status_for(composite),
        memory=memory,
        api_keys_present={**keys, "all": required > 0 and with_keys == required},
        filesystem_ready=bool(inputs.filesystem_ready),
        provider_scores=provider_scores,
        composite_score=composite,
        providers={name: ProviderState(state).value for name, state in states.items()},
        timestamp=inputs.timestamp,
    )


def snapshot_to_dict(snapshot: HealthSnapshot) -> Dict[str, object]:
    return {
        "overall_status": snapshot.overall_status,
        "composite_score": snapshot.composite_score,
        "memory": snapshot.memory.to_dict(),
        "api_keys_present": dict(snapshot.api_keys_present),
        "filesystem_ready": snapshot.filesystem_ready,
        "provider_scores": dict(snapshot.provider_scores),
        "providers": dict(snapshot.providers),
        "timestamp": snapshot.timestamp,
    }


def read_memory_percent(limit_mb: Optional[int] = None) -> Optional[float]:
    """Process RSS against `limit_mb` when given, else system memory usage. None if unreadable."""
    try:
        if limit_mb:
            rss = psutil.Process(os.getpid()).memory_info().rss
            return rss / (limit_mb * 1024 * 1024) * 100.0
        return float(psutil.virtual_memory().percent)
    except (psutil.Error, OSError) as e:
        logger.warning("[health] memory reading unavailable: %s", e)
        return None


def dirs_writable(paths: Iterable[Path]) -> bool:
    try:
        for p in paths:
            p = Path(p)
            p.mkdir(parents=True, exist_ok=True)
            if not os.access(p, os.W_OK):
                return False
        return True
    except OSError as e:
        logger.warning("[health] filesystem check failed: %s", e)
        return False


class HealthAggregator:
    """Collects live inputs and computes a snapshot. Never raises."""

    def __init__(
        self,
        registry: ProviderStatusRegistry,
        providers: List[str],
        credential_check: Callable[[str], bool],
        writable_dirs: Iterable[Path] = (),
        memory_threshold_percent: float = 90.0,
        memory_limit_mb: Optional[int] = None,
        memory_reader: Optional[Callable[[], Optional[float]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.providers = list(providers)
        self.credential_check = credential_check
        self.writable_dirs = [Path(p) for p in writable_dirs]
        self.memory_threshold_percent = memory_threshold_percent
        self._memory_reader = memory_reader or (lambda: read_memory_percent(memory_limit_mb))
        self._clock = clock

    def gather_inputs(self) -> HealthInputs:
        states = {name: self.registry.get_status(name).state for name in self.providers}
        keys: Dict[str, bool] = {}
        for name in self.providers:
            try:
                keys[name] = bool(self.credential_check(name))
            except Exception as e:
                logger.warning("[health] credential check failed for %s: %s", name, e)
                keys[name] = False
        return HealthInputs(
            provider_states=states,
            memory_usage_percent=self._memory_reader(),
            memory_threshold_percent=self.memory_threshold_percent,
            api_keys_present=keys,
            filesystem_ready=dirs_writable(self.writable_dirs) if self.writable_dirs else False,
            timestamp=self._clock(),
        )

    def collect(self) -> HealthSnapshot:
        snapshot = compute_snapshot(self.gather_inputs())
        logger.debug("[health] score=%s status=%s", snapshot.composite_score, snapshot.overall_status)
        return snapshot

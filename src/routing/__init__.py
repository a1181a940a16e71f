from src.routing.status_registry import (
    Outcome,
    ProviderState,
    ProviderStatus,
    ProviderStatusRegistry,
)
from src.routing.router import RouteResult, Router

__all__ = [
    "Outcome",
    "ProviderState",
    "ProviderStatus",
    "ProviderStatusRegistry",
    "RouteResult",
    "Router",
]

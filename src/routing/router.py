"""
Request router: picks the provider for a conversation, calls it, records the
outcome, and fails over once on a retryable error.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from src.errors import ProviderError, ProviderErrorKind, RoutingFailure
from src.log import get_logger
from src.observability import metrics, tracer
from src.routing.status_registry import Outcome, ProviderStatusRegistry

logger = get_logger(__name__)

DEFAULT_RESEARCH_KEYWORDS = (
    "research", "search", "find", "internet", "web", "recent", "news",
    "latest", "current", "information", "data", "statistics", "today",
    "this year", "this month", "what is", "who is", "where is", "when did",
    "how does", "why does", "what are", "definition of", "examples of",
)

DEFAULT_VISUALIZATION_KEYWORDS = (
    "chart", "graph", "plot", "visualization", "visualize", "diagram",
    "bar chart", "line chart", "pie chart", "histogram", "scatter plot",
    "show me data", "display data", "visualize data", "create a chart",
    "generate a graph", "draw a chart",
)

_CURRENT_INFO_PATTERNS = (
    re.compile(r"what('s| is) happening", re.IGNORECASE),
    re.compile(r"tell me about ([a-z\s]+) in (\d{4}|\d{4}-\d{2}|\d{4}-\d{2}-\d{2})", re.IGNORECASE),
)

SEARCH_UNAVAILABLE_NOTE = (
    "\n\nNote: I wanted to search the internet for this information, but the service is "
    "currently unavailable. Please provide the best answer you can with your existing knowledge."
)

_OUTCOME_FOR_KIND = {
    ProviderErrorKind.rate_limited: Outcome.rate_limited,
    ProviderErrorKind.server_error: Outcome.server_error,
    ProviderErrorKind.auth_error: Outcome.auth_error,
    ProviderErrorKind.other: Outcome.server_error,
}


@dataclass
class RouteResult:
    provider_used: str
    response: str
    citations: List[str] = field(default_factory=list)
    visualization: Optional[Dict[str, Any]] = None
    mode: str = "default"  # default | deep
    attempts: List[str] = field(default_factory=list)
    model: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_used": self.provider_used,
            "response": self.response,
            "citations": list(self.citations),
            "visualization": self.visualization,
            "mode": self.mode,
            "attempts": list(self.attempts),
            "model": self.model,
        }


def last_user_message(history: Sequence[Mapping[str, Any]]) -> Optional[str]:
    for msg in reversed(history):
        if msg.get("role") == "user":
            return str(msg.get("content") or "")
    return None


class Router:
    """
    Decision policy, in order:
      1. an explicit hint naming a non-offline provider wins
      2. visualization keywords -> conversational provider
      3. research keywords / current-info questions -> research provider
      4. otherwise the conversational provider
    An offline choice falls back to the other eligible provider. A retryable
    error fails over once; every attempted provider gets one recorded outcome.
    """

    def __init__(
        self,
        registry: ProviderStatusRegistry,
        clients: Mapping[str, Any],
        conversational: str = "claude",
        research: str = "perplexity",
        research_keywords: Optional[Sequence[str]] = None,
        visualization_keywords: Optional[Sequence[str]] = None,
    ):
        self.registry = registry
        self.clients = dict(clients)
        self.conversational = conversational
        self.research = research
        self.research_keywords = tuple(k.lower() for k in (research_keywords or DEFAULT_RESEARCH_KEYWORDS))
        self.visualization_keywords = tuple(k.lower() for k in (visualization_keywords or DEFAULT_VISUALIZATION_KEYWORDS))

    # ------------------------------------------------------------------
    # selection
    # ------------------------------------------------------------------

    def is_visualization_query(self, message: str) -> bool:
        text = message.lower()
        return any(k in text for k in self.visualization_keywords)

    def is_research_query(self, message: str) -> bool:
        text = message.lower()
        if any(k in text for k in self.research_keywords):
            return True
        return any(p.search(text) for p in _CURRENT_INFO_PATTERNS)

    def _preferred(self, message: str, hint: Optional[str]) -> str:
        if hint and hint in self.clients and self.registry.is_eligible(hint):
            return hint
        if hint and hint not in self.clients:
            logger.warning("[router] unknown provider hint %r ignored", hint)
        if self.is_visualization_query(message):
            return self.conversational
        if self.is_research_query(message):
            return self.research
        return self.conversational

    def _alternative(self, provider: str) -> Optional[str]:
        for name in [self.conversational, self.research, *self.clients]:
            if name != provider and name in self.clients and self.registry.is_eligible(name):
                return name
        return None

    def select(self, message: str, hint: Optional[str] = None) -> str:
        """Provider that would serve `message`; raises RoutingFailure if none is eligible."""
        chosen = self._preferred(message, hint)
        if self.registry.is_eligible(chosen):
            return chosen
        fallback = self._alternative(chosen)
        if fallback is None:
            raise RoutingFailure("No eligible provider available", attempts=[])
        logger.info("[router] %s is offline, using %s", chosen, fallback)
        return fallback

    # ------------------------------------------------------------------
    # invocation
    # ------------------------------------------------------------------

    def _attempt(self, provider: str, history: List[Dict[str, Any]], options: Dict[str, Any]):
        client = self.clients[provider]
        with tracer.start_as_current_span("router.provider_call", attributes={"provider": provider}):
            try:
                resp = client.invoke(history, options)
            except ProviderError as e:
                outcome = _OUTCOME_FOR_KIND.get(e.kind, Outcome.server_error)
                self.registry.record_outcome(provider, outcome, error=str(e))
                metrics.provider_requests_total.labels(provider=provider, outcome=outcome.value).inc()
                raise
        self.registry.record_outcome(provider, Outcome.success, model_version=resp.model or None)
        metrics.provider_requests_total.labels(provider=provider, outcome=Outcome.success.value).inc()
        return resp

    def _with_failover_note(self, history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out = [dict(m) for m in history]
        for msg in reversed(out):
            if msg.get("role") == "user":
                msg["content"] = f"{msg.get('content') or ''}{SEARCH_UNAVAILABLE_NOTE}"
                break
        return out

    def route(
        self,
        conversation_history: Sequence[Mapping[str, Any]],
        explicit_provider_hint: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> RouteResult:
        options = dict(options or {})
        history = [dict(m) for m in conversation_history or []]
        message = last_user_message(history)
        if not history or message is None:
            raise RoutingFailure("Conversation history must contain a user message", attempts=[])

        if options.pop("confirm_deep_research", False):
            return RouteResult(
                provider_used=self.research,
                response="Deep research mode activated. This will take some time.",
                mode="deep",
            )

        provider = self.select(message, explicit_provider_hint)
        attempts: List[str] = []
        errors: List[ProviderError] = []

        while True:
            attempts.append(provider)
            try:
                resp = self._attempt(provider, history, options)
            except ProviderError as e:
                errors.append(e)
                logger.warning("[router] %s failed (%s): %s", provider, e.kind.value, e)
                fallback = self._alternative(provider) if e.retryable and len(attempts) < 2 else None
                if fallback is None:
                    raise RoutingFailure(
                        f"All provider attempts failed: {', '.join(attempts)}",
                        attempts=attempts,
                        errors=errors,
                    ) from e
                metrics.provider_failovers_total.labels(from_provider=provider, to_provider=fallback).inc()
                logger.info("[router] failing over %s -> %s", provider, fallback)
                if provider == self.research and fallback == self.conversational:
                    history = self._with_failover_note(history)
                # provider-specific model names do not carry over
                options.pop("model", None)
                provider = fallback
                continue

            return RouteResult(
                provider_used=provider,
                response=resp.text,
                citations=list(resp.citations),
                visualization=resp.visualization,
                attempts=attempts,
                model=resp.model,
            )

"""
Provider clients.

One HTTP client per upstream protocol, all exposing
    invoke(messages, options) -> ProviderResponse
and raising ProviderError with a classified kind on failure.

Clients never retry; failover is the router's job.
"""

from __future__ import annotations

import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from config.settings import settings
from src.errors import ProviderError, ProviderErrorKind
from src.log import get_logger
from src.observability import metrics

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

# Options consumed by the router/pipeline, never forwarded as request params
_RESERVED_OPTIONS = {
    "model",
    "deep",
    "timeout",
    "priority",
    "generate_clarifying_questions",
    "clarification_answers",
    "confirm_deep_research",
}

_JSON_BLOCK_RE = re.compile(r"```json\n([\s\S]*?)\n```")


@dataclass
class ProviderConfig:
    name: str
    api_key: str
    base_url: str
    default_model: str
    deep_model: str = ""
    protocol: str = "openai"  # openai | anthropic
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        return bool((self.api_key or "").strip())

    @classmethod
    def from_settings(cls, name: str) -> "ProviderConfig":
        raw = settings.llm.get_provider(name)
        return cls(
            name=name,
            api_key=raw["api_key"],
            base_url=raw["base_url"],
            default_model=raw["default_model"],
            deep_model=raw.get("deep_model") or "",
            protocol=raw.get("protocol") or "openai",
            params=dict(raw.get("params") or {}),
        )


@dataclass
class ProviderResponse:
    text: str
    citations: List[str] = field(default_factory=list)
    visualization: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    model: str = ""


def classify_status(status_code: Optional[int]) -> ProviderErrorKind:
    """429 -> rate_limited, 5xx -> server_error, 401/403 -> auth_error, else other."""
    if status_code == 429:
        return ProviderErrorKind.rate_limited
    if status_code is not None and 500 <= status_code < 600:
        return ProviderErrorKind.server_error
    if status_code in (401, 403):
        return ProviderErrorKind.auth_error
    return ProviderErrorKind.other


def extract_visualization(text: str) -> tuple[str, Optional[Dict[str, Any]]]:
    """Pull a fenced ```json block out of the reply as visualization data."""
    match = _JSON_BLOCK_RE.search(text or "")
    if not match:
        return text, None
    try:
        data = json.loads(match.group(1))
    except ValueError as e:
        logger.debug("[providers] visualization block is not valid JSON: %s", e)
        return text, None
    return _JSON_BLOCK_RE.sub("", text, count=1).strip(), data


class ProviderClient(ABC):
    """Base class: owns a requests.Session and the error classification."""

    def __init__(self, config: ProviderConfig, timeout: Optional[int] = None):
        self.config = config
        self.name = config.name
        self.timeout = int(timeout or settings.llm.timeout_seconds)
        self._session = requests.Session()

    def resolve_model(self, options: Dict[str, Any]) -> str:
        if options.get("model"):
            return str(options["model"])
        if options.get("deep") and self.config.deep_model:
            return self.config.deep_model
        return self.config.default_model

    def _extra_params(self, options: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(self.config.params)
        params.update({k: v for k, v in options.items() if k not in _RESERVED_OPTIONS})
        return params

    def _post(self, url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            resp = self._session.post(url, headers=headers, json=payload, timeout=timeout)
        except requests.exceptions.Timeout as e:
            raise ProviderError(f"{self.name} timed out after {timeout}s", ProviderErrorKind.server_error, self.name) from e
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"{self.name} connection failed: {e}", ProviderErrorKind.server_error, self.name) from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{self.name} request failed: {e}", ProviderErrorKind.other, self.name) from e
        finally:
            metrics.provider_duration_seconds.labels(provider=self.name).observe(time.perf_counter() - start)

        if resp.status_code >= 400:
            body = (resp.text or "")[:300]
            raise ProviderError(
                f"{self.name} returned HTTP {resp.status_code}: {body}",
                classify_status(resp.status_code),
                self.name,
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned a non-JSON body", ProviderErrorKind.other, self.name, resp.status_code) from e

    def invoke(self, messages: List[Dict[str, Any]], options: Optional[Dict[str, Any]] = None) -> ProviderResponse:
        if not self.config.has_credentials:
            raise ProviderError(f"{self.name} API key not configured", ProviderErrorKind.auth_error, self.name)
        return self._invoke(messages, dict(options or {}))

    @abstractmethod
    def _invoke(self, messages: List[Dict[str, Any]], options: Dict[str, Any]) -> ProviderResponse:
        raise NotImplementedError


class AnthropicClient(ProviderClient):
    """Anthropic Messages API (`/v1/messages`)."""

    SYSTEM_PROMPT = (
        "You are a helpful research assistant. Identify yourself accurately "
        "if asked about your model name or version."
    )

    def _invoke(self, messages: List[Dict[str, Any]], options: Dict[str, Any]) -> ProviderResponse:
        model = self.resolve_model(options)
        system_parts = [m["content"] for m in messages if m.get("role") == "system" and m.get("content")]
        chat = [
            {"role": "user" if m.get("role") == "user" else "assistant", "content": str(m.get("content") or "")}
            for m in messages
            if m.get("role") != "system"
        ]
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": int(options.get("max_tokens") or settings.llm.max_tokens),
            "system": "\n\n".join(system_parts) or self.SYSTEM_PROMPT,
            "messages": chat,
        }
        payload.update({k: v for k, v in self._extra_params(options).items() if k != "max_tokens"})

        raw = self._post(
            f"{self.config.base_url.rstrip('/')}/v1/messages",
            {
                "Content-Type": "application/json",
                "x-api-key": self.config.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            payload,
            float(options.get("timeout") or self.timeout),
        )
        text = "".join(
            block.get("text", "")
            for block in raw.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        text, visualization = extract_visualization(text)
        return ProviderResponse(text=text.strip(), visualization=visualization, raw=raw, model=raw.get("model") or model)


class PerplexityClient(ProviderClient):
    """OpenAI-compatible `/chat/completions` with top-level `citations`."""

    SYSTEM_PROMPT = (
        "You are a research assistant with real-time internet access. Search the web "
        "for current information before responding and cite every source."
    )

    @staticmethod
    def _normalize_messages(messages: List[Dict[str, Any]], system_prompt: str) -> List[Dict[str, str]]:
        """System first, then strictly alternating user/assistant, ending on user."""
        system_parts = [str(m["content"]) for m in messages if m.get("role") == "system" and m.get("content")]
        merged: List[Dict[str, str]] = []
        for m in messages:
            role = m.get("role")
            if role == "system":
                continue
            role = "user" if role == "user" else "assistant"
            content = str(m.get("content") or "")
            if merged and merged[-1]["role"] == role:
                merged[-1]["content"] += "\n\n" + content
            else:
                merged.append({"role": role, "content": content})
        while merged and merged[0]["role"] != "user":
            merged.pop(0)
        while merged and merged[-1]["role"] != "user":
            merged.pop()
        return [{"role": "system", "content": "\n\n".join(system_parts) or system_prompt}] + merged

    def _invoke(self, messages: List[Dict[str, Any]], options: Dict[str, Any]) -> ProviderResponse:
        model = self.resolve_model(options)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": self._normalize_messages(messages, self.SYSTEM_PROMPT),
        }
        payload.update(self._extra_params(options))

        raw = self._post(
            f"{self.config.base_url.rstrip('/')}/chat/completions",
            {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.config.api_key}",
            },
            payload,
            float(options.get("timeout") or self.timeout),
        )
        choices = raw.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else ""
        if isinstance(content, list):
            content = "".join(b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text")
        citations = [str(c) for c in raw.get("citations") or []]
        if not citations:
            logger.warning("[providers] %s returned no citations (model=%s)", self.name, model)
        return ProviderResponse(text=(content or "").strip(), citations=citations, raw=raw, model=raw.get("model") or model)


class DryRunClient(ProviderClient):
    """Returns canned text without network I/O."""

    def invoke(self, messages: List[Dict[str, Any]], options: Optional[Dict[str, Any]] = None) -> ProviderResponse:
        return self._invoke(messages, dict(options or {}))

    def _invoke(self, messages: List[Dict[str, Any]], options: Dict[str, Any]) -> ProviderResponse:
        model = self.resolve_model(options)
        last_user = next((m.get("content", "") for m in reversed(messages) if m.get("role") == "user"), "")
        return ProviderResponse(
            text=f"[DRY_RUN] provider={self.name}, model={model}: {str(last_user)[:80]}",
            citations=["https://example.com/dry-run"] if self.config.protocol == "openai" else [],
            raw={"dry_run": True, "messages_count": len(messages)},
            model=model,
        )


def build_client(config: ProviderConfig, dry_run: Optional[bool] = None) -> ProviderClient:
    dry_run = settings.llm.dry_run if dry_run is None else dry_run
    if dry_run:
        return DryRunClient(config)
    if config.protocol == "anthropic":
        return AnthropicClient(config)
    return PerplexityClient(config)


def build_clients(names: Optional[List[str]] = None, dry_run: Optional[bool] = None) -> Dict[str, ProviderClient]:
    clients: Dict[str, ProviderClient] = {}
    for name in names or settings.llm.provider_names:
        clients[name] = build_client(ProviderConfig.from_settings(name), dry_run=dry_run)
    logger.info("[providers] built clients: %s (dry_run=%s)", ", ".join(clients), settings.llm.dry_run if dry_run is None else dry_run)
    return clients

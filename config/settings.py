"""
Unified settings module
- Config file: config/app_config.json (tunable parameters)
- Local override: config/app_config.local.json (private, not committed)
- Environment variables take precedence for sensitive values (API keys etc.)
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent / "app_config.json"
_LOCAL_CONFIG_PATH = Path(__file__).parent / "app_config.local.json"


def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


_RAW_CONFIG: Dict[str, Any] = _load_json(_CONFIG_PATH)
if _LOCAL_CONFIG_PATH.exists():
    _RAW_CONFIG = _deep_merge(_RAW_CONFIG, _load_json(_LOCAL_CONFIG_PATH))


def _section(name: str) -> Dict[str, Any]:
    return _RAW_CONFIG.get(name) or {}


# Legacy env var names per provider
_LLM_ENV_KEYS = {
    "claude": "ANTHROPIC_API_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
}

# Fallback base_url / models when the config file leaves them empty
_LLM_DEFAULTS = {
    "claude": {
        "base_url": "https://api.anthropic.com",
        "default_model": "claude-3-7-sonnet-20250219",
        "protocol": "anthropic",
    },
    "perplexity": {
        "base_url": "https://api.perplexity.ai",
        "default_model": "sonar",
        "deep_model": "sonar-deep-research",
        "protocol": "openai",
    },
}


class LLMSettings:
    """
    Provider configuration. `llm.providers` in app_config.json may carry
    api_key / base_url / default_model / deep_model / params per provider.
    API keys are overridden by APP_LLM__{PROVIDER}__API_KEY, then by the
    legacy names (ANTHROPIC_API_KEY, PERPLEXITY_API_KEY).
    """

    def __init__(self):
        cfg = _section("llm")
        self.conversational: str = os.getenv("CONVERSATIONAL_PROVIDER") or cfg.get("conversational") or "claude"
        self.research: str = os.getenv("RESEARCH_PROVIDER") or cfg.get("research") or "perplexity"
        self.dry_run: bool = (
            os.getenv("LLM_DRY_RUN", "").lower() == "true" or cfg.get("dry_run") is True
        )
        self.timeout_seconds: int = int(os.getenv("LLM_TIMEOUT_SECONDS") or cfg.get("timeout_seconds", 60))
        self.max_tokens: int = int(cfg.get("max_tokens", 4000))

    @property
    def provider_names(self) -> List[str]:
        names = [self.conversational, self.research]
        for extra in (_section("llm").get("providers") or {}).keys():
            if extra not in names:
                names.append(extra)
        return names

    def get_provider(self, name: str) -> Dict[str, Any]:
        raw = (_section("llm").get("providers") or {}).get(name) or {}
        defaults = _LLM_DEFAULTS.get(name) or {}

        normalized = name.upper().replace("-", "_")
        api_key = os.getenv(f"APP_LLM__{normalized}__API_KEY")
        if not api_key:
            legacy_key = _LLM_ENV_KEYS.get(name)
            api_key = os.getenv(legacy_key) if legacy_key else None
        api_key = api_key or raw.get("api_key") or ""
        return {
            "api_key": api_key,
            "base_url": raw.get("base_url") or defaults.get("base_url") or "",
            "default_model": raw.get("default_model") or defaults.get("default_model") or "",
            "deep_model": raw.get("deep_model") or defaults.get("deep_model") or "",
            "protocol": raw.get("protocol") or defaults.get("protocol") or "openai",
            "params": raw.get("params") or {},
        }

    def is_available(self, name: str) -> bool:
        """True when the provider has a non-empty api_key."""
        return bool((self.get_provider(name).get("api_key") or "").strip())


@dataclass
class RoutingSettings:
    """Router / provider status registry."""
    recovery_success_threshold: int = 3
    research_keywords: List[str] = field(default_factory=list)
    visualization_keywords: List[str] = field(default_factory=list)


@dataclass
class TaskSettings:
    """Durable queue + background worker."""
    backend: str = "redis"  # redis | memory
    redis_url: str = "redis://localhost:6379/0"
    stream_prefix: str = "app:research"
    consumer_group: str = "research-workers"
    queue_max_len: int = 1000
    worker_concurrency: int = 2
    poll_interval_seconds: float = 2.0
    redelivery_idle_seconds: int = 600
    max_deliveries: int = 3


@dataclass
class ResearchSettings:
    """Deep research pipeline limits."""
    max_query_chars: int = 4000
    max_research_seconds: int = 300
    default_priority: str = "normal"


@dataclass
class HealthSettings:
    memory_threshold_percent: float = 90.0
    memory_limit_mb: Optional[int] = None


@dataclass
class RealtimeSettings:
    reconnect_grace_seconds: float = 60.0
    idle_timeout_seconds: float = 1800.0
    sweep_interval_seconds: float = 60.0


@dataclass
class ApiSettings:
    host: str = os.getenv("API_HOST", "127.0.0.1")
    port: int = int(os.getenv("API_PORT", "5000"))
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class PathSettings:
    base: Path = field(default_factory=lambda: Path(__file__).parent.parent)

    @property
    def data(self) -> Path:
        return self.base / "data"

    @property
    def logs(self) -> Path:
        return self.base / "logs"

    def ensure_dirs(self):
        for p in [self.data, self.logs]:
            p.mkdir(parents=True, exist_ok=True)


class Settings:
    def __init__(self):
        self.env = os.getenv("APP_ENV", "dev")
        self.llm = LLMSettings()

        r = _section("routing")
        self.routing = RoutingSettings(
            recovery_success_threshold=max(1, int(r.get("recovery_success_threshold", 3))),
            research_keywords=list(r.get("research_keywords") or []),
            visualization_keywords=list(r.get("visualization_keywords") or []),
        )

        t = _section("tasks")
        self.tasks = TaskSettings(
            backend=(os.getenv("TASK_BACKEND") or t.get("backend") or "redis").strip().lower(),
            redis_url=os.getenv("REDIS_URL") or t.get("redis_url") or "redis://localhost:6379/0",
            stream_prefix=str(t.get("stream_prefix", "app:research")),
            consumer_group=str(t.get("consumer_group", "research-workers")),
            queue_max_len=int(t.get("queue_max_len", 1000)),
            worker_concurrency=max(1, int(t.get("worker_concurrency", 2))),
            poll_interval_seconds=float(t.get("poll_interval_seconds", 2.0)),
            redelivery_idle_seconds=int(t.get("redelivery_idle_seconds", 600)),
            max_deliveries=max(1, int(t.get("max_deliveries", 3))),
        )

        rs = _section("research")
        self.research = ResearchSettings(
            max_query_chars=int(rs.get("max_query_chars", 4000)),
            max_research_seconds=int(rs.get("max_research_seconds", 300)),
            default_priority=str(rs.get("default_priority", "normal")),
        )

        h = _section("health")
        limit = os.getenv("HEALTH_MEMORY_LIMIT_MB") or h.get("memory_limit_mb")
        self.health = HealthSettings(
            memory_threshold_percent=float(h.get("memory_threshold_percent", 90.0)),
            memory_limit_mb=int(limit) if limit else None,
        )

        rt = _section("realtime")
        self.realtime = RealtimeSettings(
            reconnect_grace_seconds=float(rt.get("reconnect_grace_seconds", 60)),
            idle_timeout_seconds=float(rt.get("idle_timeout_seconds", 1800)),
            sweep_interval_seconds=float(rt.get("sweep_interval_seconds", 60)),
        )

        a = _section("api")
        origins = a.get("cors_origins") or ["*"]
        if isinstance(origins, str):
            origins = [x.strip() for x in origins.split(",") if x.strip()]
        self.api = ApiSettings(
            host=str(a.get("host", os.getenv("API_HOST", "127.0.0.1"))),
            port=int(a.get("port", os.getenv("API_PORT", "5000"))),
            cors_origins=origins,
        )
        self.path = PathSettings()

    @property
    def is_prod(self) -> bool:
        return self.env == "prod"

    def print_info(self):
        keys = ", ".join(
            f"{name}={'yes' if self.llm.is_available(name) else 'no'}" for name in self.llm.provider_names
        )
        print(f"""
========================================
  Research Router
========================================
  env: {self.env}
  providers: {keys}
  conversational: {self.llm.conversational}
  research: {self.llm.research}
  queue backend: {self.tasks.backend}
  dry_run: {self.llm.dry_run}
========================================
        """)


# Global singleton
settings = Settings()

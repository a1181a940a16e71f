"""
Shared fixtures: fake provider clients, temp SQLite database, in-process queue, service container.
"""

import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# settings are read at import time
os.environ.setdefault("TASK_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from src.errors import ProviderError, ProviderErrorKind  # noqa: E402
from src.llm.providers import ProviderResponse  # noqa: E402


class FakeClient:
    """Provider client double: pops scripted replies, records every call."""

    def __init__(self, name, replies=None, model=None, citations=None):
        self.name = name
        self.replies = list(replies or [])
        self.model = model or f"{name}-test-model"
        self.citations = list(citations or [])
        self.calls = []

    def invoke(self, messages, options=None):
        self.calls.append({"messages": [dict(m) for m in messages], "options": dict(options or {})})
        reply = self.replies.pop(0) if self.replies else f"reply from {self.name}"
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ProviderResponse):
            return reply
        return ProviderResponse(text=reply, citations=list(self.citations), model=self.model)


def provider_error(name, kind, status_code=None):
    kind = ProviderErrorKind(kind)
    return ProviderError(f"{name} {kind.value}", kind, name, status_code=status_code)


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    from src.db.engine import init_db, reset_engine

    monkeypatch.setenv("APP_DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    reset_engine()
    init_db()
    yield
    reset_engine()


@pytest.fixture
def fake_clients():
    return {
        "claude": FakeClient("claude"),
        "perplexity": FakeClient("perplexity", citations=["https://example.com/source"]),
    }


@pytest.fixture
def registry(clock):
    from src.routing.status_registry import ProviderStatusRegistry

    reg = ProviderStatusRegistry(recovery_threshold=3, clock=clock)
    reg.register("claude", credential_present=True, model_version="claude-test-model")
    reg.register("perplexity", credential_present=True, model_version="sonar")
    return reg


@pytest.fixture
def router(registry, fake_clients):
    from src.routing.router import Router

    return Router(registry, fake_clients, conversational="claude", research="perplexity")


@pytest.fixture
def memory_queue(clock):
    from src.tasks.queue import MemoryQueue

    return MemoryQueue(redelivery_idle_seconds=600, clock=clock)


@pytest.fixture
def services(db, fake_clients, memory_queue):
    """Service container wired with fake providers and the memory queue."""
    from src.api.deps import build_services, set_services

    svc = build_services(
        clients=fake_clients,
        queue=memory_queue,
        credential_check=lambda name: True,
        memory_reader=lambda: 40.0,
    )
    svc.worker.poll_interval = 0.05
    set_services(svc)
    yield svc
    set_services(None)

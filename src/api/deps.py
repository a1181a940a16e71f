"""
Service container: one long-lived instance of each core component, wired together.

Routes reach components through get_services(); tests install their own
container with set_services().
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from config.settings import settings
from src.health.aggregator import HealthAggregator
from src.llm.providers import build_clients
from src.log import get_logger
from src.observability import metrics
from src.realtime.channel import StatusChannel
from src.research.orchestrator import JobOrchestrator
from src.research.pipeline import ResearchPipeline
from src.routing.router import Router
from src.routing.status_registry import ProviderState, ProviderStatusRegistry
from src.tasks.queue import build_queue
from src.tasks.worker import ResearchWorker

logger = get_logger(__name__)


@dataclass
class Services:
    registry: ProviderStatusRegistry
    clients: Dict[str, Any]
    router: Router
    health: HealthAggregator
    channel: StatusChannel
    queue: Any
    orchestrator: JobOrchestrator
    worker: ResearchWorker


def build_services(
    clients: Optional[Mapping[str, Any]] = None,
    queue: Any = None,
    credential_check: Optional[Callable[[str], bool]] = None,
    memory_reader: Optional[Callable[[], Optional[float]]] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    names = settings.llm.provider_names
    credential_check = credential_check or settings.llm.is_available

    if clients is None:
        clients = build_clients(names)
    else:
        names = list(clients)

    registry = ProviderStatusRegistry(settings.routing.recovery_success_threshold, clock=clock)
    for name in names:
        cfg = settings.llm.get_provider(name)
        present = bool(credential_check(name)) or settings.llm.dry_run
        registry.register(name, credential_present=present, model_version=cfg.get("default_model", ""))

    router = Router(
        registry,
        clients,
        conversational=settings.llm.conversational,
        research=settings.llm.research,
        research_keywords=settings.routing.research_keywords or None,
        visualization_keywords=settings.routing.visualization_keywords or None,
    )

    health = HealthAggregator(
        registry,
        providers=names,
        credential_check=credential_check,
        writable_dirs=[settings.path.data, settings.path.logs],
        memory_threshold_percent=settings.health.memory_threshold_percent,
        memory_limit_mb=settings.health.memory_limit_mb,
        memory_reader=memory_reader,
        clock=clock,
    )

    channel = StatusChannel(
        health=health.collect,
        reconnect_grace_seconds=settings.realtime.reconnect_grace_seconds,
        idle_timeout_seconds=settings.realtime.idle_timeout_seconds,
        clock=clock,
    )

    def _on_state_change(name: str, old: ProviderState, new: ProviderState) -> None:
        metrics.provider_state_changes_total.labels(provider=name, state=new.value).inc()
        channel.publish_threadsafe(channel.status_message())

    registry.add_listener(_on_state_change)

    queue = queue if queue is not None else build_queue()
    pipeline = ResearchPipeline(router, max_research_seconds=settings.research.max_research_seconds)
    orchestrator = JobOrchestrator(
        pipeline,
        queue,
        publish=channel.publish_threadsafe,
        max_query_chars=settings.research.max_query_chars,
        default_priority=settings.research.default_priority,
        max_deliveries=settings.tasks.max_deliveries,
    )
    worker = ResearchWorker(queue, orchestrator.process)

    logger.info("[services] ready: providers=%s queue=%s", ",".join(names), type(queue).__name__)
    return Services(
        registry=registry,
        clients=dict(clients),
        router=router,
        health=health,
        channel=channel,
        queue=queue,
        orchestrator=orchestrator,
        worker=worker,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services

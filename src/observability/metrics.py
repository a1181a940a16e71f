"""
Prometheus metrics.

All custom metrics live here; modules use `from src.observability import metrics`.
"""

from prometheus_client import Counter, Histogram, Gauge, Info


class _Metrics:
    """Holds every Prometheus metric of the service."""

    def __init__(self):
        # ── HTTP ──
        self.http_requests_total = Counter(
            "router_http_requests_total",
            "HTTP requests",
            ["method", "endpoint", "status_code"],
        )
        self.http_request_duration_seconds = Histogram(
            "router_http_request_duration_seconds",
            "HTTP request latency (seconds)",
            ["method", "endpoint"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ── Providers ──
        self.provider_requests_total = Counter(
            "router_provider_requests_total",
            "Provider calls by outcome",
            ["provider", "outcome"],  # success / rate_limited / server_error / auth_error
        )
        self.provider_duration_seconds = Histogram(
            "router_provider_duration_seconds",
            "Provider call latency (seconds)",
            ["provider"],
            buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
        )
        self.provider_failovers_total = Counter(
            "router_provider_failovers_total",
            "Failovers from one provider to another",
            ["from_provider", "to_provider"],
        )
        self.provider_state_changes_total = Counter(
            "router_provider_state_changes_total",
            "Provider state transitions",
            ["provider", "state"],
        )

        # ── Research jobs ──
        self.research_jobs_total = Counter(
            "router_research_jobs_total",
            "Research jobs by terminal or entry status",
            ["status"],  # queued / completed / failed
        )
        self.research_job_duration_seconds = Histogram(
            "router_research_job_duration_seconds",
            "Research job processing time (seconds)",
            buckets=(5, 10, 30, 60, 120, 300, 600),
        )
        self.task_queue_pending_count = Gauge(
            "router_task_queue_pending_count",
            "Units delivered but not yet acknowledged",
        )

        # ── Realtime ──
        self.realtime_sessions = Gauge(
            "router_realtime_sessions",
            "Live realtime sessions",
        )
        self.realtime_broadcasts_total = Counter(
            "router_realtime_broadcasts_total",
            "Broadcast messages by type",
            ["type"],
        )
        self.realtime_send_errors_total = Counter(
            "router_realtime_send_errors_total",
            "Failed deliveries to a session",
        )

        # ── System ──
        self.health_score = Gauge(
            "router_health_score",
            "Composite health score (0-100)",
        )
        self.app_info = Info(
            "router_app",
            "Application info",
        )


metrics = _Metrics()

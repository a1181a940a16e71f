"""
Tests for composite health scoring.
"""

import itertools

import pytest

from src.health.aggregator import (
    HealthAggregator,
    HealthInputs,
    compute_snapshot,
    snapshot_to_dict,
)
from src.routing.status_registry import STATE_ORDER, Outcome, ProviderState


def _inputs(**overrides):
    base = dict(
        provider_states={"claude": ProviderState.connected, "perplexity": ProviderState.connected},
        memory_usage_percent=40.0,
        memory_threshold_percent=90.0,
        api_keys_present={"claude": True, "perplexity": True},
        filesystem_ready=True,
        timestamp=123.0,
    )
    base.update(overrides)
    return HealthInputs(**base)


def test_everything_healthy_scores_100():
    snap = compute_snapshot(_inputs())
    assert snap.composite_score == 100
    assert snap.overall_status == "healthy"
    assert snap.provider_scores == {"claude": 25.0, "perplexity": 25.0}
    assert snap.api_keys_present["all"] is True


def test_snapshot_is_deterministic():
    inputs = _inputs(provider_states={"perplexity": ProviderState.degraded, "claude": ProviderState.recovering})
    assert compute_snapshot(inputs) == compute_snapshot(inputs)
    assert snapshot_to_dict(compute_snapshot(inputs)) == snapshot_to_dict(compute_snapshot(inputs))


def test_all_offline_is_critical():
    snap = compute_snapshot(_inputs(
        provider_states={"claude": ProviderState.offline, "perplexity": ProviderState.offline},
        api_keys_present={"claude": False, "perplexity": False},
    ))
    # memory 25 + filesystem 5
    assert snap.composite_score == 30
    assert snap.overall_status == "critical"
    assert snap.api_keys_present["all"] is False


def test_one_provider_degraded_is_still_healthy():
    snap = compute_snapshot(_inputs(provider_states={"claude": ProviderState.connected, "perplexity": ProviderState.degraded}))
    assert snap.composite_score == 88
    assert snap.overall_status == "healthy"


def test_cut_points():
    # 25 + 20 + 5 + 0 = 50 -> degraded
    snap = compute_snapshot(_inputs(provider_states={"claude": ProviderState.offline, "perplexity": ProviderState.offline}))
    assert snap.composite_score == 50
    assert snap.overall_status == "degraded"
    # 0 + 20 + 5 + 25*0.25*2 = 37.5 -> 38 -> critical
    snap = compute_snapshot(_inputs(
        memory_usage_percent=95.0,
        provider_states={"claude": ProviderState.throttled, "perplexity": ProviderState.throttled},
    ))
    assert snap.composite_score == 38
    assert snap.overall_status == "critical"


def test_memory_unhealthy_and_unavailable():
    unhealthy = compute_snapshot(_inputs(memory_usage_percent=91.0))
    assert unhealthy.memory.healthy is False
    assert unhealthy.composite_score == 75

    unknown = compute_snapshot(_inputs(memory_usage_percent=None))
    assert unknown.memory.healthy is None
    assert unknown.composite_score == round(87.5)


def test_missing_inputs_never_raise():
    snap = compute_snapshot(HealthInputs())
    assert snap.composite_score == round(12.5)
    assert snap.overall_status == "critical"
    assert snap.provider_scores == {}


def test_score_monotonic_in_single_provider_state():
    for other in STATE_ORDER:
        scores = [
            compute_snapshot(_inputs(provider_states={"claude": state, "perplexity": other})).composite_score
            for state in STATE_ORDER
        ]
        assert scores == sorted(scores)


@pytest.mark.parametrize("memory,fs", list(itertools.product([None, 10.0, 99.0], [True, False])))
def test_monotonic_under_other_conditions(memory, fs):
    scores = [
        compute_snapshot(_inputs(
            memory_usage_percent=memory,
            filesystem_ready=fs,
            provider_states={"claude": state, "perplexity": ProviderState.degraded},
        )).composite_score
        for state in STATE_ORDER
    ]
    assert scores == sorted(scores)


def test_aggregator_reads_registry_and_hooks(registry, tmp_path, clock):
    agg = HealthAggregator(
        registry,
        providers=["claude", "perplexity"],
        credential_check=lambda name: name == "claude",
        writable_dirs=[tmp_path / "data"],
        memory_reader=lambda: 50.0,
        clock=clock,
    )
    registry.record_outcome("perplexity", Outcome.rate_limited)
    snap = agg.collect()
    assert snap.providers == {"claude": "connected", "perplexity": "throttled"}
    assert snap.api_keys_present == {"claude": True, "perplexity": False, "all": False}
    assert snap.filesystem_ready is True
    assert snap.timestamp == clock.now
    # 25 + 10 + 5 + 25 + 6.25
    assert snap.composite_score == 71


def test_aggregator_survives_failing_credential_check(registry):
    def broken(_name):
        raise RuntimeError("vault down")

    agg = HealthAggregator(registry, providers=["claude"], credential_check=broken, memory_reader=lambda: None)
    snap = agg.collect()
    assert snap.api_keys_present["claude"] is False
    assert snap.filesystem_ready is False


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))

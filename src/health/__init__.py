from src.health.aggregator import (
    HealthAggregator,
    HealthInputs,
    HealthSnapshot,
    compute_snapshot,
    snapshot_to_dict,
)

__all__ = ["HealthAggregator", "HealthInputs", "HealthSnapshot", "compute_snapshot", "snapshot_to_dict"]

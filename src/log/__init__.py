"""Logging: leveled, one file per run, automatic cleanup."""
from .log_manager import (
    LogManager,
    get_logger,
    init_logging,
    cleanup_logs,
)

__all__ = ["LogManager", "get_logger", "init_logging", "cleanup_logs"]

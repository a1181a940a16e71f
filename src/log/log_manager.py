"""
Log management: leveled loggers, one log file per process run, size/age cleanup.
"""
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

DEFAULT_LEVEL = "INFO"
DEFAULT_MAX_SIZE_MB = 100
DEFAULT_MAX_AGE_DAYS = 30
DEFAULT_MIN_KEEP_MB = 20
DEFAULT_CONSOLE_OUTPUT = True
LOG_DIR_NAME = "app"

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class LogManager:
    """
    Named loggers bound to a console handler and to a file named after the
    process start time. `cleanup()` keeps the log directory under
    `max_size_mb`, drops files older than `max_age_days`, and never deletes
    anything while the directory is below `min_keep_mb`.
    """

    def __init__(self, config: dict[str, Any] | None = None):
        config = config or {}
        self.log_dir = Path(config.get("log_dir")) if config.get("log_dir") else _PROJECT_ROOT / "logs" / LOG_DIR_NAME
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.max_size_mb = int(config.get("max_size_mb", DEFAULT_MAX_SIZE_MB))
        self.max_age_days = int(config.get("max_age_days", DEFAULT_MAX_AGE_DAYS))
        self.min_keep_mb = int(config.get("min_keep_mb", DEFAULT_MIN_KEEP_MB))
        self.console_output = config.get("console_output", DEFAULT_CONSOLE_OUTPUT)
        level_name = (os.getenv("LOG_LEVEL") or config.get("level") or DEFAULT_LEVEL).upper()
        self.level = getattr(logging, level_name, logging.INFO)

        self._run_log_path: Path | None = None
        self._formatter = logging.Formatter(
            "%(asctime)s.%(msecs)03d | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def _run_file(self) -> Path:
        if self._run_log_path is None:
            self._run_log_path = self.log_dir / datetime.now().strftime("%Y-%m-%d_%H-%M-%S.log")
        return self._run_log_path

    def get_logger(self, name: str) -> logging.Logger:
        """Return a named logger wired to the console and the current run file."""
        logger = logging.getLogger(name)
        if logger.handlers:
            return logger

        logger.setLevel(self.level)
        logger.propagate = False

        if self.console_output:
            ch = logging.StreamHandler()
            ch.setLevel(self.level)
            ch.setFormatter(self._formatter)
            logger.addHandler(ch)

        fh = logging.FileHandler(self._run_file(), encoding="utf-8")
        fh.setLevel(self.level)
        fh.setFormatter(self._formatter)
        logger.addHandler(fh)

        return logger

    def cleanup(self) -> dict[str, Any]:
        """Delete old log files first by age, then oldest-first down to max_size_mb."""
        report: dict[str, Any] = {"deleted_by_age": [], "deleted_by_size": [], "remaining_mb": 0.0}
        if not self.log_dir.exists():
            return report

        current = self._run_log_path
        log_files = sorted(
            (f for f in self.log_dir.iterdir() if f.is_file() and f.suffix == ".log" and f != current),
            key=lambda p: p.stat().st_mtime,
        )
        total = sum(f.stat().st_size for f in log_files)
        if total < self.min_keep_mb * 1024 * 1024:
            report["remaining_mb"] = total / (1024 * 1024)
            return report

        cutoff = datetime.now() - timedelta(days=self.max_age_days)
        remaining: list[Path] = []
        for f in log_files:
            if datetime.fromtimestamp(f.stat().st_mtime) < cutoff:
                report["deleted_by_age"].append(f.name)
                f.unlink()
            else:
                remaining.append(f)

        max_bytes = self.max_size_mb * 1024 * 1024
        while remaining and sum(f.stat().st_size for f in remaining) > max_bytes:
            oldest = remaining.pop(0)
            report["deleted_by_size"].append(oldest.name)
            oldest.unlink()

        if remaining:
            report["remaining_mb"] = sum(f.stat().st_size for f in remaining) / (1024 * 1024)
        return report


_manager: LogManager | None = None


def _load_logging_config(path: Path) -> dict[str, Any]:
    import json
    if not path.exists():
        return {}
    cfg = json.loads(path.read_text(encoding="utf-8")).get("logging") or {}
    local_path = path.with_name(f"{path.stem}.local{path.suffix}")
    if local_path.exists():
        local_cfg = json.loads(local_path.read_text(encoding="utf-8")).get("logging") or {}
        if local_cfg:
            cfg = {**cfg, **local_cfg}
    return cfg


def init_logging(config: dict[str, Any] | None = None, config_path: str | Path | None = None) -> LogManager:
    """(Re)initialize logging from an explicit dict, a config file, or config/app_config.json."""
    cfg = config
    if cfg is None:
        path = Path(config_path) if config_path is not None else _PROJECT_ROOT / "config" / "app_config.json"
        cfg = _load_logging_config(path)
    global _manager
    _manager = LogManager(cfg)
    return _manager


def get_logger(name: str, config: dict[str, Any] | None = None) -> logging.Logger:
    if _manager is None:
        init_logging(config=config)
    return _manager.get_logger(name)


def cleanup_logs(config: dict[str, Any] | None = None) -> dict[str, Any]:
    if _manager is None:
        init_logging(config=config)
    return _manager.cleanup()

"""
Centralized SQLAlchemy/SQLModel engine and session factory.

The database URL comes from APP_DATABASE_URL or `database.url` in
config/app_config(.local).json, so switching to PostgreSQL is a single
configuration change.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Generator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from src.log import get_logger

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/app.db"

_engine: Engine | None = None


def _resolve_db_url() -> str:
    """
    Precedence:
    1. APP_DATABASE_URL environment variable
    2. config/app_config.local.json  database.url
    3. config/app_config.json        database.url
    4. sqlite:///data/app.db
    """
    env_url = os.environ.get("APP_DATABASE_URL")
    if env_url:
        return env_url

    root = Path(__file__).resolve().parents[2]
    for cfg_name in ("app_config.local.json", "app_config.json"):
        cfg_path = root / "config" / cfg_name
        if not cfg_path.exists():
            continue
        try:
            with open(cfg_path, "r", encoding="utf-8") as f:
                url = (json.load(f).get("database") or {}).get("url")
        except (OSError, ValueError) as e:
            logger.warning("[db] unreadable %s: %s", cfg_path.name, e)
            continue
        if url:
            return url

    return DEFAULT_DB_URL


def _make_absolute_sqlite_url(url: str) -> str:
    """Anchor relative sqlite:/// paths at the project root regardless of cwd."""
    if not url.startswith("sqlite:///") or url == "sqlite:///:memory:":
        return url
    rel_path = url[len("sqlite:///"):]
    if os.path.isabs(rel_path):
        Path(rel_path).parent.mkdir(parents=True, exist_ok=True)
        return url
    root = Path(__file__).resolve().parents[2]
    abs_path = (root / rel_path).resolve()
    abs_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{abs_path}"


def get_engine() -> Engine:
    """Return the singleton engine, creating it on first call."""
    global _engine
    if _engine is not None:
        return _engine

    db_url = _make_absolute_sqlite_url(_resolve_db_url())

    is_sqlite = db_url.startswith("sqlite")
    connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}

    _engine = create_engine(
        db_url,
        echo=False,
        connect_args=connect_args,
        pool_pre_ping=True,
    )

    if is_sqlite:
        @event.listens_for(_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    logger.info("[db] engine ready: %s", db_url.split("@")[-1])
    return _engine


def reset_engine() -> None:
    """Dispose the singleton so the next get_engine() re-reads the URL."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def get_session() -> Generator[Session, None, None]:
    """FastAPI-style dependency that yields a SQLModel session."""
    with Session(get_engine()) as session:
        yield session


def init_db() -> None:
    """
    Create missing tables. Alembic owns the schema in production;
    this covers tests and fresh installs.
    """
    from src.db import models as _models  # noqa: F401 (registers tables)
    SQLModel.metadata.create_all(get_engine())

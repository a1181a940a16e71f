"""
src/db: database engine, session factory, and SQLModel models.

Usage:
    from src.db import get_engine, get_session
    from src.db.models import ResearchJob, Conversation, Message
"""

from src.db.engine import get_engine, get_session, init_db, reset_engine

__all__ = ["get_engine", "get_session", "init_db", "reset_engine"]

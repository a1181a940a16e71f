"""
SQLModel table definitions.

  - primary_key / foreign_key go in Field() only, never together with sa_column.
  - JSON columns are TEXT with Python-side serialization, so SQLite and
    PostgreSQL both work unchanged.
"""

import json
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, Float, Index, Integer, Text
from sqlmodel import Field, Relationship, SQLModel


def _now_ts() -> float:
    return time.time()


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


# ──────────────────────────────────────────────────────────────────────────────
# Research jobs
# ──────────────────────────────────────────────────────────────────────────────

class ResearchJob(SQLModel, table=True):
    __tablename__ = "research_jobs"
    __table_args__ = (
        Index("idx_research_jobs_created_at", "created_at"),
        Index("idx_research_jobs_status", "status"),
    )

    id: str = Field(primary_key=True)
    queue_job_id: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    query: str = Field(sa_column=Column(Text, nullable=False))
    options_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    status: str = Field(default="queued", sa_column=Column(Text, nullable=False, server_default="queued"))
    progress: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    result_json: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    # last completed stage + checkpoint payload, see src/research/pipeline.py
    stage: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    checkpoint_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    attempts: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))
    updated_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))
    started_at: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))
    finished_at: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))

    @property
    def options(self) -> Dict[str, Any]:
        return _loads(self.options_json, {})

    @property
    def result(self) -> Optional[Dict[str, Any]]:
        return _loads(self.result_json, None)

    @property
    def checkpoint(self) -> Dict[str, Any]:
        return _loads(self.checkpoint_json, {})

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def to_dict(self, include_checkpoint: bool = False) -> Dict[str, Any]:
        d = {
            "id": self.id,
            "queue_job_id": self.queue_job_id,
            "query": self.query,
            "options": self.options,
            "status": self.status,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "stage": self.stage,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        if include_checkpoint:
            d["checkpoint"] = self.checkpoint
        return d


# ──────────────────────────────────────────────────────────────────────────────
# Conversations
# ──────────────────────────────────────────────────────────────────────────────

class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"

    id: str = Field(primary_key=True)
    title: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))
    updated_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))

    messages: List["Message"] = Relationship(
        back_populates="conversation",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class Message(SQLModel, table=True):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_conversation", "conversation_id", "id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: str = Field(foreign_key="conversations.id", index=False)
    role: str = Field(sa_column=Column(Text, nullable=False))
    content: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    service: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    citations_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    visualization_json: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))

    conversation: Optional[Conversation] = Relationship(back_populates="messages")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "service": self.service,
            "citations": _loads(self.citations_json, []),
            "visualization": _loads(self.visualization_json, None),
            "created_at": self.created_at,
        }

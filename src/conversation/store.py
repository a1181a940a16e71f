"""
Conversation persistence: conversations + ordered messages.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from src.db.engine import get_engine
from src.db.models import Conversation, Message


def create_conversation(title: str = "") -> Dict[str, Any]:
    now = time.time()
    conv_id = uuid.uuid4().hex
    with Session(get_engine()) as session:
        session.add(Conversation(id=conv_id, title=title[:200], created_at=now, updated_at=now))
        session.commit()
    return get_conversation(conv_id) or {}


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    with Session(get_engine()) as session:
        row = session.get(Conversation, conversation_id)
    return row.to_dict() if row else None


def append_message(
    conversation_id: str,
    role: str,
    content: str,
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Append a message; meta may carry `service`, `citations`, `visualization`."""
    meta = meta or {}
    now = time.time()
    with Session(get_engine()) as session:
        conv = session.get(Conversation, conversation_id)
        if conv is None:
            raise KeyError(f"conversation not found: {conversation_id}")
        visualization = meta.get("visualization")
        msg = Message(
            conversation_id=conversation_id,
            role=role,
            content=content or "",
            service=meta.get("service"),
            citations_json=json.dumps(list(meta.get("citations") or []), ensure_ascii=False),
            visualization_json=json.dumps(visualization, ensure_ascii=False) if visualization is not None else None,
            created_at=now,
        )
        conv.updated_at = now
        session.add(msg)
        session.add(conv)
        session.commit()
        session.refresh(msg)
        return msg.to_dict()


def history(conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Messages oldest first; `limit` keeps only the most recent ones."""
    with Session(get_engine()) as session:
        stmt = select(Message).where(Message.conversation_id == conversation_id).order_by(Message.id)
        rows = session.exec(stmt).all()
    if limit:
        rows = rows[-int(limit):]
    return [r.to_dict() for r in rows]


def as_chat_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Reduce stored messages to the {role, content} shape providers take."""
    return [{"role": m["role"], "content": m["content"]} for m in messages if m.get("role") in ("user", "assistant", "system")]

"""
WebSocket endpoint `/ws` on top of StatusChannel.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from src.api.deps import get_services
from src.health.aggregator import snapshot_to_dict
from src.log import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, prior_session_id: Optional[str] = None):
    services = get_services()
    channel = services.channel
    await websocket.accept()

    session_id = uuid.uuid4().hex

    async def sender(message):
        await websocket.send_json(message)

    async def closer(code: int):
        await websocket.close(code=code)

    channel.on_connect(
        session_id, prior_session_id=prior_session_id, sender=sender, transport="websocket", closer=closer
    )
    session = channel.sessions[session_id]
    snapshot = await asyncio.to_thread(services.health.collect)
    await websocket.send_json({
        "type": "connection",
        "session_id": session_id,
        "subscriptions": sorted(session.subscriptions),
        "health": snapshot_to_dict(snapshot),
    })

    reason = "client disconnected"
    try:
        while True:
            try:
                payload = await websocket.receive_json()
            except (ValueError, KeyError):
                # KeyError: binary frame on a text-mode receive
                channel.touch(session_id)
                await channel.send(session_id, {"type": "error", "message": "invalid JSON"})
                continue
            await channel.handle_message(session_id, payload)
    except WebSocketDisconnect as e:
        reason = f"closed ({e.code})"
    finally:
        channel.on_disconnect(session_id, reason)

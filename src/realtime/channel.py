"""
Realtime status channel: live client sessions, topic subscriptions, reconnect
grace window, idle sweep, and best-effort multicast.

The session table is only touched from the event loop thread. Worker threads
publish through `publish_threadsafe`.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from src.health.aggregator import HealthSnapshot, snapshot_to_dict
from src.log import get_logger
from src.observability import metrics

logger = get_logger(__name__)

ALL_TOPIC = "all"
HEALTH_TOPIC = "health"

Sender = Callable[[Dict[str, Any]], Awaitable[None]]
Closer = Callable[[int], Awaitable[None]]

# close code sent to a transport purged for inactivity (going away)
IDLE_CLOSE_CODE = 1001


@dataclass
class ReconnectState:
    disconnected_at: float
    reason: str = ""


@dataclass
class ClientSession:
    session_id: str
    subscriptions: Set[str] = field(default_factory=lambda: {ALL_TOPIC})
    connected_at: float = 0.0
    last_activity_at: float = 0.0
    transport: str = "websocket"
    reconnect_state: Optional[ReconnectState] = None
    sender: Optional[Sender] = None
    closer: Optional[Closer] = None

    @property
    def is_live(self) -> bool:
        return self.reconnect_state is None and self.sender is not None

    def wants(self, topic: str) -> bool:
        return topic in self.subscriptions or ALL_TOPIC in self.subscriptions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subscriptions": sorted(self.subscriptions),
            "connected_at": self.connected_at,
            "last_activity_at": self.last_activity_at,
            "transport": self.transport,
            "reconnect_state": (
                {"disconnected_at": self.reconnect_state.disconnected_at, "reason": self.reconnect_state.reason}
                if self.reconnect_state else None
            ),
        }


class StatusChannel:
    def __init__(
        self,
        health: Optional[Callable[[], HealthSnapshot]] = None,
        reconnect_grace_seconds: float = 60.0,
        idle_timeout_seconds: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ):
        self.health = health
        self.reconnect_grace_seconds = float(reconnect_grace_seconds)
        self.idle_timeout_seconds = float(idle_timeout_seconds)
        self._clock = clock
        self.sessions: Dict[str, ClientSession] = {}
        self._purge_handles: Dict[str, asyncio.TimerHandle] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.send_errors = 0

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def _within_grace(self, session: Optional[ClientSession], now: float) -> bool:
        return (
            session is not None
            and session.reconnect_state is not None
            and now - session.reconnect_state.disconnected_at <= self.reconnect_grace_seconds
        )

    def _cancel_purge(self, session_id: str) -> None:
        handle = self._purge_handles.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def on_connect(
        self,
        session_id: str,
        prior_session_id: Optional[str] = None,
        sender: Optional[Sender] = None,
        transport: str = "websocket",
        closer: Optional[Closer] = None,
    ) -> ClientSession:
        """Register a connection; restores subscriptions of a prior session still in its grace window."""
        now = self._clock()
        prior_id = prior_session_id or session_id
        prior = self.sessions.get(prior_id)
        subscriptions = {ALL_TOPIC}
        restored = False
        if self._within_grace(prior, now):
            subscriptions = set(prior.subscriptions) | {ALL_TOPIC}
            restored = True
            self._cancel_purge(prior_id)
            if prior_id != session_id:
                self.sessions.pop(prior_id, None)

        session = ClientSession(
            session_id=session_id,
            subscriptions=subscriptions,
            connected_at=now,
            last_activity_at=now,
            transport=transport,
            sender=sender,
            closer=closer,
        )
        self._cancel_purge(session_id)
        self.sessions[session_id] = session
        metrics.realtime_sessions.set(self.live_count())
        logger.info(
            "[realtime] %s connected (%s)%s",
            session_id, transport, f", restored from {prior_id}" if restored else "",
        )
        return session

    def subscribe(self, session_id: str, topics: Iterable[str]) -> Optional[Set[str]]:
        session = self.sessions.get(session_id)
        if session is None:
            logger.warning("[realtime] subscribe for unknown session %s", session_id)
            return None
        session.subscriptions = {str(t) for t in topics if str(t).strip()} | {ALL_TOPIC}
        session.last_activity_at = self._clock()
        return set(session.subscriptions)

    def touch(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            session.last_activity_at = self._clock()

    def on_disconnect(self, session_id: str, reason: str = "client disconnected") -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        now = self._clock()
        session.reconnect_state = ReconnectState(disconnected_at=now, reason=reason)
        session.sender = None
        session.closer = None
        metrics.realtime_sessions.set(self.live_count())
        logger.info("[realtime] %s disconnected (%s), grace %.0fs", session_id, reason, self.reconnect_grace_seconds)

        loop = self._running_loop()
        if loop is not None:
            self._cancel_purge(session_id)
            self._purge_handles[session_id] = loop.call_later(
                self.reconnect_grace_seconds, self._purge_if_expired, session_id, now
            )

    def _running_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _purge_if_expired(self, session_id: str, disconnected_at: float) -> None:
        self._purge_handles.pop(session_id, None)
        session = self.sessions.get(session_id)
        if session is None or session.reconnect_state is None:
            return
        if session.reconnect_state.disconnected_at != disconnected_at:
            return
        self.sessions.pop(session_id, None)
        logger.info("[realtime] %s purged after grace window", session_id)

    def live_count(self) -> int:
        return sum(1 for s in self.sessions.values() if s.reconnect_state is None)

    # ------------------------------------------------------------------
    # delivery
    # ------------------------------------------------------------------

    async def send(self, session_id: str, message: Dict[str, Any]) -> bool:
        session = self.sessions.get(session_id)
        if session is None or not session.is_live:
            return False
        try:
            await session.sender(message)
            return True
        except Exception as e:
            self.send_errors += 1
            metrics.realtime_send_errors_total.inc()
            logger.warning("[realtime] send to %s failed: %s", session_id, e)
            return False

    async def broadcast(self, message: Dict[str, Any]) -> int:
        """Deliver to every live session that wants `message['topic']`. Returns delivered count."""
        topic = str(message.get("topic") or ALL_TOPIC)
        targets: List[str] = [sid for sid, s in list(self.sessions.items()) if s.is_live and s.wants(topic)]
        delivered = 0
        for sid in targets:
            if await self.send(sid, message):
                delivered += 1
        metrics.realtime_broadcasts_total.labels(type=str(message.get("type", "unknown"))).inc()
        return delivered

    def publish_threadsafe(self, message: Dict[str, Any]) -> None:
        """Schedule a broadcast from any thread; no-op before the loop is bound."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("[realtime] no loop bound, dropping %s", message.get("type"))
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            loop.create_task(self.broadcast(message))
        else:
            asyncio.run_coroutine_threadsafe(self.broadcast(message), loop)

    def status_message(self, snapshot: Optional[HealthSnapshot] = None) -> Dict[str, Any]:
        """Blocking: collects a snapshot when none is given. Loop code uses `current_status`."""
        if snapshot is None:
            snapshot = self._snapshot()
        return self._status(snapshot)

    async def current_status(self) -> Dict[str, Any]:
        """Status message with the snapshot collected in a worker thread (psutil, filesystem)."""
        return self._status(await asyncio.to_thread(self._snapshot))

    def _status(self, snapshot: Optional[HealthSnapshot]) -> Dict[str, Any]:
        return {
            "type": "system_status",
            "topic": HEALTH_TOPIC,
            "health": snapshot_to_dict(snapshot) if snapshot else None,
            "timestamp": self._clock(),
        }

    def _snapshot(self) -> Optional[HealthSnapshot]:
        if self.health is None:
            return None
        try:
            snapshot = self.health()
        except Exception as e:
            logger.warning("[realtime] health snapshot failed: %s", e)
            return None
        metrics.health_score.set(snapshot.composite_score)
        return snapshot

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------

    async def _close_transport(self, session: ClientSession, code: int) -> None:
        if session.closer is None:
            return
        try:
            await session.closer(code)
        except Exception as e:
            logger.warning("[realtime] closing %s failed: %s", session.session_id, e)

    async def sweep(self) -> Dict[str, Any]:
        """Purge idle and expired sessions, then broadcast the health snapshot.

        Idle sessions still hold an open transport; it is closed so the client
        sees the disconnect and can reconnect.
        """
        now = self._clock()
        idle, expired = [], []
        for sid, s in list(self.sessions.items()):
            if s.reconnect_state is not None:
                if now - s.reconnect_state.disconnected_at > self.reconnect_grace_seconds:
                    expired.append(sid)
            elif now - s.last_activity_at > self.idle_timeout_seconds:
                idle.append(sid)
        purged = []
        for sid in idle + expired:
            self._cancel_purge(sid)
            session = self.sessions.pop(sid, None)
            if session is not None and sid in idle:
                purged.append(session)
        for session in purged:
            await self._close_transport(session, IDLE_CLOSE_CODE)
        if idle or expired:
            logger.info("[realtime] sweep purged idle=%d expired=%d", len(idle), len(expired))
        metrics.realtime_sessions.set(self.live_count())

        message = await self.current_status()
        delivered = await self.broadcast(message)
        return {"purged_idle": idle, "purged_expired": expired, "delivered": delivered, "health": message["health"]}

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.warning("[realtime] sweep failed: %s", e)

    # ------------------------------------------------------------------
    # inbound messages
    # ------------------------------------------------------------------

    async def handle_message(self, session_id: str, payload: Any) -> None:
        self.touch(session_id)
        if not isinstance(payload, dict):
            await self.send(session_id, self._error("message must be a JSON object"))
            return
        msg_type = payload.get("type")
        if msg_type == "subscribe":
            topics = payload.get("topics")
            if not isinstance(topics, list):
                await self.send(session_id, self._error("subscribe requires a list of topics"))
                return
            subs = self.subscribe(session_id, topics)
            await self.send(session_id, {"type": "subscribed", "topics": sorted(subs or [])})
        elif msg_type == "ping":
            await self.send(session_id, {"type": "pong", "timestamp": self._clock()})
        elif msg_type == "get_status":
            await self.send(session_id, await self.current_status())
        else:
            await self.send(session_id, self._error(f"unknown message type: {msg_type!r}"))

    def _error(self, message: str) -> Dict[str, Any]:
        return {"type": "error", "message": message, "timestamp": self._clock()}

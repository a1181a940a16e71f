"""
Status channel: reconnect grace window, subscriptions, multicast, idle sweep.
"""

import asyncio
import threading

import pytest

from src.health.aggregator import HealthInputs, compute_snapshot
from src.realtime.channel import ALL_TOPIC, IDLE_CLOSE_CODE, StatusChannel
from src.routing.status_registry import ProviderState


class Inbox:
    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail
        self.closed_with = None

    async def __call__(self, message):
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.messages.append(message)

    async def close(self, code):
        self.closed_with = code

    def types(self):
        return [m["type"] for m in self.messages]


def _health():
    return compute_snapshot(HealthInputs(
        provider_states={"claude": ProviderState.connected},
        memory_usage_percent=10.0,
        api_keys_present={"claude": True},
        filesystem_ready=True,
    ))


@pytest.fixture
def channel(clock):
    return StatusChannel(health=_health, reconnect_grace_seconds=60, idle_timeout_seconds=300, clock=clock)


def test_new_session_subscribes_to_all(channel):
    session = channel.on_connect("s1", sender=Inbox())
    assert session.subscriptions == {ALL_TOPIC}
    assert session.is_live
    assert channel.live_count() == 1


def test_subscribe_always_keeps_all(channel):
    channel.on_connect("s1", sender=Inbox())
    assert channel.subscribe("s1", ["research", "health"]) == {"research", "health", ALL_TOPIC}
    assert channel.subscribe("s1", []) == {ALL_TOPIC}
    assert channel.subscribe("missing", ["x"]) is None


def test_reconnect_within_grace_restores_subscriptions(channel, clock):
    channel.on_connect("s1", sender=Inbox())
    channel.subscribe("s1", ["research"])
    channel.on_disconnect("s1")
    assert channel.live_count() == 0

    clock.advance(59)
    restored = channel.on_connect("s2", prior_session_id="s1", sender=Inbox())
    assert restored.subscriptions == {"research", ALL_TOPIC}
    assert "s1" not in channel.sessions
    assert restored.reconnect_state is None


def test_reconnect_after_grace_starts_fresh(channel, clock):
    channel.on_connect("s1", sender=Inbox())
    channel.subscribe("s1", ["research"])
    channel.on_disconnect("s1")

    clock.advance(61)
    fresh = channel.on_connect("s2", prior_session_id="s1", sender=Inbox())
    assert fresh.subscriptions == {ALL_TOPIC}


def test_reconnect_with_same_id(channel, clock):
    channel.on_connect("s1", sender=Inbox())
    channel.subscribe("s1", ["health"])
    channel.on_disconnect("s1")
    clock.advance(10)
    assert channel.on_connect("s1", sender=Inbox()).subscriptions == {"health", ALL_TOPIC}


def test_broadcast_skips_disconnected_sessions(channel):
    live, gone = Inbox(), Inbox()
    channel.on_connect("live", sender=live)
    channel.on_connect("gone", sender=gone)
    channel.on_disconnect("gone")

    delivered = asyncio.run(channel.broadcast({"type": "research_progress", "topic": "research"}))
    assert delivered == 1
    assert live.types() == ["research_progress"]
    assert gone.messages == []


def test_send_error_is_counted_not_raised(channel):
    ok, broken = Inbox(), Inbox(fail=True)
    channel.on_connect("ok", sender=ok)
    channel.on_connect("broken", sender=broken)

    delivered = asyncio.run(channel.broadcast({"type": "system_status", "topic": "health"}))
    assert delivered == 1
    assert channel.send_errors == 1
    assert ok.types() == ["system_status"]


def test_disconnect_schedules_purge_on_running_loop(clock):
    channel = StatusChannel(reconnect_grace_seconds=0.01, clock=clock)

    async def scenario():
        channel.on_connect("s1", sender=Inbox())
        channel.on_disconnect("s1")
        assert "s1" in channel.sessions
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert "s1" not in channel.sessions


def test_sweep_purges_idle_and_expired_and_broadcasts_health(channel, clock):
    idle, active, gone = Inbox(), Inbox(), Inbox()
    channel.on_connect("idle", sender=idle)
    channel.on_connect("gone", sender=gone)
    channel.on_disconnect("gone")
    clock.advance(200)
    channel.on_connect("active", sender=active)
    clock.advance(101)

    report = asyncio.run(channel.sweep())
    assert report["purged_idle"] == ["idle"]
    assert report["purged_expired"] == ["gone"]
    assert report["delivered"] == 1
    assert report["health"]["composite_score"] == 100
    assert set(channel.sessions) == {"active"}
    assert active.types() == ["system_status"]
    assert active.messages[0]["topic"] == "health"


def test_sweep_survives_health_failure(clock):
    def broken():
        raise RuntimeError("psutil exploded")

    channel = StatusChannel(health=broken, clock=clock)
    inbox = Inbox()
    channel.on_connect("s1", sender=inbox)
    report = asyncio.run(channel.sweep())
    assert report["health"] is None
    assert inbox.types() == ["system_status"]


def test_handle_message_variants(channel, clock):
    inbox = Inbox()
    channel.on_connect("s1", sender=inbox)

    async def scenario():
        clock.advance(5)
        await channel.handle_message("s1", {"type": "ping"})
        await channel.handle_message("s1", {"type": "subscribe", "topics": ["research"]})
        await channel.handle_message("s1", {"type": "subscribe", "topics": "research"})
        await channel.handle_message("s1", {"type": "get_status"})
        await channel.handle_message("s1", {"type": "dance"})
        await channel.handle_message("s1", ["not", "an", "object"])

    asyncio.run(scenario())
    assert inbox.types() == ["pong", "subscribed", "error", "system_status", "error", "error"]
    assert inbox.messages[1]["topics"] == ["all", "research"]
    assert "dance" in inbox.messages[4]["message"]
    assert channel.sessions["s1"].last_activity_at == clock.now


def test_publish_threadsafe_without_loop_is_noop(channel):
    channel.on_connect("s1", sender=Inbox())
    channel.publish_threadsafe({"type": "research_progress", "topic": "research"})


def test_publish_threadsafe_from_worker_thread(channel):
    inbox = Inbox()

    async def scenario():
        channel.bind_loop(asyncio.get_running_loop())
        channel.on_connect("s1", sender=inbox)
        await asyncio.to_thread(channel.publish_threadsafe, {"type": "research_completed", "topic": "research"})
        for _ in range(50):
            if inbox.messages:
                break
            await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert inbox.types() == ["research_completed"]


def test_idle_sweep_closes_open_transport(channel, clock):
    idle, active = Inbox(), Inbox()
    channel.on_connect("idle", sender=idle, closer=idle.close)
    clock.advance(301)
    channel.on_connect("active", sender=active, closer=active.close)

    report = asyncio.run(channel.sweep())
    assert report["purged_idle"] == ["idle"]
    assert idle.closed_with == IDLE_CLOSE_CODE
    assert active.closed_with is None
    # the purged session gets nothing further; the client reconnects after the close
    assert idle.messages == []
    assert asyncio.run(channel.broadcast({"type": "system_status", "topic": "health"})) == 1


def test_failing_closer_does_not_break_sweep(channel, clock):
    async def broken(_code):
        raise RuntimeError("already closed")

    channel.on_connect("idle", sender=Inbox(), closer=broken)
    clock.advance(301)
    report = asyncio.run(channel.sweep())
    assert report["purged_idle"] == ["idle"]
    assert "idle" not in channel.sessions


def test_expired_session_has_no_transport_to_close(channel, clock):
    inbox = Inbox()
    channel.on_connect("s1", sender=inbox, closer=inbox.close)
    channel.on_disconnect("s1")
    clock.advance(61)
    report = asyncio.run(channel.sweep())
    assert report["purged_expired"] == ["s1"]
    assert inbox.closed_with is None


def test_health_snapshot_is_collected_off_the_loop_thread(clock):
    threads = []

    def health():
        threads.append(threading.current_thread())
        return _health()

    channel = StatusChannel(health=health, clock=clock)
    inbox = Inbox()
    channel.on_connect("s1", sender=inbox)

    async def scenario():
        await channel.sweep()
        await channel.handle_message("s1", {"type": "get_status"})
        return threading.current_thread()

    loop_thread = asyncio.run(scenario())
    assert len(threads) == 2
    assert all(t is not loop_thread for t in threads)
    assert inbox.types() == ["system_status", "system_status"]


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))

"""Tests for amidakuji.agent (ClientSyncAgent)."""

from __future__ import annotations

import asyncio

import pytest

from amidakuji.agent import (
    ClientSyncAgent,
    ConnectionStatus,
    RetryPolicy,
    TransportError,
)
from amidakuji.hub import SyncHub
from amidakuji.ladder import RejectReason, Rung, resolve_all
from amidakuji.session import Phase

DROP = object()


class FakeTransport:
    """Scripted transport: tests push hub messages into ``inbox``."""

    def __init__(self, connect_failures: int = 0):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.connects = 0
        self.connect_failures = connect_failures
        self.fail_forever = False
        self.closed = False

    async def connect(self) -> None:
        self.connects += 1
        if self.fail_forever or self.connect_failures > 0:
            self.connect_failures -= 1
            raise TransportError("refused")

    async def send(self, message: dict) -> None:
        self.sent.append(message)

    async def receive(self) -> dict:
        item = await self.inbox.get()
        if item is DROP:
            raise TransportError("dropped")
        return item

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(DROP)


class _HubSide:
    def __init__(self, inbox: asyncio.Queue):
        self.inbox = inbox

    async def send_json(self, data: dict) -> None:
        await self.inbox.put(data)

    async def close(self, code: int = 1000) -> None:
        await self.inbox.put(DROP)


class LoopbackTransport:
    """Wires an agent straight into a SyncHub in the same event loop."""

    def __init__(self, hub: SyncHub):
        self.hub = hub
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.handle = None
        self.online = True

    async def connect(self) -> None:
        if not self.online:
            raise TransportError("offline")
        self.inbox = asyncio.Queue()
        self.handle = await self.hub.connect(_HubSide(self.inbox))

    async def send(self, message: dict) -> None:
        if self.handle is None:
            raise TransportError("not connected")
        await self.hub.receive(self.handle, message)

    async def receive(self) -> dict:
        item = await self.inbox.get()
        if item is DROP:
            raise TransportError("dropped")
        return item

    async def drop(self) -> None:
        """Simulate the network going away."""
        if self.handle is not None:
            await self.hub.disconnect(self.handle)
            self.handle = None
        self.inbox.put_nowait(DROP)

    async def close(self) -> None:
        await self.drop()


async def no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


async def settle() -> None:
    for _ in range(100):
        await asyncio.sleep(0)


def init_msg(rungs=(), phase="drawing", version=0) -> dict:
    return {
        "type": "init",
        "rungs": [{"id": r.id, "railLeft": r.rail_left, "railRight": r.rail_right, "y": r.y} for r in rungs],
        "phase": phase,
        "version": version,
    }


# ── applying hub messages ────────────────────────────────────────────

def test_apply_init_and_new_line():
    agent = ClientSyncAgent(FakeTransport())
    agent.apply(init_msg([Rung(0, 1, 100, id="a")], version=1))
    agent.apply({"type": "newLine", "rung": {"id": "b", "railLeft": 2, "railRight": 3, "y": 50}, "version": 2})
    assert [r.id for r in agent.view.rungs] == ["a", "b"]
    assert agent.view.version == 2


def test_duplicate_new_line_is_ignored():
    agent = ClientSyncAgent(FakeTransport())
    msg = {"type": "newLine", "rung": {"id": "b", "railLeft": 2, "railRight": 3, "y": 50}, "version": 1}
    agent.apply(msg)
    agent.apply(msg)
    assert len(agent.view.rungs) == 1


def test_show_results_replaces_rungs():
    agent = ClientSyncAgent(FakeTransport())
    agent.apply(init_msg([Rung(0, 1, 100, id="a")]))
    agent.apply({
        "type": "showResults",
        "rungs": [
            {"id": "a", "railLeft": 0, "railRight": 1, "y": 100},
            {"id": "missed", "railLeft": 2, "railRight": 3, "y": 10},
        ],
        "version": 3,
    })
    assert agent.view.phase is Phase.SHOWING_RESULTS
    assert [r.id for r in agent.view.rungs] == ["a", "missed"]


def test_reset_clears_view_and_cancels_resolution():
    agent = ClientSyncAgent(FakeTransport())
    agent.apply(init_msg([Rung(0, 1, 100, id="a")], phase="showing-results"))
    path = agent.start_resolution(0)
    assert path.end_rail == 1
    assert agent.active_path is path

    agent.apply({"type": "reset", "version": 5})
    assert agent.view.rungs == []
    assert agent.view.phase is Phase.DRAWING
    assert agent.active_path is None


def test_new_resolution_replaces_previous():
    agent = ClientSyncAgent(FakeTransport())
    agent.apply(init_msg([Rung(0, 1, 100, id="a")], phase="showing-results"))
    agent.start_resolution(0)
    second = agent.start_resolution(2)
    assert agent.active_path is second
    assert second.end_rail == 2


def test_resolution_needs_results_phase():
    agent = ClientSyncAgent(FakeTransport())
    with pytest.raises(RuntimeError):
        agent.start_resolution(0)


def test_malformed_and_error_messages_leave_view_alone():
    agent = ClientSyncAgent(FakeTransport())
    agent.apply(init_msg([Rung(0, 1, 100, id="a")], version=1))
    agent.apply({"type": "bogus"})
    agent.apply({"type": "error", "code": "invalid-message", "message": "nope"})
    assert [r.id for r in agent.view.rungs] == ["a"]


def test_change_listener_fires():
    agent = ClientSyncAgent(FakeTransport())
    seen = []
    agent.on_change(lambda view: seen.append(len(view.rungs)))
    agent.apply(init_msg([Rung(0, 1, 100, id="a")]))
    agent.apply({"type": "reset", "version": 1})
    assert seen == [1, 0]


# ── drawing ──────────────────────────────────────────────────────────

def test_draw_is_optimistic_and_rolled_back_on_reject():
    async def scenario():
        t = FakeTransport()
        agent = ClientSyncAgent(t, sleep=no_sleep)
        agent.start()
        await settle()
        t.inbox.put_nowait(init_msg())
        await settle()

        check = await agent.draw(Rung(0, 1, 100, id="mine"))
        optimistic = [r.id for r in agent.view.rungs]

        t.inbox.put_nowait({"type": "rejected", "rungId": "mine", "reason": "overlapping", "message": ""})
        await settle()
        after = [r.id for r in agent.view.rungs]
        await agent.stop()
        return t, check, optimistic, after

    t, check, optimistic, after = asyncio.run(scenario())
    assert check.ok
    assert optimistic == ["mine"]
    assert after == []
    assert t.sent == [{
        "type": "drawLine",
        "rung": {"id": "mine", "railLeft": 0, "railRight": 1, "y": 100.0},
    }]


def test_locally_invalid_draw_is_not_sent():
    async def scenario():
        t = FakeTransport()
        agent = ClientSyncAgent(t, sleep=no_sleep)
        agent.start()
        await settle()
        t.inbox.put_nowait(init_msg([Rung(0, 1, 100, id="a")]))
        await settle()
        check = await agent.draw(Rung(1, 2, 105, id="b"))
        await agent.stop()
        return t, agent, check

    t, agent, check = asyncio.run(scenario())
    assert check.reason is RejectReason.OVERLAPPING
    assert t.sent == []
    assert [r.id for r in agent.view.rungs] == ["a"]


def test_draw_refused_while_results_showing():
    async def scenario():
        agent = ClientSyncAgent(FakeTransport())
        agent.apply(init_msg(phase="showing-results"))
        return await agent.draw(Rung(0, 1, 100))

    check = asyncio.run(scenario())
    assert check.reason is RejectReason.DRAWING_CLOSED


def test_draw_refused_while_offline():
    async def scenario():
        agent = ClientSyncAgent(FakeTransport())
        return agent, await agent.draw(Rung(0, 1, 100))

    agent, check = asyncio.run(scenario())
    assert not check.ok
    assert agent.view.rungs == []


def test_draw_rolled_back_when_send_fails():
    class DeadSendTransport(FakeTransport):
        async def send(self, message: dict) -> None:
            raise TransportError("broken pipe")

    async def scenario():
        t = DeadSendTransport()
        agent = ClientSyncAgent(t, sleep=no_sleep)
        seen: list[list[str]] = []
        agent.on_change(lambda view: seen.append([r.id for r in view.rungs]))
        agent.start()
        await settle()
        t.inbox.put_nowait(init_msg())
        await settle()
        check = await agent.draw(Rung(0, 1, 100, id="lost"))
        await agent.stop()
        return agent, check, seen

    agent, check, seen = asyncio.run(scenario())
    assert not check.ok
    assert agent.view.rungs == []
    assert seen[-2:] == [["lost"], []]


def test_draw_at_snaps_click_to_rails():
    async def scenario():
        t = FakeTransport()
        agent = ClientSyncAgent(t, sleep=no_sleep)
        agent.start()
        await settle()
        hit = await agent.draw_at(300, 40)
        miss = await agent.draw_at(245, 80)
        await agent.stop()
        return agent, hit, miss

    agent, hit, miss = asyncio.run(scenario())
    assert hit.ok
    assert not miss.ok
    assert [(r.rail_left, r.y) for r in agent.view.rungs] == [(1, 40)]


# ── connection state machine ─────────────────────────────────────────

def test_first_connect_does_not_request_state():
    async def scenario():
        t = FakeTransport()
        agent = ClientSyncAgent(t, sleep=no_sleep)
        statuses = []
        agent.on_status(lambda s, n, m: statuses.append(s))
        agent.start()
        await settle()
        await agent.stop()
        return t, statuses

    t, statuses = asyncio.run(scenario())
    assert t.sent == []
    assert statuses[:2] == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert statuses[-1] is ConnectionStatus.DISCONNECTED


def test_reconnect_requests_state():
    async def scenario():
        t = FakeTransport()
        agent = ClientSyncAgent(t, sleep=no_sleep)
        events = []
        agent.on_status(lambda s, n, m: events.append((s, n, m)))
        agent.start()
        await settle()
        t.inbox.put_nowait(DROP)
        await settle()
        await agent.stop()
        return t, events

    t, events = asyncio.run(scenario())
    assert t.connects == 2
    assert t.sent == [{"type": "requestState"}]
    assert (ConnectionStatus.RECONNECTING, 1, "Reconnecting (attempt 1/5)...") in events
    assert [s for s, _, _ in events].count(ConnectionStatus.CONNECTED) == 2


def test_gives_up_after_max_attempts():
    async def scenario():
        t = FakeTransport()
        delays = []

        async def record_sleep(delay: float) -> None:
            delays.append(delay)

        agent = ClientSyncAgent(
            t, retry=RetryPolicy(max_attempts=3, base_delay=1.0, backoff=2.0), sleep=record_sleep,
        )
        agent.start()
        await settle()
        t.fail_forever = True
        t.inbox.put_nowait(DROP)
        await settle()
        return agent, delays

    agent, delays = asyncio.run(scenario())
    assert agent.status is ConnectionStatus.FAILED
    assert agent.status_message == "Connection lost. Refresh to retry."
    assert delays == [1.0, 2.0, 4.0]
    assert agent.attempt == 4


def test_initial_connect_retries_then_succeeds():
    async def scenario():
        t = FakeTransport(connect_failures=2)
        agent = ClientSyncAgent(t, sleep=no_sleep)
        agent.start()
        await settle()
        status = agent.status
        await agent.stop()
        return t, status

    t, status = asyncio.run(scenario())
    assert status is ConnectionStatus.CONNECTED
    assert t.connects == 3


def test_retry_delay_is_capped():
    policy = RetryPolicy(base_delay=1.0, backoff=3.0, max_delay=5.0)
    assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 3.0, 5.0]


# ── end to end through a real hub ────────────────────────────────────

def test_agents_converge_through_hub_across_a_drop():
    async def scenario():
        hub = SyncHub(flush_interval=0)
        ta, tb = LoopbackTransport(hub), LoopbackTransport(hub)
        a = ClientSyncAgent(ta, sleep=no_sleep)
        b = ClientSyncAgent(tb, sleep=no_sleep)
        a.start()
        b.start()
        await settle()

        await a.draw(Rung(0, 1, 100, id="r1"))
        await b.draw(Rung(2, 3, 150, id="r2"))
        await settle()
        both_drawing = (list(a.view.rungs), list(b.view.rungs))

        await tb.drop()
        await a.draw(Rung(1, 2, 200, id="missed"))
        await settle()

        await a.finish()
        await settle()
        return hub, a, b, both_drawing

    hub, a, b, (a_rungs, b_rungs) = asyncio.run(scenario())
    assert {r.id for r in a_rungs} == {r.id for r in b_rungs} == {"r1", "r2"}

    assert b.status is ConnectionStatus.CONNECTED
    assert a.view.phase is b.view.phase is Phase.SHOWING_RESULTS
    assert [r.id for r in b.view.rungs] == [r.id for r in hub.snapshot().rungs]
    assert a.results() == b.results() == resolve_all(hub.snapshot().rungs)

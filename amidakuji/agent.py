"""Client-side sync: keeps a local mirror of the ladder equal to the hub's.

The agent applies hub messages in arrival order. The hub has already
serialised every mutation, so nothing here reorders or merges edits.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Protocol

from pydantic import ValidationError

from amidakuji.events import (
    DrawLineEvent,
    ErrorMessage,
    FinishEvent,
    InitMessage,
    NewLineMessage,
    RejectedMessage,
    RequestStateEvent,
    ResetEvent,
    ResetMessage,
    RungModel,
    ShowResultsMessage,
    StateUpdateMessage,
    dump,
    parse_server_message,
    snapshot_from_message,
)
from amidakuji.ladder import (
    CANVAS_HEIGHT,
    CANVAS_WIDTH,
    DEFAULT_RAIL_COUNT,
    PathResult,
    RejectReason,
    Rung,
    RungCheck,
    rail_positions,
    resolve_all,
    resolve_path,
    rung_from_click,
    validate_rung,
)
from amidakuji.session import Phase, SessionSnapshot

logger = logging.getLogger(__name__)


class TransportError(ConnectionError):
    """The channel to the hub failed or closed."""


class Transport(Protocol):
    async def connect(self) -> None: ...

    async def send(self, message: dict) -> None: ...

    async def receive(self) -> dict: ...

    async def close(self) -> None: ...


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff: float = 2.0

    def delay(self, attempt: int) -> float:
        """Wait before retry number *attempt* (1-based)."""
        return min(self.max_delay, self.base_delay * self.backoff ** (attempt - 1))


@dataclass
class ClientView:
    """This client's copy of the ladder. Never authoritative."""

    rungs: list[Rung] = field(default_factory=list)
    phase: Phase = Phase.DRAWING
    version: int = 0

    def replace(self, snapshot: SessionSnapshot) -> None:
        self.rungs = list(snapshot.rungs)
        self.phase = snapshot.phase
        self.version = snapshot.version

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(rungs=tuple(self.rungs), phase=self.phase, version=self.version)

    def has_rung(self, rung_id: str) -> bool:
        return any(r.id == rung_id for r in self.rungs)


StatusListener = Callable[[ConnectionStatus, int, str], None]
ChangeListener = Callable[[ClientView], None]


class ClientSyncAgent:
    """Connects, reconnects and keeps :attr:`view` in step with the hub."""

    def __init__(
        self,
        transport: Transport,
        rail_count: int = DEFAULT_RAIL_COUNT,
        width: float = CANVAS_WIDTH,
        height: float = CANVAS_HEIGHT,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.rail_count = rail_count
        self.width = width
        self.height = height
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self.view = ClientView()
        self.status = ConnectionStatus.DISCONNECTED
        self.status_message = ""
        self.attempt = 0
        self.active_path: PathResult | None = None
        self._has_connected = False
        self._stopping = False
        self._task: asyncio.Task | None = None
        self._status_listeners: list[StatusListener] = []
        self._change_listeners: list[ChangeListener] = []

    # ── Listeners ────────────────────────────────────────────────────

    def on_status(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def on_change(self, listener: ChangeListener) -> None:
        self._change_listeners.append(listener)

    def _set_status(self, status: ConnectionStatus, message: str = "") -> None:
        self.status = status
        self.status_message = message
        for listener in self._status_listeners:
            listener(status, self.attempt, message)

    def _changed(self) -> None:
        for listener in self._change_listeners:
            listener(self.view)

    # ── Connection lifecycle ─────────────────────────────────────────

    def start(self) -> asyncio.Task:
        """Run the connection loop in the background (explicit start or focus regained)."""
        if self._task is None or self._task.done():
            self._stopping = False
            self.attempt = 0
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        await self.transport.close()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.status is not ConnectionStatus.FAILED:
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def run(self) -> None:
        """Connect and apply messages until stopped or out of retries."""
        self._set_status(ConnectionStatus.CONNECTING)
        while not self._stopping:
            try:
                await self.transport.connect()
            except TransportError as exc:
                if self._stopping or not await self._back_off(exc):
                    break
                continue

            reconnected = self._has_connected
            self._has_connected = True
            self.attempt = 0
            self._set_status(ConnectionStatus.CONNECTED)
            if reconnected:
                # Mutations may have happened while we were away
                await self.request_state()

            try:
                while True:
                    self.apply(await self.transport.receive())
            except TransportError as exc:
                if self._stopping or not await self._back_off(exc):
                    break

        if self.status is not ConnectionStatus.FAILED:
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def _back_off(self, exc: Exception) -> bool:
        """Count a failed attempt; returns False once retries are exhausted."""
        self.attempt += 1
        if self.attempt > self.retry.max_attempts:
            logger.error("Giving up after %d attempts: %s", self.retry.max_attempts, exc)
            self._set_status(ConnectionStatus.FAILED, "Connection lost. Refresh to retry.")
            return False
        logger.warning("Connection problem (%s), retry %d/%d", exc, self.attempt, self.retry.max_attempts)
        self._set_status(
            ConnectionStatus.RECONNECTING,
            f"Reconnecting (attempt {self.attempt}/{self.retry.max_attempts})...",
        )
        await self._sleep(self.retry.delay(self.attempt))
        return True

    async def _send(self, message: dict) -> bool:
        if self.status is not ConnectionStatus.CONNECTED:
            return False
        try:
            await self.transport.send(message)
        except TransportError as exc:
            # The receive loop notices the drop and starts reconnecting
            logger.warning("Send failed: %s", exc)
            return False
        return True

    # ── Outbound intents ─────────────────────────────────────────────

    async def draw(self, rung: Rung) -> RungCheck:
        """Add *rung* locally right away and tell the hub.

        The local check is the same one the hub runs. If the hub still
        rejects it (someone else got there first), the ``rejected`` reply
        removes it again.
        """
        if self.view.phase is not Phase.DRAWING:
            return RungCheck(
                ok=False, reason=RejectReason.DRAWING_CLOSED,
                message="Results are showing; reset before drawing.",
            )
        check = validate_rung(rung, self.view.rungs, rail_count=self.rail_count)
        if not check.ok:
            return check
        if self.status is not ConnectionStatus.CONNECTED:
            return RungCheck(ok=False, message="Not connected.")

        self.view.rungs.append(rung)
        self._changed()
        if not await self._send(dump(DrawLineEvent(rung=RungModel.from_rung(rung)))):
            self.view.rungs = [r for r in self.view.rungs if r.id != rung.id]
            self._changed()
            return RungCheck(ok=False, message="Could not reach the hub.")
        return check

    async def draw_at(self, x: float, y: float) -> RungCheck:
        """Turn a click on the canvas into a rung, if it lands between two rails."""
        rung = rung_from_click(x, y, rail_positions(self.rail_count, self.width))
        if rung is None:
            return RungCheck(ok=False, message="Click between two rails to draw a rung.")
        return await self.draw(rung)

    async def finish(self) -> bool:
        return await self._send(dump(FinishEvent()))

    async def reset(self) -> bool:
        return await self._send(dump(ResetEvent()))

    async def request_state(self) -> bool:
        return await self._send(dump(RequestStateEvent()))

    # ── Inbound ──────────────────────────────────────────────────────

    def apply(self, data: dict) -> None:
        """Apply one hub message to the mirror."""
        try:
            message = parse_server_message(data)
        except ValidationError as exc:
            logger.warning("Ignoring malformed hub message: %s", exc)
            return

        view = self.view
        if isinstance(message, (InitMessage, StateUpdateMessage)):
            view.replace(snapshot_from_message(message))
            if view.phase is Phase.DRAWING:
                self.active_path = None
        elif isinstance(message, NewLineMessage):
            if not view.has_rung(message.rung.id):
                view.rungs.append(message.rung.to_rung())
            view.version = max(view.version, message.version)
        elif isinstance(message, ShowResultsMessage):
            view.rungs = [r.to_rung() for r in message.rungs]
            view.phase = Phase.SHOWING_RESULTS
            view.version = max(view.version, message.version)
        elif isinstance(message, ResetMessage):
            view.rungs = []
            view.phase = Phase.DRAWING
            view.version = max(view.version, message.version)
            self.active_path = None
        elif isinstance(message, RejectedMessage):
            logger.info("Hub rejected rung %s: %s", message.rung_id, message.reason)
            view.rungs = [r for r in view.rungs if r.id != message.rung_id]
        elif isinstance(message, ErrorMessage):
            logger.warning("Hub error %s: %s", message.code, message.message)
            return
        self._changed()

    # ── Results ──────────────────────────────────────────────────────

    def start_resolution(self, start_rail: int) -> PathResult:
        """Resolve *start_rail* on the local mirror; replaces any running resolution."""
        if self.view.phase is not Phase.SHOWING_RESULTS:
            raise RuntimeError("Results are not showing yet.")
        self.active_path = resolve_path(
            start_rail, self.view.rungs, self.rail_count, self.width, self.height,
        )
        return self.active_path

    def results(self) -> list[int]:
        return resolve_all(self.view.rungs, self.rail_count, self.width, self.height)

"""Real-time hub: owns the session and fans accepted mutations out to clients.

All mutations and registrations go through one ``asyncio.Lock``, which is
what gives every client the same sequence of events. Sending to a client
never happens under that lock; messages are queued on a per-client outbox
and drained by that client's own task.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Protocol

from pydantic import ValidationError

from amidakuji.events import (
    DrawLineEvent,
    ErrorMessage,
    FinishEvent,
    NewLineMessage,
    RejectedMessage,
    RequestStateEvent,
    ResetEvent,
    ResetMessage,
    RungModel,
    dump,
    init_message,
    parse_client_event,
    show_results_message,
    state_update_message,
)
from amidakuji.ladder import DEFAULT_RAIL_COUNT, RejectReason, Rung, RungCheck, validate_rung
from amidakuji.session import SessionSnapshot, SessionState
from amidakuji.store import StateStore, StoreError

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """The slice of a WebSocket the hub needs."""

    async def send_json(self, data: dict) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class ClientHandle:
    id: int
    connection: Connection
    outbox: asyncio.Queue
    task: asyncio.Task | None = None
    closed: bool = False


@dataclass
class HubStats:
    connections: int = 0
    accepted: int = 0
    rejected: int = 0
    persistence_failures: int = 0


class SyncHub:
    """Single writer of the shared ladder."""

    def __init__(
        self,
        store: StateStore | None = None,
        rail_count: int = DEFAULT_RAIL_COUNT,
        flush_interval: float = 5.0,
        outbox_size: int = 256,
    ):
        self.store = store
        self.rail_count = rail_count
        self.flush_interval = flush_interval
        self.outbox_size = outbox_size
        self.session = SessionState()
        self._lock = asyncio.Lock()
        self._clients: dict[int, ClientHandle] = {}
        self._ids = itertools.count(1)
        self._loaded = False
        self._dirty = False
        self._flush_task: asyncio.Task | None = None
        self._closing: set[asyncio.Task] = set()
        self._stats = HubStats()

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        async with self._lock:
            await self._load()
        if self.flush_interval > 0 and self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_periodically())

    async def stop(self) -> None:
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        for handle in list(self._clients.values()):
            self._drop(handle)
        await self.flush(force=True)

    async def _load(self) -> None:
        """Adopt the stored session; anything unreadable means a fresh ladder."""
        self._loaded = True
        if self.store is None:
            return
        try:
            snapshot = await asyncio.to_thread(self.store.load)
            if snapshot is not None:
                self._check_loaded(snapshot)
        except (StoreError, OSError) as exc:
            logger.error("Could not load session, starting empty: %s", exc)
            return
        if snapshot is None:
            logger.info("No stored session, starting empty")
            return
        self.session.replace(snapshot)
        logger.info(
            "Loaded session: %d rungs, phase=%s, version=%d",
            len(snapshot.rungs), snapshot.phase.value, snapshot.version,
        )

    def _check_loaded(self, snapshot: SessionSnapshot) -> None:
        """Replay the stored rungs through the drawing rules; any refusal means corruption."""
        accepted: list[Rung] = []
        for rung in snapshot.rungs:
            check = validate_rung(rung, accepted, rail_count=self.rail_count)
            if not check.ok:
                raise StoreError(f"Stored rung {rung.id} is invalid: {check.message}")
            accepted.append(rung)

    # ── Connections ──────────────────────────────────────────────────

    async def connect(self, connection: Connection) -> ClientHandle:
        """Register *connection* and queue the full current state for it."""
        async with self._lock:
            if not self._loaded:
                await self._load()
            handle = ClientHandle(
                id=next(self._ids),
                connection=connection,
                outbox=asyncio.Queue(maxsize=self.outbox_size),
            )
            handle.task = asyncio.create_task(self._pump(handle))
            self._clients[handle.id] = handle
            self._enqueue(handle, dump(init_message(self.session.snapshot())))
        logger.info("Client %d connected (%d online)", handle.id, len(self._clients))
        return handle

    async def disconnect(self, handle: ClientHandle) -> None:
        """Forget *handle*. The ladder itself is left untouched."""
        async with self._lock:
            self._drop(handle)
        logger.info("Client %d disconnected (%d online)", handle.id, len(self._clients))
        await self.flush()

    def _drop(self, handle: ClientHandle) -> None:
        handle.closed = True
        self._clients.pop(handle.id, None)
        if handle.task is not None and handle.task is not asyncio.current_task():
            handle.task.cancel()

    async def _pump(self, handle: ClientHandle) -> None:
        while True:
            message = await handle.outbox.get()
            try:
                await handle.connection.send_json(message)
            except Exception as exc:  # any transport failure ends this client only
                logger.warning("Send to client %d failed: %s", handle.id, exc)
                handle.closed = True
                self._clients.pop(handle.id, None)
                return

    def _enqueue(self, handle: ClientHandle, message: dict) -> None:
        if handle.closed:
            return
        try:
            handle.outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Client %d fell %d messages behind, dropping it", handle.id, self.outbox_size,
            )
            self._drop(handle)
            task = asyncio.create_task(self._close_quietly(handle))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    @staticmethod
    async def _close_quietly(handle: ClientHandle) -> None:
        try:
            await handle.connection.close(code=1013)
        except Exception as exc:
            logger.debug("Closing client %d failed: %s", handle.id, exc)

    def _broadcast(self, message: dict, exclude: ClientHandle | None = None) -> None:
        for handle in list(self._clients.values()):
            if handle is not exclude:
                self._enqueue(handle, message)

    # ── Events ───────────────────────────────────────────────────────

    async def receive(self, sender: ClientHandle | None, payload: object) -> list[dict]:
        """Validate a raw payload from *sender* and apply it."""
        try:
            event = parse_client_event(payload)
        except ValidationError as exc:
            logger.info("Invalid message from client %s: %s", _label(sender), exc.error_count())
            reply = dump(ErrorMessage(code="invalid-message", message=str(exc)))
            if sender is not None:
                self._enqueue(sender, reply)
            return [reply]
        return await self.dispatch(sender, event)

    async def dispatch(
        self,
        sender: ClientHandle | None,
        event: DrawLineEvent | FinishEvent | ResetEvent | RequestStateEvent,
    ) -> list[dict]:
        """Apply one event. Returns the messages addressed to *sender*.

        Messages for a registered *sender* are also queued on its outbox
        here, under the lock, so they stay ordered with broadcasts.
        """
        replies: list[dict] = []
        async with self._lock:
            if not self._loaded:
                await self._load()
            if isinstance(event, DrawLineEvent):
                await self._draw_line(sender, event.rung.to_rung(), replies)
            elif isinstance(event, FinishEvent):
                await self._finish(sender, replies)
            elif isinstance(event, ResetEvent):
                await self._reset()
            elif isinstance(event, RequestStateEvent):
                self._reply(sender, dump(state_update_message(self.session.snapshot())), replies)
        return replies

    def _reply(self, sender: ClientHandle | None, message: dict, replies: list[dict]) -> None:
        replies.append(message)
        if sender is not None:
            self._enqueue(sender, message)

    async def _draw_line(self, sender: ClientHandle | None, rung: Rung, replies: list[dict]) -> None:
        check = validate_rung(rung, self.session.rungs, rail_count=self.rail_count)
        if check.ok and not self.session.append(rung):
            check = RungCheck(
                ok=False,
                reason=RejectReason.DRAWING_CLOSED,
                message="Results are showing; reset before drawing.",
            )
        if not check.ok:
            self._stats.rejected += 1
            logger.info("Rejected rung %s from client %s: %s", rung.id, _label(sender), check.reason.value)
            self._reply(
                sender,
                dump(RejectedMessage(rung_id=rung.id, reason=check.reason.value, message=check.message)),
                replies,
            )
            return

        self._stats.accepted += 1
        snapshot = self.session.snapshot()
        logger.debug("Accepted rung %s (version %d)", rung.id, snapshot.version)
        self._broadcast(
            dump(NewLineMessage(rung=RungModel.from_rung(rung), version=snapshot.version)),
            exclude=sender,
        )
        await self._persist(snapshot)

    async def _finish(self, sender: ClientHandle | None, replies: list[dict]) -> None:
        changed = self.session.finish()
        snapshot = self.session.snapshot()
        message = dump(show_results_message(snapshot))
        if not changed:
            # Already showing; bring the sender back in line without re-broadcasting
            self._reply(sender, message, replies)
            return
        logger.info("Showing results for %d rungs", len(snapshot.rungs))
        replies.append(message)
        self._broadcast(message)
        await self._persist(snapshot)

    async def _reset(self) -> None:
        self.session.reset()
        snapshot = self.session.snapshot()
        logger.info("Ladder reset (version %d)", snapshot.version)
        self._broadcast(dump(ResetMessage(version=snapshot.version)))
        await self._persist(snapshot)

    # ── Persistence ──────────────────────────────────────────────────

    async def _persist(self, snapshot: SessionSnapshot) -> None:
        """Save a committed snapshot. Failures are logged; the hub keeps serving."""
        if self.store is None:
            return
        try:
            await asyncio.to_thread(self.store.save, snapshot)
        except (StoreError, OSError) as exc:
            self._stats.persistence_failures += 1
            self._dirty = True
            logger.error("Could not save session version %d: %s", snapshot.version, exc)
        else:
            self._dirty = False

    async def flush(self, force: bool = False) -> None:
        """Save the current snapshot if a previous save failed (or always, with *force*)."""
        if self.store is None:
            return
        async with self._lock:
            if force or self._dirty:
                await self._persist(self.session.snapshot())

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    # ── Introspection ────────────────────────────────────────────────

    def snapshot(self) -> SessionSnapshot:
        return self.session.snapshot()

    def stats(self) -> HubStats:
        self._stats.connections = len(self._clients)
        return self._stats


def _label(sender: ClientHandle | None) -> str:
    return str(sender.id) if sender is not None else "http"

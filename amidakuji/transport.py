"""aiohttp transports for :class:`~amidakuji.agent.ClientSyncAgent`.

``WebSocketTransport`` is the normal push channel. ``PollingTransport``
is the degraded mode for when WebSockets are unavailable: it speaks the
same protocol to the agent but polls ``GET /state`` and turns any change
into a ``stateUpdate`` message.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable

import aiohttp

from amidakuji.agent import Transport, TransportError

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)


class WebSocketTransport:
    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float = 30.0,
    ):
        self.url = url
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            self._ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat)
        except _NETWORK_ERRORS as exc:
            raise TransportError(f"Could not connect to {self.url}: {exc}") from exc
        logger.info("Connected to %s", self.url)

    async def send(self, message: dict) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("Not connected.")
        try:
            await self._ws.send_json(message)
        except (*_NETWORK_ERRORS, RuntimeError) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    async def receive(self) -> dict:
        if self._ws is None:
            raise TransportError("Not connected.")
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    return json.loads(msg.data)
                except ValueError:
                    logger.warning("Dropping non-JSON frame from hub")
                    continue
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                raise TransportError(f"Channel closed ({msg.type.name}).")

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class PollingTransport:
    """HTTP stand-in for the push channel."""

    def __init__(
        self,
        base_url: str,
        interval: float = 1.0,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._last: tuple | None = None
        self._open = False

    @staticmethod
    def _fingerprint(state: dict) -> tuple:
        return (
            json.dumps(state.get("rungs", []), sort_keys=True),
            state.get("phase"),
            state.get("version"),
        )

    async def _fetch_state(self) -> dict:
        if self._session is None:
            raise TransportError("Not connected.")
        try:
            async with self._session.get(f"{self.base_url}/state") as resp:
                resp.raise_for_status()
                return await resp.json()
        except _NETWORK_ERRORS as exc:
            raise TransportError(f"Polling {self.base_url} failed: {exc}") from exc

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        state = await self._fetch_state()
        self._last = self._fingerprint(state)
        self._open = True
        await self._inbox.put({
            "type": "init",
            "rungs": state.get("rungs", []),
            "phase": state.get("phase", "drawing"),
            "version": state.get("version", 0),
        })

    async def send(self, message: dict) -> None:
        if not self._open or self._session is None:
            raise TransportError("Not connected.")
        try:
            async with self._session.post(f"{self.base_url}/events", json=message) as resp:
                if resp.status >= 500:
                    raise TransportError(f"Hub answered {resp.status}.")
                body = await resp.json()
        except _NETWORK_ERRORS as exc:
            raise TransportError(f"Posting to {self.base_url} failed: {exc}") from exc
        # The next poll is reported even if it matches the last one
        self._last = None
        for reply in body.get("replies", []):
            await self._inbox.put(reply)

    async def receive(self) -> dict:
        while True:
            if not self._inbox.empty():
                return self._inbox.get_nowait()
            if not self._open:
                raise TransportError("Polling stopped.")
            await self._sleep(self.interval)
            if not self._open:
                raise TransportError("Polling stopped.")
            state = await self._fetch_state()
            fingerprint = self._fingerprint(state)
            if fingerprint != self._last:
                self._last = fingerprint
                return {
                    "type": "stateUpdate",
                    "rungs": state.get("rungs", []),
                    "phase": state.get("phase", "drawing"),
                    "version": state.get("version", 0),
                }

    async def close(self) -> None:
        self._open = False
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def make_transport(base_url: str, polling: bool = False) -> Transport:
    """Push channel by default; *polling* picks the HTTP fallback for the same hub."""
    base_url = base_url.rstrip("/")
    if polling:
        return PollingTransport(base_url)
    if base_url.startswith("https://"):
        ws_url = "wss://" + base_url[len("https://"):]
    elif base_url.startswith("http://"):
        ws_url = "ws://" + base_url[len("http://"):]
    else:
        ws_url = base_url
    return WebSocketTransport(ws_url + "/ws")

"""Persistent WebSocket client for the remote log stream.

The listener never gives up: every connect or read failure (including a clean
close from the server) drops back to DISCONNECTED, waits a fixed backoff and
connects again. Messages are handed to the handler one at a time, in order.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import quote

import aiohttp

DEFAULT_RECONNECT_DELAY_SECONDS = 3.0

log = logging.getLogger("clipwatch.listener")

MessageHandler = Callable[[str], Any]


class ListenerState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class StreamClosed(Exception):
    """The server ended the stream or reported a protocol error."""


def build_stream_url(server_addr: str, file_name: str) -> str:
    return f"ws://{server_addr}/ws/{quote(file_name, safe='')}"


class EventStreamListener:
    def __init__(
        self,
        url: str,
        handler: MessageHandler,
        *,
        session: aiohttp.ClientSession,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.handler = handler
        self.session = session
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self.state = ListenerState.DISCONNECTED
        self.connect_attempts = 0
        self.messages_received = 0
        self.last_error: str | None = None
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @classmethod
    def from_cfg(
        cls,
        cfg: Mapping[str, Any],
        handler: MessageHandler,
        session: aiohttp.ClientSession,
    ) -> "EventStreamListener":
        source = cfg["event_source"]
        listener_cfg = cfg.get("listener") or {}
        return cls(
            build_stream_url(source["server_addr"], source.get("file_name", "")),
            handler,
            session=session,
            reconnect_delay=float(
                listener_cfg.get("reconnect_delay_sec", DEFAULT_RECONNECT_DELAY_SECONDS)
            ),
        )

    def _dispatch(self, message: str) -> None:
        self.messages_received += 1
        try:
            self.handler(message)
        except Exception:  # noqa: BLE001 - a bad line must not drop the stream
            log.exception("Log message handler failed")

    async def connect_and_listen(self) -> None:
        """Run one connection until it fails; always ends with an exception."""

        self.state = ListenerState.CONNECTING
        self.connect_attempts += 1
        async with self.session.ws_connect(self.url, autoping=True) as ws:
            self.state = ListenerState.CONNECTED
            log.info("Connected to %s, receiving log lines", self.url)
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._dispatch(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise StreamClosed(f"stream error: {ws.exception()}")
            raise StreamClosed(f"stream closed (code {ws.close_code})")

    async def run(self) -> None:
        while True:
            try:
                await self.connect_and_listen()
            except asyncio.CancelledError:
                self.state = ListenerState.DISCONNECTED
                raise
            except Exception as exc:  # noqa: BLE001 - every failure means reconnect
                self.last_error = str(exc) or exc.__class__.__name__
            self.state = ListenerState.DISCONNECTED
            log.warning(
                "Log stream disconnected, reconnecting in %.0fs: %s",
                self.reconnect_delay,
                self.last_error,
            )
            await self._sleep(self.reconnect_delay)

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self.run(), name="log-listener")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

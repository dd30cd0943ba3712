from __future__ import annotations

import json
import asyncio
import logging
from time import time
from contextlib import aclosing, suppress
from datetime import datetime
from typing import Any, Union, TYPE_CHECKING

import aiohttp
from yarl import URL

from translate import _
from constants import Event, PING_INTERVAL, PING_TIMEOUT
from exceptions import EventStreamClosed
from inventory import MiningStatus
from utils import (
    task_wrapper,
    json_minify,
    optional_timestamp,
    format_traceback,
    AwaitableValue,
    ExponentialBackoff,
)

if TYPE_CHECKING:
    from collections import abc

    from backend import BackendClient
    from constants import JsonType


WSMsgType = aiohttp.WSMsgType
ws_logger = logging.getLogger("DropsCenter.events")


class ProgressEvent:
    __slots__ = ("drop_id", "campaign_id", "current_minutes", "required_minutes", "timestamp")

    def __init__(self, payload: JsonType):
        self.drop_id: str = payload["drop_id"]
        self.campaign_id: str | None = payload.get("campaign_id")
        self.current_minutes: int = int(payload.get("current_minutes") or 0)
        self.required_minutes: int = int(payload.get("required_minutes") or 0)
        self.timestamp: datetime | None = optional_timestamp(payload.get("timestamp"))

    @classmethod
    def new(
        cls,
        drop_id: str,
        current_minutes: int,
        required_minutes: int,
        *,
        campaign_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> ProgressEvent:
        self = cls.__new__(cls)
        self.drop_id = drop_id
        self.campaign_id = campaign_id
        self.current_minutes = current_minutes
        self.required_minutes = required_minutes
        self.timestamp = timestamp
        return self

    def __repr__(self) -> str:
        return f"ProgressEvent({self.drop_id}, {self.current_minutes}/{self.required_minutes})"


class MiningStatusEvent:
    __slots__ = ("status",)

    def __init__(self, payload: JsonType):
        self.status: MiningStatus = MiningStatus(payload)

    def __repr__(self) -> str:
        return f"MiningStatusEvent({self.status!r})"


class MiningCompleteEvent:
    __slots__ = ("game_name", "reason")

    def __init__(self, payload: JsonType):
        self.game_name: str = payload.get("game_name") or ''
        self.reason: str = payload.get("reason") or ''

    def __repr__(self) -> str:
        return f"MiningCompleteEvent({self.game_name}, {self.reason})"


class NoChannelsEvent:
    __slots__ = ("reason",)

    def __init__(self, payload: JsonType):
        self.reason: str = payload.get("reason") or ''

    def __repr__(self) -> str:
        return f"NoChannelsEvent({self.reason})"


BackendEvent = Union[ProgressEvent, MiningStatusEvent, MiningCompleteEvent, NoChannelsEvent]
EVENT_TYPES: dict[str, type[BackendEvent]] = {
    Event.PROGRESS: ProgressEvent,
    Event.MINING_STATUS: MiningStatusEvent,
    Event.MINING_COMPLETE: MiningCompleteEvent,
    Event.NO_CHANNELS: NoChannelsEvent,
}


def parse_event(name: str, payload: Any) -> BackendEvent | None:
    """
    Turns a pushed event into its typed form. Unknown or malformed events return `None`.
    """
    event_type = EVENT_TYPES.get(name)
    if event_type is None:
        ws_logger.debug(f"Ignoring unknown event: {name}")
        return None
    if not isinstance(payload, dict):
        payload = {}
    try:
        return event_type(payload)
    except (KeyError, TypeError, ValueError):
        ws_logger.warning(f"Malformed {name} event: {payload}")
        return None


class EventStream:
    """
    Websocket connection receiving the backend's push events.

    Events are put onto the queue in the order they arrive, for a single consumer to apply.
    """
    def __init__(self, backend: BackendClient, queue: asyncio.Queue[BackendEvent]):
        self._backend: BackendClient = backend
        self._queue: asyncio.Queue[BackendEvent] = queue
        self._lock = asyncio.Lock()
        self.status: str = _("events", "disconnected")
        self._ws: AwaitableValue[aiohttp.ClientWebSocketResponse] = AwaitableValue()
        self._stopping = asyncio.Event()
        self._reconnect = asyncio.Event()
        # when the next PING is due, and until when its PONG is expected
        self._ping_at: float = time()
        self._pong_deadline: float = self._ping_at + PING_TIMEOUT.total_seconds()
        self._task: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"EventStream({self.url}, {self.status})"

    @property
    def url(self) -> URL:
        base = self._backend.base_url
        scheme = "wss" if base.scheme == "https" else "ws"
        return base.with_scheme(scheme) / "events"

    def _set_status(self, status: str) -> None:
        self.status = status
        ws_logger.info(f"Event stream: {status}")

    def request_reconnect(self) -> None:
        # PING right away once connected again
        self._ping_at = time()
        self._reconnect.set()

    def start_nowait(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def start(self) -> None:
        async with self._lock:
            self.start_nowait()

    async def stop(self) -> None:
        async with self._lock:
            task, self._task = self._task, None
            if task is None:
                return
            self._stopping.set()
            if (ws := self._ws.get_with_default(None)) is not None:
                await ws.close()
            await asyncio.wait([task], timeout=2)
            if not task.done():
                task.cancel()
            self._set_status(_("events", "disconnected"))

    async def _connections(
        self, **backoff_kwargs: Any
    ) -> abc.AsyncGenerator[aiohttp.ClientWebSocketResponse, None]:
        """
        Yields a fresh connection each time the previous one has been let go of,
        waiting out connection errors with an exponential backoff.
        """
        session = await self._backend.get_session()
        proxy = self._backend.settings.proxy or None
        backoff = ExponentialBackoff(**backoff_kwargs)
        while not self._stopping.is_set():
            try:
                async with session.ws_connect(self.url, proxy=proxy) as websocket:
                    yield websocket
                backoff.reset()
            except (
                asyncio.TimeoutError,
                aiohttp.ClientResponseError,
                aiohttp.ClientConnectionError,
            ):
                delay = next(backoff)
                ws_logger.info(f"Unable to reach the event stream, retrying in {round(delay)}s")
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except RuntimeError:
                ws_logger.warning("Event stream session has been closed, giving up")
                return

    @task_wrapper
    async def _run(self) -> None:
        self._stopping.clear()
        self._set_status(_("events", "connecting"))
        async with aclosing(self._connections(maximum=3*60)) as connections:
            async for websocket in connections:
                self._ws.set(websocket)
                self._reconnect.clear()
                self._set_status(_("events", "connected"))
                try:
                    while not self._reconnect.is_set():
                        await self._ping()
                        await self._receive(websocket)
                except EventStreamClosed as exc:
                    if self._stopping.is_set():
                        break
                    if exc.received:
                        ws_logger.warning(
                            f"Event stream closed by the backend: {websocket.close_code}"
                        )
                except Exception:
                    ws_logger.exception("Exception in the event stream")
                finally:
                    self._ws.clear()
                self._set_status(_("events", "reconnecting"))
        self._set_status(_("events", "disconnected"))

    async def _ping(self) -> None:
        now = time()
        if now >= self._ping_at:
            self._ping_at = now + PING_INTERVAL.total_seconds()
            self._pong_deadline = now + PING_TIMEOUT.total_seconds()
            await self.send({"type": "PING"})
        elif now >= self._pong_deadline:
            ws_logger.warning("Event stream missed a PONG, reconnecting")
            self.request_reconnect()

    async def _receive(
        self, websocket: aiohttp.ClientWebSocketResponse, timeout: float = 0.5
    ) -> None:
        """
        Handles incoming messages until none arrives for `timeout` seconds.
        """
        while True:
            try:
                raw_message: aiohttp.WSMessage = await websocket.receive(timeout=timeout)
            except asyncio.TimeoutError:
                return
            ws_logger.debug(f"Event stream received: {raw_message}")
            if raw_message.type is WSMsgType.TEXT:
                try:
                    message = json.loads(raw_message.data)
                except ValueError:
                    ws_logger.warning(f"Event stream received invalid JSON: {raw_message.data}")
                    continue
                self.handle_message(message)
            elif raw_message.type is WSMsgType.CLOSE:
                raise EventStreamClosed(received=True)
            elif raw_message.type is WSMsgType.CLOSED:
                raise EventStreamClosed()
            elif raw_message.type is WSMsgType.ERROR:
                ws_logger.error(f"Event stream error: {format_traceback(raw_message.data)}")
                raise EventStreamClosed()
            elif raw_message.type is not WSMsgType.CLOSING:
                ws_logger.warning(f"Event stream received an unexpected message: {raw_message}")

    def handle_message(self, message: Any) -> None:
        if not isinstance(message, dict):
            ws_logger.warning(f"Event stream received a non-object message: {message}")
            return
        msg_type = message.get("type")
        if msg_type == "EVENT":
            event = parse_event(message.get("event", ''), message.get("payload"))
            if event is not None:
                self._queue.put_nowait(event)
        elif msg_type == "PONG":
            # nothing more is expected until the next PING goes out
            self._pong_deadline = self._ping_at
        elif msg_type == "RECONNECT":
            ws_logger.warning("Event stream reconnect requested by the backend")
            self.request_reconnect()
        else:
            ws_logger.warning(f"Event stream received an unknown message: {message}")

    async def send(self, message: JsonType) -> None:
        ws = self._ws.get_with_default(None)
        if ws is None:
            raise EventStreamClosed()
        await ws.send_json(message, dumps=json_minify)
        ws_logger.debug(f"Event stream sent: {message}")

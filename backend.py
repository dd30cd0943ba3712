from __future__ import annotations

import asyncio
import logging
from time import time
from contextlib import suppress, asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, TYPE_CHECKING

import aiohttp
from yarl import URL

from translate import _
from utils import ExponentialBackoff
from exceptions import ExitRequest, RequestInvalid, RequestException, CommandFailed

if TYPE_CHECKING:
    from collections import abc

    from settings import Settings
    from output import OutputManager
    from constants import Operation


logger = logging.getLogger("DropsCenter")
backend_logger = logging.getLogger("DropsCenter.backend")


class BackendClient:
    """
    HTTP transport to the mining backend.

    Every command is a `POST {backend_url}/invoke/{command}` with a JSON object body.
    Successful calls answer with a JSON value (or nothing), failed ones with `{"error": ...}`.
    """
    def __init__(self, settings: Settings, output: OutputManager):
        self.settings: Settings = settings
        self._output: OutputManager = output
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> URL:
        return URL(self.settings.backend_url)

    def _connection_quality(self) -> int:
        # timeouts scale with the configured connection quality, kept within 1-6
        quality = min(max(self.settings.connection_quality, 1), 6)
        if quality != self.settings.connection_quality:
            self.settings.connection_quality = quality
        return quality

    def retry_deadline(self, window: timedelta) -> datetime:
        """
        An `invalidate_after` value that lets a request be retried for about `window`.
        """
        total = timedelta(seconds=10 * self._connection_quality())
        return datetime.now(timezone.utc) + total + window

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            quality = self._connection_quality()
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(sock_connect=5 * quality, total=10 * quality),
                connector=aiohttp.TCPConnector(limit=20),
            )
        elif self._session.closed:
            raise RuntimeError("Session is closed")
        return self._session

    async def shutdown(self) -> None:
        if self._session is None:
            return
        deadline = time() + 0.5
        session, self._session = self._session, None
        await session.close()
        # aiohttp needs a short grace period for the transports to finish closing
        await asyncio.sleep(max(deadline - time(), 0))

    def _expired(self, invalidate_after: datetime | None, margin: timedelta) -> bool:
        if invalidate_after is None:
            return False
        return datetime.now(timezone.utc) + margin >= invalidate_after

    @asynccontextmanager
    async def request(
        self, method: str, url: URL | str, *, invalidate_after: datetime | None = None, **kwargs
    ) -> abc.AsyncIterator[aiohttp.ClientResponse]:
        """
        Sends a request, retrying on connection errors and 5xx answers.

        Without `invalidate_after` it retries until it goes through, otherwise
        it raises `RequestInvalid` once a retry could no longer finish in time.
        """
        session = await self.get_session()
        method = method.upper()
        if self.settings.proxy:
            kwargs.setdefault("proxy", self.settings.proxy)
        backend_logger.debug(f"Request: {method} {url} {kwargs}")
        margin = timedelta(seconds=session.timeout.total or 0)
        backoff = ExponentialBackoff(maximum=180)
        for delay in backoff:
            if self._output.close_requested:
                raise ExitRequest()
            if self._expired(invalidate_after, margin):
                raise RequestInvalid()
            response: aiohttp.ClientResponse | None = None
            try:
                response = await self._output.coro_unless_closed(
                    session.request(method, url, **kwargs)
                )
                backend_logger.debug(f"Response: {response.status} for {method} {url}")
                if response.status < 500:
                    # the body has to be read before the response gets released
                    await response.read()
                    yield response
                    return
                self._output.print(_("error", "site_down").format(seconds=round(delay)))
            except (
                aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError
            ):
                # the first couple of quick retries stay silent
                if backoff.steps > 1:
                    self._output.print(_("error", "no_connection").format(seconds=round(delay)))
            finally:
                if response is not None:
                    response.release()
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._output.wait_until_closed(), timeout=delay)

    async def call(
        self, operation: Operation, *, invalidate_after: datetime | None = None
    ) -> Any:
        """
        Invokes a backend command and returns its decoded JSON result.

        Raises `CommandFailed` when the backend rejects the command,
        and `RequestException` when the response can't be understood.
        """
        operation.validate()
        command = operation.command
        url = self.base_url / "invoke" / command
        backend_logger.debug(f"Command: {command} {operation.args}")
        async with self.request(
            "POST", url, json=operation.args, invalidate_after=invalidate_after
        ) as response:
            status = response.status
            try:
                data: Any = await response.json(content_type=None)
            except ValueError as exc:
                if status >= 400:
                    raise CommandFailed(command, f"HTTP {status}") from exc
                raise RequestException(f"Invalid response for '{command}'") from exc
        backend_logger.debug(f"Command result: {command}: {data}")
        if status >= 400:
            reason: str = f"HTTP {status}"
            if isinstance(data, dict) and "error" in data:
                reason = str(data["error"])
            elif isinstance(data, str) and data:
                reason = data
            raise CommandFailed(command, reason)
        return data


import unittest
from unittest.mock import patch, MagicMock, AsyncMock
import sys
from pathlib import Path
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import asyncio

import aiohttp
from yarl import URL

# Add project root to path to allow imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend import BackendClient
from constants import OPERATIONS
from exceptions import CommandFailed, ExitRequest, RequestException, RequestInvalid
from output import OutputManager
from translate import _
from utils import ExponentialBackoff


def fake_request(status, *, data=None, error=None):
    response = MagicMock()
    response.status = status
    if error is not None:
        response.json = AsyncMock(side_effect=error)
    else:
        response.json = AsyncMock(return_value=data)
    requests = []

    @asynccontextmanager
    async def request(method, url, **kwargs):
        requests.append((method, url, kwargs))
        yield response

    return request, requests


class TestBackendClient(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.settings = MagicMock()
        self.settings.backend_url = URL("http://127.0.0.1:7878")
        self.settings.proxy = URL()
        self.settings.connection_quality = 1
        self.client = BackendClient(self.settings, MagicMock())

    async def test_call(self):
        request, requests = fake_request(200, data=[{"id": "c1"}])
        with patch.object(self.client, "request", request):
            data = await self.client.call(
                OPERATIONS["StartCampaign"].with_args(campaign_id="c1")
            )
        self.assertEqual(data, [{"id": "c1"}])
        method, url, kwargs = requests[0]
        self.assertEqual(method, "POST")
        self.assertEqual(str(url), "http://127.0.0.1:7878/invoke/start_campaign_mining")
        self.assertEqual(kwargs["json"], {"campaign_id": "c1"})

    async def test_error_reason(self):
        request, _ = fake_request(400, data={"error": "Campaign not found"})
        with patch.object(self.client, "request", request):
            with self.assertRaises(CommandFailed) as ctx:
                await self.client.call(OPERATIONS["StopMining"])
        self.assertEqual(ctx.exception.command, "stop_auto_mining")
        self.assertEqual(ctx.exception.reason, "Campaign not found")

    async def test_error_without_body(self):
        request, _ = fake_request(404, error=ValueError("no json"))
        with patch.object(self.client, "request", request):
            with self.assertRaises(CommandFailed) as ctx:
                await self.client.call(OPERATIONS["StopMining"])
        self.assertEqual(ctx.exception.reason, "HTTP 404")

    async def test_invalid_json(self):
        request, _ = fake_request(200, error=ValueError("no json"))
        with patch.object(self.client, "request", request):
            with self.assertRaises(RequestException):
                await self.client.call(OPERATIONS["Campaigns"])

    async def test_call_passes_deadline(self):
        request, requests = fake_request(200, data=None)
        deadline = datetime.now(timezone.utc)
        with patch.object(self.client, "request", request):
            await self.client.call(OPERATIONS["StopMining"], invalidate_after=deadline)
        self.assertIs(requests[0][2]["invalidate_after"], deadline)

    def test_retry_deadline(self):
        self.settings.connection_quality = 9
        before = datetime.now(timezone.utc)
        deadline = self.client.retry_deadline(timedelta(seconds=30))
        self.assertEqual(self.settings.connection_quality, 6)
        self.assertGreaterEqual(deadline, before + timedelta(seconds=90))
        self.assertLess(deadline, before + timedelta(seconds=95))

    async def test_missing_argument(self):
        with self.assertRaises(RuntimeError):
            await self.client.call(OPERATIONS["StartCampaign"])

    def test_unknown_argument(self):
        with self.assertRaises(RuntimeError):
            OPERATIONS["StartCampaign"].with_args(game_id="g1")

    def test_with_args_copies(self):
        OPERATIONS["ClaimDrop"].with_args(drop_id="r1")
        self.assertIs(OPERATIONS["ClaimDrop"].args["drop_id"], ...)


def fake_response(status):
    response = MagicMock()
    response.status = status
    response.read = AsyncMock()
    return response


class TestRequestRetries(unittest.IsolatedAsyncioTestCase):
    ENDPOINT = URL("http://127.0.0.1:7878/invoke/get_mining_status")

    async def asyncSetUp(self):
        self.settings = MagicMock()
        self.settings.backend_url = URL("http://127.0.0.1:7878")
        self.settings.proxy = URL()
        self.settings.connection_quality = 1
        self.output = OutputManager()
        patcher = patch.object(self.output, "print")
        self.printed = patcher.start()
        self.addCleanup(patcher.stop)
        self.session = MagicMock()
        self.session.timeout.total = 10
        self.session.request = AsyncMock()
        self.client = BackendClient(self.settings, self.output)
        patcher = patch.object(self.client, "get_session", AsyncMock(return_value=self.session))
        patcher.start()
        self.addCleanup(patcher.stop)
        # retry right away instead of backing off
        patcher = patch("backend.ExponentialBackoff", return_value=ExponentialBackoff(maximum=0))
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_server_error_is_retried(self):
        down, up = fake_response(503), fake_response(200)
        self.session.request.side_effect = [down, up]
        async with self.client.request("POST", self.ENDPOINT) as response:
            self.assertIs(response, up)
        self.assertEqual(self.session.request.await_count, 2)
        down.release.assert_called_once()
        up.read.assert_awaited_once()
        up.release.assert_called_once()
        self.printed.assert_called_once_with(_("error", "site_down").format(seconds=0))

    async def test_client_error_isnt_retried(self):
        self.session.request.side_effect = [fake_response(404)]
        async with self.client.request("POST", self.ENDPOINT) as response:
            self.assertEqual(response.status, 404)
        self.assertEqual(self.session.request.await_count, 1)

    async def test_connection_error_is_retried(self):
        up = fake_response(200)
        self.session.request.side_effect = [
            aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError(), up
        ]
        async with self.client.request("POST", self.ENDPOINT) as response:
            self.assertIs(response, up)
        self.assertEqual(self.session.request.await_count, 3)

    async def test_close_stops_retrying(self):
        def refuse(*args, **kwargs):
            self.output.close()
            raise aiohttp.ClientConnectionError("refused")

        self.session.request.side_effect = refuse
        with self.assertRaises(ExitRequest):
            async with self.client.request("POST", self.ENDPOINT):
                pass
        self.assertEqual(self.session.request.await_count, 1)

    async def test_expired_request_isnt_sent(self):
        invalidate_after = datetime.now(timezone.utc) + timedelta(seconds=5)
        with self.assertRaises(RequestInvalid):
            async with self.client.request(
                "POST", self.ENDPOINT, invalidate_after=invalidate_after
            ):
                pass
        self.session.request.assert_not_awaited()

    async def test_retries_stop_at_deadline(self):
        self.session.request.side_effect = aiohttp.ClientConnectionError("refused")
        # the session timeout counts against the deadline too
        invalidate_after = datetime.now(timezone.utc) + timedelta(seconds=10.2)
        with self.assertRaises(RequestInvalid):
            async with self.client.request(
                "POST", self.ENDPOINT, invalidate_after=invalidate_after
            ):
                pass
        self.assertGreater(self.session.request.await_count, 1)
        self.assertGreaterEqual(datetime.now(timezone.utc), invalidate_after - timedelta(seconds=10))


if __name__ == "__main__":
    unittest.main()

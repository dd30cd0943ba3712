from __future__ import annotations

import asyncio
import logging
from typing import Any, TypeVar, Callable, TYPE_CHECKING

import aiohttp

from constants import CALL, OPERATIONS, RETRY_WINDOW
from exceptions import RequestException, SourceUnavailable, CommandFailed
from inventory import Campaign, Progress, Inventory, Statistics, MiningStatus, MiningChannel

if TYPE_CHECKING:
    from collections import abc
    from datetime import datetime

    from backend import BackendClient
    from constants import JsonType, Operation


_T = TypeVar("_T")
logger = logging.getLogger("DropsCenter")
# anything that can go wrong with a single source, from the transport up to parsing
FETCH_ERRORS = (
    RequestException,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    KeyError,
    TypeError,
    ValueError,
)


def _as_list(data: Any) -> list[JsonType]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise TypeError(f"Expected a list, got: {type(data).__name__}")
    return data


def _as_dict(data: Any) -> JsonType:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise TypeError(f"Expected an object, got: {type(data).__name__}")
    return data


class FetchResult:
    """
    Outcome of a full fetch. Sources that failed hold their empty default,
    and are listed in `failed`.
    """
    PHASE_ONE = ("campaigns", "inventory", "statistics", "mining_status")

    def __init__(
        self,
        campaigns: list[Campaign],
        progress: list[Progress],
        inventory: Inventory,
        statistics: Statistics,
        mining_status: MiningStatus,
        failed: set[str] | None = None,
    ):
        self.campaigns: list[Campaign] = campaigns
        self.progress: list[Progress] = progress
        self.inventory: Inventory = inventory
        self.statistics: Statistics = statistics
        self.mining_status: MiningStatus = mining_status
        self.failed: set[str] = failed if failed is not None else set()

    def __repr__(self) -> str:
        failed = f", failed={sorted(self.failed)}" if self.failed else ''
        return (
            f"FetchResult({len(self.campaigns)} campaigns, {len(self.progress)} progress, "
            f"{len(self.inventory.items)} inventory{failed})"
        )

    @property
    def all_failed(self) -> bool:
        """
        `True` when every first phase source failed - there's nothing to show at all.
        """
        return all(source in self.failed for source in self.PHASE_ONE)


class SourceFetcher:
    def __init__(self, backend: BackendClient):
        self._backend: BackendClient = backend

    def _deadline(self) -> datetime:
        # an unreachable backend has to fail soft eventually, instead of retrying forever
        return self._backend.retry_deadline(RETRY_WINDOW)

    async def _fetch(
        self, source: str, operation: Operation, parse: Callable[[Any], _T]
    ) -> _T:
        try:
            data = await self._backend.call(operation, invalidate_after=self._deadline())
            return parse(data)
        except FETCH_ERRORS as exc:
            raise SourceUnavailable(source) from exc

    async def _fail_soft(
        self,
        source: str,
        coro: abc.Coroutine[Any, Any, _T],
        default: _T,
        failed: set[str] | None = None,
    ) -> _T:
        try:
            return await coro
        except SourceUnavailable as exc:
            logger.warning(f"{exc}: {exc.__cause__!r}")
            if failed is not None:
                failed.add(source)
            return default

    # Sources, raising SourceUnavailable

    async def get_campaigns(self) -> list[Campaign]:
        return await self._fetch(
            "campaigns",
            OPERATIONS["Campaigns"],
            lambda data: [Campaign(c) for c in _as_list(data)],
        )

    async def get_progress(self) -> list[Progress]:
        return await self._fetch(
            "progress",
            OPERATIONS["Progress"],
            lambda data: [Progress(p) for p in _as_list(data)],
        )

    async def get_inventory(self) -> Inventory:
        return await self._fetch(
            "inventory", OPERATIONS["Inventory"], lambda data: Inventory(_as_dict(data))
        )

    async def get_statistics(self) -> Statistics:
        return await self._fetch(
            "statistics", OPERATIONS["Statistics"], lambda data: Statistics(_as_dict(data))
        )

    async def get_mining_status(self) -> MiningStatus:
        return await self._fetch(
            "mining_status",
            OPERATIONS["MiningStatus"],
            lambda data: MiningStatus(_as_dict(data)),
        )

    # Fail-soft variants

    async def fetch_campaigns(self) -> list[Campaign]:
        return await self._fail_soft("campaigns", self.get_campaigns(), [])

    async def fetch_progress(self) -> list[Progress]:
        return await self._fail_soft("progress", self.get_progress(), [])

    async def fetch_inventory(self) -> Inventory:
        return await self._fail_soft("inventory", self.get_inventory(), Inventory.empty())

    async def fetch_statistics(self) -> Statistics:
        return await self._fail_soft("statistics", self.get_statistics(), Statistics.empty())

    async def fetch_mining_status(self) -> MiningStatus:
        return await self._fail_soft(
            "mining_status", self.get_mining_status(), MiningStatus.idle()
        )

    async def fetch_eligible_channels(self, campaign_id: str) -> list[MiningChannel]:
        return await self._fail_soft(
            "eligible_channels",
            self._fetch(
                "eligible_channels",
                OPERATIONS["EligibleChannels"].with_args(campaign_id=campaign_id),
                lambda data: [MiningChannel(c) for c in _as_list(data)],
            ),
            [],
        )

    async def fetch_all(self) -> FetchResult:
        """
        Fetches every source.

        Progress is fetched only after the campaigns fetch completed,
        because that's when the backend refreshes its own progress map.
        """
        failed: set[str] = set()
        logger.log(CALL, "Fetching campaigns, inventory, statistics and mining status")
        campaigns, inventory, statistics, mining_status = await asyncio.gather(
            self._fail_soft("campaigns", self.get_campaigns(), [], failed),
            self._fail_soft("inventory", self.get_inventory(), Inventory.empty(), failed),
            self._fail_soft("statistics", self.get_statistics(), Statistics.empty(), failed),
            self._fail_soft(
                "mining_status", self.get_mining_status(), MiningStatus.idle(), failed
            ),
        )
        logger.log(CALL, "Fetching drops progress")
        progress = await self._fail_soft("progress", self.get_progress(), [], failed)
        result = FetchResult(campaigns, progress, inventory, statistics, mining_status, failed)
        logger.debug(f"Fetch complete: {result!r}")
        return result

    # Commands, raising CommandFailed

    async def _command(self, operation: Operation) -> Any:
        try:
            return await self._backend.call(operation, invalidate_after=self._deadline())
        except CommandFailed:
            raise
        except (RequestException, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CommandFailed(operation.command, str(exc)) from exc

    async def start_campaign_mining(self, campaign_id: str, channel_id: str | None = None):
        if channel_id is None:
            operation = OPERATIONS["StartCampaign"].with_args(campaign_id=campaign_id)
        else:
            operation = OPERATIONS["StartCampaignWithChannel"].with_args(
                campaign_id=campaign_id, channel_id=channel_id
            )
        logger.info(f"Starting campaign mining: {campaign_id} (channel: {channel_id})")
        await self._command(operation)

    async def start_auto_mining(self) -> None:
        await self._command(OPERATIONS["StartAutoMining"])

    async def stop_mining(self) -> None:
        logger.info("Stopping mining")
        await self._command(OPERATIONS["StopMining"])

    async def claim_drop(self, drop_id: str, drop_instance_id: str | None = None) -> None:
        logger.info(f"Claiming drop: {drop_id}")
        await self._command(
            OPERATIONS["ClaimDrop"].with_args(drop_id=drop_id, drop_instance_id=drop_instance_id)
        )

    async def update_drops_settings(self, settings: JsonType) -> None:
        await self._command(OPERATIONS["UpdateSettings"].with_args(settings=settings))

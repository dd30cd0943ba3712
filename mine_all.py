from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING

from translate import _
from output import ToastKind
from utils import task_wrapper
from exceptions import CommandFailed
from aggregator import inventory_progress
from constants import CALL, SETTLE_DELAY, QueueState

if TYPE_CHECKING:
    from view import DropsView
    from settings import Settings
    from sources import SourceFetcher
    from output import OutputManager
    from inventory import Campaign, Progress, Reward


logger = logging.getLogger("DropsCenter")


class StartResult(Enum):
    STARTED = "started"
    NOTHING_TO_DO = "nothing_to_do"
    FAILED = "failed"


class MineAllQueue:
    """
    Campaigns of a single game, mined one after another. Lives only while the run does.
    """
    __slots__ = ("game_name", "campaign_ids", "index")

    def __init__(self, game_name: str, campaign_ids: list[str]):
        self.game_name: str = game_name
        self.campaign_ids: list[str] = campaign_ids
        self.index: int = 0

    def __repr__(self) -> str:
        return f"MineAllQueue({self.game_name}, {self.index + 1}/{len(self.campaign_ids)})"

    def __len__(self) -> int:
        return len(self.campaign_ids)

    @property
    def current_id(self) -> str | None:
        if 0 <= self.index < len(self.campaign_ids):
            return self.campaign_ids[self.index]
        return None


def reward_done(reward: Reward, progress: Progress | None) -> bool:
    # rewards that aren't time-gated can't be mined, so there's nothing left to do for them
    if reward.required_minutes <= 0:
        return True
    if progress is None:
        return False
    return progress.is_claimed or progress.current_minutes >= progress.required_minutes


class QueueController:
    def __init__(
        self,
        view: DropsView,
        fetcher: SourceFetcher,
        output: OutputManager,
        *,
        settings: Settings | None = None,
        lock: asyncio.Lock | None = None,
    ):
        self._view: DropsView = view
        self._fetcher: SourceFetcher = fetcher
        self._output: OutputManager = output
        self._settings: Settings | None = settings
        self._lock: asyncio.Lock = lock if lock is not None else asyncio.Lock()
        self.state: QueueState = QueueState.IDLE
        self.queue: MineAllQueue | None = None
        self._pending: asyncio.Task[None] | None = None
        self._pending_key: tuple[int, int] | None = None

    def __repr__(self) -> str:
        return f"QueueController({self.state.name}, {self.queue!r})"

    @property
    def running(self) -> bool:
        return self.state is QueueState.RUNNING and self.queue is not None

    # Progress lookups

    def _inventory_progress(self, campaign: Campaign, reward: Reward) -> Progress | None:
        return inventory_progress(reward, campaign, self._view.inventory)

    def _start_progress(self, campaign: Campaign, reward: Reward) -> Progress | None:
        # inventory first, then the live list, then whatever the reward carries
        if (progress := self._inventory_progress(campaign, reward)) is not None:
            return progress
        if (progress := self._view.live.get_progress(reward.id)) is not None:
            return progress
        return reward.progress

    def is_complete(self, campaign: Campaign) -> bool:
        """
        Used when a run starts: is there anything left to mine in this campaign?
        """
        return all(
            reward_done(reward, self._start_progress(campaign, reward))
            for reward in campaign.rewards
        )

    def is_complete_live(self, campaign: Campaign) -> bool:
        """
        Used while a run is going: judged by the live progress list only.
        """
        if not campaign.rewards:
            return False
        return all(
            reward_done(reward, self._view.live.get_progress(reward.id))
            for reward in campaign.rewards
        )

    def progress_score(self, campaign: Campaign) -> float:
        """
        Highest progress fraction over the campaign's rewards.
        -1 means nothing was measured at all, which ranks below an explicit 0%.
        """
        score: float = -1
        for reward in campaign.rewards:
            for progress in (
                self._inventory_progress(campaign, reward),
                self._view.live.get_progress(reward.id),
            ):
                if progress is not None and progress.required_minutes > 0:
                    score = max(score, progress.percentage)
        return score

    def plan(self, campaigns: list[Campaign]) -> list[Campaign]:
        candidates = [c for c in campaigns if not self.is_complete(c)]
        # sorted is stable, so equal scores keep their original order
        return sorted(candidates, key=self.progress_score, reverse=True)

    # State changes

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._pending_key = None

    def discard(self) -> None:
        """
        Called on an explicit stop: the run ends, without touching the backend.
        """
        self._cancel_pending()
        if self.queue is not None:
            game_name = self.queue.game_name
            self.queue = None
            self.state = QueueState.ABORTED
            self._output.toast(_("queue", "aborted").format(game=game_name))

    async def _disable_auto_mining(self) -> None:
        settings = self._settings
        if settings is None or not settings.auto_mining_enabled:
            return
        settings.auto_mining_enabled = False
        try:
            await self._fetcher.update_drops_settings(settings.drops_settings())
        except CommandFailed as exc:
            self._output.toast(
                _("error", "settings_push").format(reason=exc.reason), ToastKind.WARNING
            )

    async def start(self, game_name: str) -> StartResult:
        """
        Starts mining every incomplete campaign of a game, best progress first.

        The caller is expected to hold the command lock.
        """
        game = self._view.get_game(game_name)
        campaigns = list(game.campaigns) if game is not None else []
        display_name = game.name if game is not None else game_name
        self._cancel_pending()
        ordered = self.plan(campaigns)
        if not ordered:
            self.queue = None
            self.state = QueueState.COMPLETED
            self._output.toast(_("queue", "nothing_to_do").format(game=display_name))
            return StartResult.NOTHING_TO_DO
        queue = MineAllQueue(display_name, [c.id for c in ordered])
        self.queue = queue
        self.state = QueueState.RUNNING
        logger.info(f"Mine all for {display_name}: {queue.campaign_ids}")
        await self._disable_auto_mining()
        if self._view.mining_status.is_mining:
            try:
                await self._fetcher.stop_mining()
            except CommandFailed as exc:
                logger.warning(f"Ignoring a failed stop before mine all: {exc}")
        if self.queue is not queue:
            # replaced while we were stopping
            return StartResult.STARTED
        self._output.toast(
            _("queue", "started").format(count=len(queue), game=display_name),
            ToastKind.SUCCESS,
        )
        return await self._start_current(queue)

    async def _start_current(self, queue: MineAllQueue) -> StartResult:
        campaign_id = queue.current_id
        assert campaign_id is not None
        campaign = self._view.get_campaign(campaign_id)
        try:
            await self._fetcher.start_campaign_mining(campaign_id)
        except CommandFailed as exc:
            logger.error(f"Mine all failed to start {campaign_id}: {exc}")
            if self.queue is queue:
                self._cancel_pending()
                self.queue = None
                self.state = QueueState.ABORTED
            self._output.toast(
                _("error", "command_failed").format(reason=exc.reason or exc), ToastKind.ERROR
            )
            return StartResult.FAILED
        self._output.toast(
            _("queue", "step").format(
                index=queue.index + 1,
                count=len(queue),
                campaign=campaign.name if campaign is not None else campaign_id,
            )
        )
        return StartResult.STARTED

    async def advance(self, queue: MineAllQueue | None = None) -> None:
        """
        Moves onto the next campaign, or finishes the run past the last one.

        When `queue` is passed, nothing happens unless it's still the current one.
        The caller is expected to hold the command lock.
        """
        if queue is None:
            queue = self.queue
        if queue is None or queue is not self.queue or self.state is not QueueState.RUNNING:
            logger.log(CALL, "Ignoring an advance for a queue that's no longer current")
            return
        self._cancel_pending()
        queue.index += 1
        if queue.index >= len(queue):
            logger.info(f"Mine all finished for {queue.game_name}")
            self.queue = None
            self.state = QueueState.COMPLETED
            self._output.toast(
                _("queue", "finished").format(game=queue.game_name), ToastKind.SUCCESS
            )
            return
        await self._start_current(queue)

    @task_wrapper
    async def _delayed_advance(self, queue: MineAllQueue, index: int, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        async with self._lock:
            # re-read everything - the run could've moved on while we were waiting
            if self.queue is not queue or queue.index != index:
                logger.log(CALL, "Delayed advance is stale, skipping")
                return
            self._pending = None
            self._pending_key = None
            await self.advance(queue)

    def _schedule(self, queue: MineAllQueue, delay: float) -> bool:
        key = (id(queue), queue.index)
        if self._pending_key == key and self._pending is not None and not self._pending.done():
            # already scheduled for this exact step
            return False
        self._cancel_pending()
        self._pending_key = key
        self._pending = asyncio.create_task(self._delayed_advance(queue, queue.index, delay))
        return True

    def observe(self) -> None:
        """
        Checks the current view for reasons to move on. Called after every view change.
        """
        queue = self.queue
        if queue is None or self.state is not QueueState.RUNNING:
            return
        if not self._view.mining_status.is_mining:
            return
        game = self._view.get_game(queue.game_name)
        if game is None:
            return
        campaign_id = queue.current_id
        campaign = next((c for c in game.campaigns if c.id == campaign_id), None)
        if campaign is None:
            if self._schedule(queue, 0):
                logger.info(f"Mine all: campaign {campaign_id} is gone, moving to the next one")
                self._output.toast(_("queue", "skipped").format(campaign=campaign_id))
        elif self.is_complete_live(campaign):
            if self._schedule(queue, SETTLE_DELAY.total_seconds()):
                logger.info(f"Mine all: every drop of {campaign.name} is done")

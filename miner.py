from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import aiohttp

from translate import _
from view import DropsView
from utils import task_wrapper
from backend import BackendClient
from sources import SourceFetcher
from aggregator import resolve_progress, index_progress
from output import OutputManager, ToastKind
from mine_all import QueueController, StartResult
from favorites import FavoriteNotifier, JsonFileStore
from constants import CALL, CLAIM_DELAY, State
from exceptions import (
    ExitRequest, RequestException, CommandFailed, SourceUnavailable
)
from events import (
    EventStream,
    BackendEvent,
    ProgressEvent,
    MiningStatusEvent,
    MiningCompleteEvent,
    NoChannelsEvent,
)

if TYPE_CHECKING:
    from settings import Settings
    from sources import FetchResult
    from favorites import KeyValueStore
    from inventory import MiningChannel, Progress, Reward


logger = logging.getLogger("DropsCenter")


class Miner:
    def __init__(
        self,
        settings: Settings,
        *,
        output: OutputManager | None = None,
        store: KeyValueStore | None = None,
    ):
        self.settings: Settings = settings
        # State management
        self._state: State = State.IDLE
        self._state_change = asyncio.Event()
        # serializes commands and event handling, so the view has a single writer at a time
        self._lock = asyncio.Lock()
        # Output, transport and data sources
        self.output: OutputManager = output if output is not None else OutputManager()
        self.backend = BackendClient(settings, self.output)
        self.fetcher = SourceFetcher(self.backend)
        # Unified view and the things driven by it
        self.view = DropsView()
        self.queue = QueueController(
            self.view, self.fetcher, self.output, settings=settings, lock=self._lock
        )
        self.favorites = FavoriteNotifier(
            store if store is not None else JsonFileStore(), self.output
        )
        # Push events
        self._events: asyncio.Queue[BackendEvent] = asyncio.Queue()
        self.event_stream = EventStream(self.backend, self._events)
        self._events_task: asyncio.Task[None] | None = None
        self._mnt_task: asyncio.Task[None] | None = None
        self._initial_done: bool = False

    def __repr__(self) -> str:
        return f"Miner({self._state.name}, {self.view!r}, {self.queue!r})"

    def change_state(self, state: State) -> None:
        if self._state is not State.EXIT:
            # EXIT is final
            self._state = state
        self._state_change.set()

    def close(self):
        """
        Requests a shutdown, from a signal or once a `--once` run is done.
        """
        self.change_state(State.EXIT)
        self.output.close()

    def prevent_close(self):
        self.output.prevent_close()

    def print(self, message: str):
        self.output.print(message)

    def save(self, *, force: bool = False) -> None:
        self.settings.save(force=force)

    async def shutdown(self) -> None:
        if self._mnt_task is not None:
            self._mnt_task.cancel()
            self._mnt_task = None
        if self._events_task is not None:
            self._events_task.cancel()
            self._events_task = None
        await self.event_stream.stop()
        await self.backend.shutdown()

    async def run(self):
        try:
            await self._run()
        except ExitRequest:
            pass
        except aiohttp.ContentTypeError as exc:
            raise RequestException("Unexpected content type from the backend") from exc

    async def _run(self):
        """
        The state loop. Fetches run on DATA_FETCH requests, while events and
        periodic refreshes are handled by their own tasks.
        """
        await self.event_stream.start()
        if self._events_task is None or self._events_task.done():
            self._events_task = asyncio.create_task(self._process_events())
        if self._mnt_task is None or self._mnt_task.done():
            self._mnt_task = asyncio.create_task(self._maintenance_task())
        self.change_state(State.DATA_FETCH)
        while True:
            if self._state is State.IDLE:
                self.output.status.update(_("status", "idle"))
                self._state_change.clear()
            elif self._state is State.DATA_FETCH:
                # clear first, so a fetch requested while we're fetching isn't lost
                self._state_change.clear()
                self._state = State.IDLE
                await self.refresh()
                if not self._initial_done:
                    self._initial_done = True
                    await self._initial_actions()
                if self.settings.once:
                    self.output.display_games(self.view.games.values())
                    self.close()
            elif self._state is State.EXIT:
                self.output.status.update(_("status", "exiting"))
                break
            await self._state_change.wait()

    async def _initial_actions(self) -> None:
        # the backend follows our settings file, not the other way around
        await self.push_settings()
        if self.settings.mine_all:
            await self.mine_all(self.settings.mine_all)
        elif self.settings.campaign:
            await self.start_campaign_mining(self.settings.campaign, self.settings.channel)

    @task_wrapper(critical=True)
    async def _maintenance_task(self) -> None:
        while True:
            interval = max(self.settings.check_interval_seconds, 5)
            logger.log(CALL, f"Maintenance task waiting for {interval}s")
            await asyncio.sleep(interval)
            logger.log(CALL, "Maintenance task requests a refresh")
            self.change_state(State.DATA_FETCH)

    @task_wrapper(critical=True)
    async def _process_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                async with self._lock:
                    await self.handle_event(event)
            finally:
                self._events.task_done()

    # Data

    def _after_view_change(self) -> None:
        self.queue.observe()
        self.output.display_mining(self.view.mining_status)

    def apply_fetch(self, result: FetchResult) -> bool:
        """
        Rebuilds the view from a fetch, then runs everything that depends on it.
        """
        self.view.favorites = list(self.settings.favorite_games)
        if not self.view.rebuild(result):
            self.output.status.update(self.view.error or '')
            return False
        if self.settings.notify_new_favorite_campaigns:
            for notification in self.favorites.check(self.view.games.values()):
                self.output.toast(
                    _("favorites", "new_campaigns").format(
                        game=notification.game_name,
                        count=notification.count,
                        names=", ".join(notification.campaign_names),
                    )
                )
        games = self.view.games.values()
        self.output.status.update(
            _("status", "refreshed").format(
                games=len(games),
                active=sum(g.total_active_drops for g in games),
                claimable=sum(1 for g in games if g.has_claimable),
            )
        )
        self._after_view_change()
        return True

    async def refresh(self) -> bool:
        async with self._lock:
            self.output.status.update(_("status", "fetching"))
            result = await self.fetcher.fetch_all()
            return self.apply_fetch(result)

    async def _refetch_status(self) -> None:
        try:
            status = await self.fetcher.get_mining_status()
        except SourceUnavailable as exc:
            logger.warning(f"Unable to re-fetch the mining status: {exc}")
            return
        self.view.apply_mining_status(status)
        self._after_view_change()

    def _queue_game(self, game_name: str) -> bool:
        # events without a game name are assumed to be about the queued one
        if not game_name or self.queue.queue is None:
            return True
        return game_name.lower() == self.queue.queue.game_name.lower()

    async def handle_event(self, event: BackendEvent) -> None:
        """
        Applies a single pushed event. The caller is expected to hold the command lock.
        """
        logger.log(CALL, f"Event: {event!r}")
        if isinstance(event, ProgressEvent):
            self.view.apply_progress_event(event)
            self._after_view_change()
        elif isinstance(event, MiningStatusEvent):
            self.view.apply_mining_status(event.status)
            self._after_view_change()
        elif isinstance(event, MiningCompleteEvent):
            self.output.toast(
                _("status", "mining_complete").format(game=event.game_name, reason=event.reason),
                ToastKind.SUCCESS,
            )
            # a completion for some other game doesn't move the queue along
            if self.queue.running and self._queue_game(event.game_name):
                await self.queue.advance()
            self.change_state(State.DATA_FETCH)
        elif isinstance(event, NoChannelsEvent):
            self.output.toast(
                _("status", "no_channels").format(reason=event.reason), ToastKind.WARNING
            )
            if self.queue.running:
                await self.queue.advance()
                if not self.queue.running:
                    self.change_state(State.DATA_FETCH)

    # Commands

    async def start_campaign_mining(
        self, campaign_id: str, channel_id: str | None = None
    ) -> bool:
        async with self._lock:
            # a manual start takes over from any mine all run
            self.queue.discard()
            try:
                await self.fetcher.start_campaign_mining(campaign_id, channel_id)
            except CommandFailed as exc:
                self.output.toast(
                    _("error", "command_failed").format(reason=exc.reason or exc),
                    ToastKind.ERROR,
                )
                return False
            await self._refetch_status()
            return True

    async def start_auto_mining(self) -> bool:
        async with self._lock:
            self.queue.discard()
            try:
                await self.fetcher.start_auto_mining()
            except CommandFailed as exc:
                self.output.toast(
                    _("error", "command_failed").format(reason=exc.reason or exc),
                    ToastKind.ERROR,
                )
                return False
            await self._refetch_status()
            return True

    async def eligible_channels(self, campaign_id: str) -> list[MiningChannel]:
        return await self.fetcher.fetch_eligible_channels(campaign_id)

    async def mine_all(self, game_name: str) -> StartResult:
        async with self._lock:
            result = await self.queue.start(game_name)
            if result is StartResult.STARTED:
                await self._refetch_status()
            return result

    async def stop_mining(self) -> None:
        async with self._lock:
            # clear everything right away, don't wait for the backend
            self.view.reset_session()
            self.queue.discard()
            self.output.display_mining(self.view.mining_status)
            try:
                await self.fetcher.stop_mining()
            except CommandFailed as exc:
                self.output.toast(
                    _("error", "command_failed").format(reason=exc.reason or exc),
                    ToastKind.ERROR,
                )
                # our optimistic state could be wrong now, so ask for the real one
                await self._refetch_status()
                return
            self.output.toast(_("status", "mining_stopped"))

    def claimable_rewards(self, game_name: str) -> list[tuple[Reward, Progress]]:
        game = self.view.get_game(game_name)
        if game is None:
            return []
        progress_index = index_progress(self.view.progress)
        claimable: list[tuple[Reward, Progress]] = []
        for campaign in game.campaigns:
            for reward in campaign.rewards:
                progress = resolve_progress(reward, campaign, progress_index, self.view.inventory)
                if progress is not None and progress.claimable:
                    claimable.append((reward, progress))
        return claimable

    async def _claim(self, drop_id: str, drop_instance_id: str | None, name: str) -> bool:
        try:
            await self.fetcher.claim_drop(drop_id, drop_instance_id)
        except CommandFailed as exc:
            self.output.toast(
                _("error", "command_failed").format(reason=exc.reason or exc), ToastKind.ERROR
            )
            return False
        self.view.mark_claimed(drop_id, drop_instance_id)
        if self.settings.notify_on_drop_claimed:
            self.output.toast(_("status", "claimed_drop").format(drop=name), ToastKind.SUCCESS)
        return True

    async def claim_reward(self, drop_id: str) -> bool:
        async with self._lock:
            progress = self.view.live.get_progress(drop_id)
            found = self.view.live.find_reward(drop_id)
            name = found[1].name if found is not None else drop_id
            claimed = await self._claim(
                drop_id, progress.drop_instance_id if progress is not None else None, name
            )
        if claimed:
            self.change_state(State.DATA_FETCH)
        return claimed

    async def claim_all(self, game_name: str) -> int:
        """
        Claims every claimable reward of a game, one at a time.
        """
        claimed: int = 0
        async with self._lock:
            rewards = self.claimable_rewards(game_name)
            if not rewards:
                self.output.toast(_("status", "nothing_to_claim").format(game=game_name))
                return 0
            for i, (reward, progress) in enumerate(rewards):
                if i:
                    await asyncio.sleep(CLAIM_DELAY.total_seconds())
                if await self._claim(reward.id, progress.drop_instance_id, reward.name):
                    claimed += 1
        self.output.toast(
            _("status", "claimed_all").format(count=claimed, game=game_name), ToastKind.SUCCESS
        )
        self.change_state(State.DATA_FETCH)
        return claimed

    async def push_settings(self) -> bool:
        try:
            await self.fetcher.update_drops_settings(self.settings.drops_settings())
        except CommandFailed as exc:
            self.output.toast(
                _("error", "settings_push").format(reason=exc.reason or exc), ToastKind.WARNING
            )
            return False
        return True

from __future__ import annotations

import logging
from typing import Any, TYPE_CHECKING

import aggregator
from translate import _
from reconciler import LiveReconciler
from inventory import Inventory, Statistics

if TYPE_CHECKING:
    from collections import abc

    from sources import FetchResult
    from events import ProgressEvent
    from inventory import Campaign, MiningStatus, Progress, UnifiedGame


logger = logging.getLogger("DropsCenter")


class DropsView:
    """
    The one place the unified drops state lives in.

    All changes go through the methods below, each of which either applies fully
    or leaves the previous state in place.
    """
    def __init__(self) -> None:
        self.games: dict[str, UnifiedGame] = {}
        self.campaigns: list[Campaign] = []
        self.inventory: Inventory = Inventory.empty()
        self.statistics: Statistics = Statistics.empty()
        self.favorites: list[str] = []
        self.error: str | None = None
        self.live = LiveReconciler()

    def __repr__(self) -> str:
        return f"DropsView({len(self.games)} games, {self.live!r})"

    @property
    def progress(self) -> list[Progress]:
        return self.live.progress

    @property
    def mining_status(self) -> MiningStatus:
        return self.live.mining_status

    def get_game(self, name: str) -> UnifiedGame | None:
        lowered = name.lower()
        for game in self.games.values():
            if game.name.lower() == lowered or game.id == name:
                return game
        return None

    def get_campaign(self, campaign_id: str) -> Campaign | None:
        for campaign in self.campaigns:
            if campaign.id == campaign_id:
                return campaign
        return None

    def _aggregate(
        self, campaigns: list[Campaign], inventory: Inventory, live: LiveReconciler
    ) -> dict[str, UnifiedGame]:
        return aggregator.rebuild(
            campaigns, live.progress, inventory, live.mining_status, self.favorites
        )

    def _update_live(self, change: abc.Callable[[LiveReconciler], Any]) -> None:
        # changes are staged on a copy, and kept only once the games were rebuilt from it
        live = self.live.copy()
        change(live)
        # counters depend on progress, so they have to follow it
        self.games = self._aggregate(self.campaigns, self.inventory, live)
        self.live = live

    def rebuild(self, result: FetchResult) -> bool:
        """
        Replaces the view with freshly fetched data.

        Returns `False` when every first phase source failed, in which case
        the previous view is kept and `error` is set. If building the new view fails,
        the previous one is kept as well.
        """
        if result.all_failed:
            self.error = _("error", "all_sources_failed")
            logger.error(f"{self.error}: {sorted(result.failed)}")
            return False
        statistics = result.statistics
        if result.inventory.items:
            # the inventory is more up to date than the backend's own claim counter
            statistics.total_drops_claimed = sum(
                item.claimed_drops for item in result.inventory.items
            )
        live = self.live.copy()
        live.set_campaigns(result.campaigns)
        live.merge_fetched(result.progress)
        if "mining_status" not in result.failed:
            live.apply_mining_status(result.mining_status)
        games = self._aggregate(result.campaigns, result.inventory, live)
        self.games = games
        self.campaigns = result.campaigns
        self.inventory = result.inventory
        self.statistics = statistics
        self.live = live
        self.error = None
        return True

    def apply_progress_event(self, event: ProgressEvent) -> None:
        self._update_live(lambda live: live.apply_progress_event(event))

    def apply_mining_status(self, status: MiningStatus) -> None:
        self._update_live(lambda live: live.apply_mining_status(status))

    def mark_claimed(self, drop_id: str, drop_instance_id: str | None = None) -> None:
        self._update_live(lambda live: live.mark_claimed(drop_id, drop_instance_id))

    def reset_session(self) -> None:
        self._update_live(LiveReconciler.reset_session)

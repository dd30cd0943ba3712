from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from constants import CALL, UNKNOWN_CAMPAIGN, UNKNOWN_DROP, UNKNOWN_GAME
from inventory import CurrentDrop, MiningStatus, Progress

if TYPE_CHECKING:
    from collections import abc

    from events import ProgressEvent
    from inventory import Campaign, Reward


logger = logging.getLogger("DropsCenter")


def should_switch(current: CurrentDrop | None, incoming: CurrentDrop) -> bool:
    """
    Decides if the displayed drop should be replaced by the incoming one.

    A complete drop gets replaced by any incomplete one, an incomplete drop
    only by one that's strictly further along. Complete drops never replace anything.
    """
    if current is None:
        return True
    if current.drop_id == incoming.drop_id:
        # same drop, it's patched instead
        return False
    if current.is_complete:
        return not incoming.is_complete
    if incoming.is_complete:
        return False
    return incoming.percentage > current.percentage


def merge_progress(existing: Progress, incoming: Progress) -> Progress:
    """
    Combines two records of the same reward, without ever regressing it.
    """
    if existing.last_updated is None:
        last_updated = incoming.last_updated
    elif incoming.last_updated is None:
        last_updated = existing.last_updated
    else:
        last_updated = max(existing.last_updated, incoming.last_updated)
    return Progress.new(
        incoming.campaign_id or existing.campaign_id,
        existing.drop_id,
        max(existing.current_minutes, incoming.current_minutes),
        incoming.required_minutes or existing.required_minutes,
        is_claimed=existing.is_claimed or incoming.is_claimed,
        last_updated=last_updated,
        drop_instance_id=incoming.drop_instance_id or existing.drop_instance_id,
    )


class LiveReconciler:
    """
    Holds the live progress list and mining status, and applies pushed updates onto them.

    Updates never modify the objects handed out earlier - modified records are replaced,
    so previously taken snapshots stay intact.
    """
    def __init__(self) -> None:
        self.progress: list[Progress] = []
        self.mining_status: MiningStatus = MiningStatus.idle()
        self._campaigns: list[Campaign] = []

    def __repr__(self) -> str:
        return f"LiveReconciler({len(self.progress)} progress, {self.mining_status!r})"

    def copy(self) -> LiveReconciler:
        # records are never modified in place, so the copy can share them
        live = LiveReconciler()
        live.progress = self.progress
        live.mining_status = self.mining_status
        live._campaigns = self._campaigns
        return live

    def set_campaigns(self, campaigns: abc.Iterable[Campaign]) -> None:
        # used to put names on drops that only arrive as IDs
        self._campaigns = list(campaigns)

    def find_reward(self, drop_id: str) -> tuple[Campaign, Reward] | None:
        for campaign in self._campaigns:
            if (reward := campaign.get_reward(drop_id)) is not None:
                return campaign, reward
        return None

    def get_progress(self, drop_id: str) -> Progress | None:
        for progress in self.progress:
            if progress.drop_id == drop_id:
                return progress
        return None

    def _upsert(self, incoming: Progress) -> None:
        for i, existing in enumerate(self.progress):
            if existing.drop_id == incoming.drop_id:
                self.progress = [
                    *self.progress[:i], merge_progress(existing, incoming), *self.progress[i+1:]
                ]
                return
        self.progress = [*self.progress, incoming]

    def _incoming_drop(self, event: ProgressEvent) -> CurrentDrop:
        previous = self.mining_status.current_drop
        channel = self.mining_status.current_channel
        campaign_name = previous.campaign_name if previous is not None else ''
        game_name = previous.game_name if previous is not None else ''
        if not game_name and channel is not None:
            game_name = channel.game_name
        drop_name: str = UNKNOWN_DROP
        drop_image: str | None = None
        if (found := self.find_reward(event.drop_id)) is not None:
            campaign, reward = found
            drop_name = reward.name or drop_name
            drop_image = reward.image_url
            campaign_name = campaign.name or campaign_name
            game_name = campaign.game_name or game_name
        estimated: datetime | None = None
        remaining = event.required_minutes - event.current_minutes
        if event.timestamp is not None and remaining > 0:
            estimated = event.timestamp + timedelta(minutes=remaining)
        return CurrentDrop(
            {
                "drop_id": event.drop_id,
                "drop_name": drop_name,
                "drop_image": drop_image,
                "campaign_name": campaign_name or UNKNOWN_CAMPAIGN,
                "game_name": game_name or UNKNOWN_GAME,
                "current_minutes": event.current_minutes,
                "required_minutes": event.required_minutes,
                "estimated_completion": (
                    estimated.isoformat() if estimated is not None else None
                ),
            }
        )

    def apply_progress_event(self, event: ProgressEvent) -> tuple[list[Progress], MiningStatus]:
        campaign_id = event.campaign_id
        if not campaign_id and (found := self.find_reward(event.drop_id)) is not None:
            campaign_id = found[0].id
        self._upsert(
            Progress.new(
                campaign_id or '',
                event.drop_id,
                event.current_minutes,
                event.required_minutes,
                last_updated=event.timestamp,
            )
        )
        status = self.mining_status
        if status.is_mining:
            current = status.current_drop
            if current is not None and current.drop_id == event.drop_id:
                patched = current.copy()
                patched.current_minutes = max(current.current_minutes, event.current_minutes)
                patched.required_minutes = event.required_minutes or current.required_minutes
                status = status.copy()
                status.current_drop = patched
            else:
                incoming = self._incoming_drop(event)
                if should_switch(current, incoming):
                    logger.log(
                        CALL,
                        f"Switching displayed drop: {current!r} -> {incoming!r}",
                    )
                    status = status.copy()
                    status.current_drop = incoming
            self.mining_status = status
        return self.progress, self.mining_status

    def apply_mining_status(self, status: MiningStatus) -> MiningStatus:
        # authoritative, always replaces whatever was there
        self.mining_status = status
        return status

    def merge_fetched(self, fetched: abc.Iterable[Progress]) -> list[Progress]:
        """
        Folds a fetched progress list into the live one.
        Entries only known from live events are kept.
        """
        live = {p.drop_id: p for p in self.progress}
        merged: list[Progress] = []
        seen: set[str] = set()
        for incoming in fetched:
            if incoming.drop_id in seen:
                continue
            seen.add(incoming.drop_id)
            if (existing := live.get(incoming.drop_id)) is not None:
                merged.append(merge_progress(existing, incoming))
            else:
                merged.append(incoming.copy())
        merged.extend(p for p in self.progress if p.drop_id not in seen)
        self.progress = merged
        return merged

    def mark_claimed(self, drop_id: str, drop_instance_id: str | None = None) -> None:
        existing = self.get_progress(drop_id)
        if existing is not None:
            claimed = existing.copy()
            claimed.is_claimed = True
            claimed.drop_instance_id = drop_instance_id or existing.drop_instance_id
            self.progress = [claimed if p is existing else p for p in self.progress]
        elif (found := self.find_reward(drop_id)) is not None:
            campaign, reward = found
            self.progress = [
                *self.progress,
                Progress.new(
                    campaign.id,
                    drop_id,
                    reward.required_minutes,
                    reward.required_minutes,
                    is_claimed=True,
                    drop_instance_id=drop_instance_id,
                ),
            ]

    def reset_session(self) -> None:
        """
        Clears the live progress and mining status. The only thing allowed to regress progress.
        """
        self.progress = []
        self.mining_status = MiningStatus.idle()

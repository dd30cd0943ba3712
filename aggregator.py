"""
Merges campaigns, progress, inventory and mining status into per-game records.

Everything here is a pure function of its inputs: the same inputs always produce
an equal map, and nothing passed in is modified.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from utils import generated_id
from constants import UNKNOWN_GAME
from inventory import UnifiedGame

if TYPE_CHECKING:
    from collections import abc

    from inventory import Campaign, Inventory, InventoryItem, MiningStatus, Progress, Reward


logger = logging.getLogger("DropsCenter")


def index_progress(progress: abc.Iterable[Progress]) -> dict[str, Progress]:
    # later entries win, the list is expected to be unique per reward anyway
    return {p.drop_id: p for p in progress}


def inventory_progress(
    reward: Reward, campaign: Campaign, inventory: Inventory
) -> Progress | None:
    """
    Progress embedded in the inventory's copy of the same campaign, if any.
    """
    item = inventory.find_item(campaign)
    if item is None:
        return None
    inv_reward = item.campaign.get_reward(reward.id)
    if inv_reward is None:
        return None
    return inv_reward.progress


def resolve_progress(
    reward: Reward,
    campaign: Campaign,
    progress_index: dict[str, Progress],
    inventory: Inventory,
) -> Progress | None:
    """
    Picks the progress record for a reward. First match wins, values are never combined:

    1. the dedicated progress list
    2. the inventory copy of the campaign
    3. progress embedded on the reward itself

    `None` means the reward hasn't been started yet.
    """
    if (progress := progress_index.get(reward.id)) is not None:
        return progress
    if (progress := inventory_progress(reward, campaign, inventory)) is not None:
        return progress
    return reward.progress


def _game_key(
    games: dict[str, UnifiedGame], game_id: str, game_name: str
) -> tuple[str, str]:
    name = game_name or UNKNOWN_GAME
    if game_id:
        return game_id, name
    # no ID to go by - try to find an existing game with the same name first
    lowered = name.lower()
    for existing in games.values():
        if existing.name.lower() == lowered:
            return existing.id, existing.name
    return generated_id(name), name


def _count_claimed(
    game: UnifiedGame, progress_index: dict[str, Progress], inventory: Inventory
) -> int:
    claimed: int = 0
    for campaign in game.campaigns:
        for reward in campaign.rewards:
            if progress_index:
                # the dedicated list is the only source trusted for the claimed status
                progress = progress_index.get(reward.id)
            else:
                progress = resolve_progress(reward, campaign, progress_index, inventory)
            if progress is not None and progress.is_claimed:
                claimed += 1
    return claimed


def _derive(
    game: UnifiedGame,
    progress_index: dict[str, Progress],
    inventory: Inventory,
    mining_game: str | None,
    favorites: set[str],
) -> None:
    total: int = 0
    in_progress: int = 0
    claimable: bool = False
    for campaign in game.campaigns:
        for reward in campaign.rewards:
            total += 1
            progress = resolve_progress(reward, campaign, progress_index, inventory)
            if progress is None:
                continue
            if progress.in_progress:
                in_progress += 1
            if progress.claimable:
                claimable = True
    game.total_active_drops = total
    game.drops_in_progress = in_progress
    game.has_claimable = claimable
    game.all_drops_claimed = (
        total > 0 and _count_claimed(game, progress_index, inventory) == total
    )
    game.total_claimed = sum(item.claimed_drops for item in game.inventory_items)
    game.is_mining = mining_game is not None and game.name.lower() == mining_game.lower()
    game.is_favorite = game.name.lower() in favorites


def sort_key(game: UnifiedGame) -> tuple[bool, bool, bool, bool, int, str]:
    return (
        not game.is_favorite,
        not game.is_mining,
        game.all_drops_claimed,
        not game.has_claimable,
        -len(game.campaigns),
        game.name.casefold(),
    )


def rebuild(
    campaigns: abc.Iterable[Campaign],
    progress: abc.Iterable[Progress],
    inventory: Inventory,
    mining_status: MiningStatus,
    favorites: abc.Iterable[str] = (),
) -> dict[str, UnifiedGame]:
    """
    Builds the unified per-game map, ordered for display.

    Failed sources are expected to be passed in as their empty values,
    which simply produce fewer (or no) games.
    """
    games: dict[str, UnifiedGame] = {}
    for campaign in campaigns:
        game_id, name = _game_key(games, campaign.game_id, campaign.game_name)
        if (game := games.get(game_id)) is None:
            game = games[game_id] = UnifiedGame(game_id, name, campaign.image_url or None)
        game.campaigns.append(campaign)
    item: InventoryItem
    for item in inventory.items:
        inv_campaign = item.campaign
        game_id, name = _game_key(games, inv_campaign.game_id, inv_campaign.game_name)
        if (game := games.get(game_id)) is None:
            game = games[game_id] = UnifiedGame(game_id, name, inv_campaign.image_url or None)
        game.inventory_items.append(item)
    progress_index = index_progress(progress)
    mining_game = mining_status.game_name
    favorite_names = {name.lower() for name in favorites}
    for game in games.values():
        _derive(game, progress_index, inventory, mining_game, favorite_names)
    ordered = sorted(games.values(), key=sort_key)
    logger.debug(f"Aggregated {len(ordered)} games")
    return {game.id: game for game in ordered}

from __future__ import annotations

from typing import Any, TYPE_CHECKING
from datetime import datetime, timezone

from utils import timestamp, optional_timestamp
from constants import URLType, CampaignStatus, UNKNOWN_GAME

if TYPE_CHECKING:
    from constants import JsonType


def _int(value: Any) -> int:
    # the backend sends i32 values, but nulls can sneak in from partial records
    if value is None:
        return 0
    return int(value)


def _iso(stamp: datetime | None) -> str | None:
    if stamp is None:
        return None
    return stamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Benefit:
    __slots__ = ("id", "name", "image_url")

    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.name: str = data.get("name") or ''
        self.image_url: URLType = data.get("image_url") or data.get("imageAssetURL") or ''

    def __repr__(self) -> str:
        return f"Benefit({self.name})"

    def to_json(self) -> JsonType:
        return {"id": self.id, "name": self.name, "image_url": self.image_url}


class Progress:
    """
    Watch-time progress of a single reward.

    The same record can arrive from the dedicated progress list, from inventory campaigns,
    or from a live progress event. `is_claimed` never goes back to `False` once set.
    """
    __slots__ = (
        "campaign_id",
        "drop_id",
        "current_minutes",
        "required_minutes",
        "is_claimed",
        "last_updated",
        "drop_instance_id",
    )

    def __init__(self, data: JsonType):
        self.campaign_id: str = data.get("campaign_id") or ''
        self.drop_id: str = data["drop_id"]
        self.current_minutes: int = _int(data.get("current_minutes_watched"))
        self.required_minutes: int = _int(data.get("required_minutes_watched"))
        self.is_claimed: bool = bool(data.get("is_claimed", False))
        self.last_updated: datetime | None = optional_timestamp(data.get("last_updated"))
        self.drop_instance_id: str | None = data.get("drop_instance_id")

    @classmethod
    def new(
        cls,
        campaign_id: str,
        drop_id: str,
        current_minutes: int,
        required_minutes: int,
        *,
        is_claimed: bool = False,
        last_updated: datetime | None = None,
        drop_instance_id: str | None = None,
    ) -> Progress:
        self = cls.__new__(cls)
        self.campaign_id = campaign_id
        self.drop_id = drop_id
        self.current_minutes = current_minutes
        self.required_minutes = required_minutes
        self.is_claimed = is_claimed
        self.last_updated = last_updated
        self.drop_instance_id = drop_instance_id
        return self

    def __repr__(self) -> str:
        claimed = ", claimed" if self.is_claimed else ''
        return f"Progress({self.drop_id}, {self.current_minutes}/{self.required_minutes}{claimed})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return all(getattr(self, name) == getattr(other, name) for name in self.__slots__)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def copy(self) -> Progress:
        return Progress.new(
            self.campaign_id,
            self.drop_id,
            self.current_minutes,
            self.required_minutes,
            is_claimed=self.is_claimed,
            last_updated=self.last_updated,
            drop_instance_id=self.drop_instance_id,
        )

    @property
    def percentage(self) -> float:
        if self.required_minutes <= 0:
            return 0.0
        return min(self.current_minutes / self.required_minutes, 1.0)

    @property
    def watched(self) -> bool:
        # enough minutes were watched - doesn't care about the claim
        return self.required_minutes > 0 and self.current_minutes >= self.required_minutes

    @property
    def claimable(self) -> bool:
        return self.watched and not self.is_claimed

    @property
    def in_progress(self) -> bool:
        return 0 < self.current_minutes < self.required_minutes

    def to_json(self) -> JsonType:
        return {
            "campaign_id": self.campaign_id,
            "drop_id": self.drop_id,
            "current_minutes_watched": self.current_minutes,
            "required_minutes_watched": self.required_minutes,
            "is_claimed": self.is_claimed,
            "last_updated": _iso(self.last_updated),
            "drop_instance_id": self.drop_instance_id,
        }


class Reward:
    """
    A time-based drop within a campaign.

    Rewards requiring 0 minutes are not time-gated, and can never be completed by watching.
    """
    def __init__(self, campaign_id: str, data: JsonType):
        self.id: str = data["id"]
        self.name: str = data.get("name") or ''
        self.campaign_id: str = campaign_id
        self.required_minutes: int = _int(
            data.get("required_minutes_watched", data.get("requiredMinutesWatched"))
        )
        self.benefits: list[Benefit] = [
            Benefit(b) for b in (data.get("benefit_edges") or data.get("benefitEdges") or [])
        ]
        self.progress: Progress | None = None
        if (progress_data := data.get("progress")) is not None:
            self.progress = Progress(progress_data)

    def __repr__(self) -> str:
        return f"Reward({self.name}, {self.required_minutes} min)"

    @property
    def is_mineable(self) -> bool:
        return self.required_minutes > 0

    @property
    def image_url(self) -> URLType | None:
        for benefit in self.benefits:
            if benefit.image_url:
                return benefit.image_url
        return None

    def to_json(self) -> JsonType:
        return {
            "id": self.id,
            "name": self.name,
            "required_minutes_watched": self.required_minutes,
            "benefit_edges": [b.to_json() for b in self.benefits],
            "progress": self.progress.to_json() if self.progress is not None else None,
            "is_mineable": self.is_mineable,
        }


class AllowedChannel:
    __slots__ = ("id", "name")

    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.name: str = data.get("name") or ''

    def __repr__(self) -> str:
        return f"AllowedChannel({self.name})"


class Campaign:
    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.name: str = data.get("name") or ''
        self.game_id: str = data.get("game_id") or ''
        self.game_name: str = data.get("game_name") or ''
        self.description: str = data.get("description") or ''
        self.image_url: URLType = data.get("image_url") or ''
        self.starts_at: datetime | None = optional_timestamp(data.get("start_at"))
        self.ends_at: datetime | None = optional_timestamp(data.get("end_at"))
        self.rewards: list[Reward] = [
            Reward(self.id, d) for d in (data.get("time_based_drops") or [])
        ]
        self.is_account_connected: bool = bool(data.get("is_account_connected", False))
        self.allowed_channels: list[AllowedChannel] = [
            AllowedChannel(c) for c in (data.get("allowed_channels") or [])
        ]
        self.is_acl_based: bool = bool(data.get("is_acl_based", False))
        self.details_url: str | None = data.get("details_url")

    def __repr__(self) -> str:
        return f"Campaign({self.game_name}, {self.name}, {len(self.rewards)} rewards)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.__class__.__name__, self.id))

    def same_campaign(self, other: Campaign) -> bool:
        """
        Inventory copies can carry a different ID than the dashboard ones,
        so the name is used as a fallback.
        """
        return self.id == other.id or self.name.casefold() == other.name.casefold()

    def get_reward(self, reward_id: str) -> Reward | None:
        for reward in self.rewards:
            if reward.id == reward_id:
                return reward
        return None

    def to_json(self) -> JsonType:
        return {
            "id": self.id,
            "name": self.name,
            "game_id": self.game_id,
            "game_name": self.game_name,
            "description": self.description,
            "image_url": self.image_url,
            "start_at": _iso(self.starts_at),
            "end_at": _iso(self.ends_at),
            "time_based_drops": [r.to_json() for r in self.rewards],
            "is_account_connected": self.is_account_connected,
            "allowed_channels": [{"id": c.id, "name": c.name} for c in self.allowed_channels],
            "is_acl_based": self.is_acl_based,
            "details_url": self.details_url,
        }


class InventoryItem:
    def __init__(self, data: JsonType):
        self.campaign: Campaign = Campaign(data["campaign"])
        self.status: CampaignStatus
        try:
            self.status = CampaignStatus(data.get("status"))
        except ValueError:
            self.status = CampaignStatus.ACTIVE
        self.progress_percentage: float = float(data.get("progress_percentage") or 0)
        self.total_drops: int = _int(data.get("total_drops"))
        self.claimed_drops: int = _int(data.get("claimed_drops"))
        self.drops_in_progress: int = _int(data.get("drops_in_progress"))

    def __repr__(self) -> str:
        return (
            f"InventoryItem({self.campaign.name}, {self.status.value}, "
            f"{self.claimed_drops}/{self.total_drops})"
        )

    def to_json(self) -> JsonType:
        return {
            "campaign": self.campaign.to_json(),
            "status": self.status.value,
            "progress_percentage": self.progress_percentage,
            "total_drops": self.total_drops,
            "claimed_drops": self.claimed_drops,
            "drops_in_progress": self.drops_in_progress,
        }


class CompletedDrop:
    """
    A permanently awarded reward, from the user's inventory.
    """
    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.name: str = data.get("name") or ''
        self.image_url: URLType = data.get("image_url") or ''
        self.game_name: str | None = data.get("game_name")
        self.is_connected: bool = bool(data.get("is_connected", False))
        self.required_account_link: str | None = data.get("required_account_link")
        self.last_awarded_at: datetime | None = optional_timestamp(data.get("last_awarded_at"))
        self.total_count: int = _int(data.get("total_count"))

    def __repr__(self) -> str:
        return f"CompletedDrop({self.name}, x{self.total_count})"


class Inventory:
    def __init__(self, data: JsonType):
        self.items: list[InventoryItem] = [InventoryItem(i) for i in (data.get("items") or [])]
        self.total_campaigns: int = _int(data.get("total_campaigns"))
        self.active_campaigns: int = _int(data.get("active_campaigns"))
        self.upcoming_campaigns: int = _int(data.get("upcoming_campaigns"))
        self.expired_campaigns: int = _int(data.get("expired_campaigns"))
        self.completed_drops: list[CompletedDrop] = [
            CompletedDrop(d) for d in (data.get("completed_drops") or [])
        ]

    @classmethod
    def empty(cls) -> Inventory:
        return cls({})

    def __repr__(self) -> str:
        return f"Inventory({len(self.items)} items, {len(self.completed_drops)} completed)"

    def find_item(self, campaign: Campaign) -> InventoryItem | None:
        # exact ID match first, then fallback onto the name
        for item in self.items:
            if item.campaign.id == campaign.id:
                return item
        for item in self.items:
            if item.campaign.same_campaign(campaign):
                return item
        return None


class ClaimedDrop:
    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.campaign_id: str = data.get("campaign_id") or ''
        self.drop_id: str = data.get("drop_id") or ''
        self.drop_name: str = data.get("drop_name") or ''
        self.game_name: str = data.get("game_name") or ''
        self.benefit_name: str = data.get("benefit_name") or ''
        self.benefit_image_url: URLType = data.get("benefit_image_url") or ''
        self.claimed_at: datetime | None = optional_timestamp(data.get("claimed_at"))

    def __repr__(self) -> str:
        return f"ClaimedDrop({self.drop_name}, {self.game_name})"


class Statistics:
    def __init__(self, data: JsonType):
        self.total_drops_claimed: int = _int(data.get("total_drops_claimed"))
        self.total_channel_points_earned: int = _int(data.get("total_channel_points_earned"))
        self.active_campaigns: int = _int(data.get("active_campaigns"))
        self.drops_in_progress: int = _int(data.get("drops_in_progress"))
        self.recent_claims: list[ClaimedDrop] = [
            ClaimedDrop(c) for c in (data.get("recent_claims") or [])
        ]
        self.channel_points_history: list[JsonType] = list(
            data.get("channel_points_history") or []
        )

    @classmethod
    def empty(cls) -> Statistics:
        return cls({})

    def __repr__(self) -> str:
        return (
            f"Statistics(claimed={self.total_drops_claimed}, "
            f"active={self.active_campaigns}, in_progress={self.drops_in_progress})"
        )

    def to_json(self) -> JsonType:
        return {
            "total_drops_claimed": self.total_drops_claimed,
            "total_channel_points_earned": self.total_channel_points_earned,
            "active_campaigns": self.active_campaigns,
            "drops_in_progress": self.drops_in_progress,
        }


class MiningChannel:
    __slots__ = (
        "id",
        "display_name",
        "game_id",
        "game_name",
        "viewers",
        "drops_enabled",
        "is_live",
        "is_acl_based",
    )

    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.display_name: str = data.get("display_name") or data.get("name") or ''
        self.game_id: str = data.get("game_id") or ''
        self.game_name: str = data.get("game_name") or ''
        self.viewers: int = _int(data.get("viewer_count"))
        self.drops_enabled: bool = bool(data.get("drops_enabled", False))
        self.is_live: bool = bool(data.get("is_live", False))
        self.is_acl_based: bool = bool(data.get("is_acl_based", False))

    def __repr__(self) -> str:
        return f"MiningChannel({self.display_name}, {self.game_name}, {self.viewers})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.__class__.__name__, self.id))

    def to_json(self) -> JsonType:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "game_id": self.game_id,
            "game_name": self.game_name,
            "viewer_count": self.viewers,
            "drops_enabled": self.drops_enabled,
            "is_live": self.is_live,
            "is_acl_based": self.is_acl_based,
        }


class CurrentDrop:
    """
    Snapshot of the reward that's displayed as being mined right now.
    """
    __slots__ = (
        "drop_id",
        "drop_name",
        "drop_image",
        "campaign_name",
        "game_name",
        "current_minutes",
        "required_minutes",
        "estimated_completion",
    )

    def __init__(self, data: JsonType):
        self.drop_id: str = data["drop_id"]
        self.drop_name: str = data.get("drop_name") or ''
        self.drop_image: URLType | None = data.get("drop_image")
        self.campaign_name: str = data.get("campaign_name") or ''
        self.game_name: str = data.get("game_name") or ''
        self.current_minutes: int = _int(data.get("current_minutes"))
        self.required_minutes: int = _int(data.get("required_minutes"))
        self.estimated_completion: datetime | None = optional_timestamp(
            data.get("estimated_completion")
        )

    def __repr__(self) -> str:
        return f"CurrentDrop({self.drop_name}, {self.current_minutes}/{self.required_minutes})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return all(getattr(self, name) == getattr(other, name) for name in self.__slots__)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def copy(self) -> CurrentDrop:
        return CurrentDrop(self.to_json())

    @property
    def is_complete(self) -> bool:
        return self.required_minutes > 0 and self.current_minutes >= self.required_minutes

    @property
    def percentage(self) -> float:
        if self.required_minutes <= 0:
            return 0.0
        return self.current_minutes / self.required_minutes

    def to_json(self) -> JsonType:
        return {
            "drop_id": self.drop_id,
            "drop_name": self.drop_name,
            "drop_image": self.drop_image,
            "campaign_name": self.campaign_name,
            "game_name": self.game_name,
            "current_minutes": self.current_minutes,
            "required_minutes": self.required_minutes,
            "progress_percentage": round(self.percentage * 100, 2),
            "estimated_completion": _iso(self.estimated_completion),
        }


class MiningStatus:
    def __init__(self, data: JsonType):
        self.is_mining: bool = bool(data.get("is_mining", False))
        self.current_channel: MiningChannel | None = None
        if (channel_data := data.get("current_channel")) is not None:
            self.current_channel = MiningChannel(channel_data)
        self.current_campaign: str | None = data.get("current_campaign")
        self.current_drop: CurrentDrop | None = None
        if (drop_data := data.get("current_drop")) is not None:
            self.current_drop = CurrentDrop(drop_data)
        self.eligible_channels: list[MiningChannel] = [
            MiningChannel(c) for c in (data.get("eligible_channels") or [])
        ]
        last_update = data.get("last_update")
        self.last_update: datetime = (
            timestamp(last_update) if last_update else datetime.now(timezone.utc)
        )

    @classmethod
    def idle(cls) -> MiningStatus:
        return cls({})

    def __repr__(self) -> str:
        if not self.is_mining:
            return "MiningStatus(idle)"
        channel = self.current_channel.display_name if self.current_channel else None
        return f"MiningStatus({channel}, {self.current_drop!r})"

    def copy(self) -> MiningStatus:
        return MiningStatus(self.to_json())

    @property
    def game_name(self) -> str | None:
        """
        Name of the game being mined, if any.
        """
        if not self.is_mining:
            return None
        if self.current_drop is not None and self.current_drop.game_name:
            return self.current_drop.game_name
        if self.current_channel is not None and self.current_channel.game_name:
            return self.current_channel.game_name
        return None

    def to_json(self) -> JsonType:
        return {
            "is_mining": self.is_mining,
            "current_channel": (
                self.current_channel.to_json() if self.current_channel is not None else None
            ),
            "current_campaign": self.current_campaign,
            "current_drop": (
                self.current_drop.to_json() if self.current_drop is not None else None
            ),
            "eligible_channels": [c.to_json() for c in self.eligible_channels],
            "last_update": _iso(self.last_update),
        }


class UnifiedGame:
    """
    Everything known about a single game: its active campaigns, the inventory items
    the user has history with, and the counters derived from those.

    Instances are rebuilt from scratch on every aggregation pass.
    """
    def __init__(self, game_id: str, name: str, image_url: URLType | None = None):
        self.id: str = game_id
        self.name: str = name or UNKNOWN_GAME
        self.image_url: URLType | None = image_url
        self.campaigns: list[Campaign] = []
        self.inventory_items: list[InventoryItem] = []
        self.total_active_drops: int = 0
        self.drops_in_progress: int = 0
        self.total_claimed: int = 0
        self.has_claimable: bool = False
        self.all_drops_claimed: bool = False
        self.is_mining: bool = False
        self.is_favorite: bool = False

    def __repr__(self) -> str:
        return f"UnifiedGame({self.name}, {len(self.campaigns)} campaigns)"

    def to_json(self) -> JsonType:
        return {
            "id": self.id,
            "name": self.name,
            "image_url": self.image_url,
            "active_campaigns": [c.to_json() for c in self.campaigns],
            "inventory_items": [i.to_json() for i in self.inventory_items],
            "total_active_drops": self.total_active_drops,
            "drops_in_progress": self.drops_in_progress,
            "total_claimed": self.total_claimed,
            "has_claimable": self.has_claimable,
            "all_drops_claimed": self.all_drops_claimed,
            "is_mining": self.is_mining,
            "is_favorite": self.is_favorite,
        }

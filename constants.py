from __future__ import annotations

import sys
import logging
from pathlib import Path
from copy import deepcopy
from enum import Enum, auto
from datetime import timedelta
from typing import Any, Dict, NewType

from yarl import URL


# logging special levels
CALL: int = logging.INFO - 1
logging.addLevelName(CALL, "CALL")

# Paths, all of them live next to the entry script
SELF_PATH = Path(sys.argv[0]).resolve()
WORKING_DIR = SELF_PATH.parent
LANG_PATH = WORKING_DIR / "lang"
LOG_PATH = WORKING_DIR / "log.txt"
LOCK_PATH = WORKING_DIR / "lock.file"
SETTINGS_PATH = WORKING_DIR / "settings.json"
FAVORITES_PATH = WORKING_DIR / "favorites.json"
# Typing
JsonType = Dict[str, Any]
URLType = NewType("URLType", str)
# Misc
DEFAULT_LANG = "English"
DEFAULT_BACKEND = URL("http://127.0.0.1:7878")
FAVORITES_KEY = "favorite_campaigns"
UNKNOWN_GAME = "Unknown Game"
UNKNOWN_CAMPAIGN = "Unknown Campaign"
UNKNOWN_DROP = "Drop in Progress"
# Intervals and Delays
PING_INTERVAL = timedelta(minutes=3)
PING_TIMEOUT = timedelta(seconds=10)
CHECK_INTERVAL = timedelta(seconds=60)
WATCH_INTERVAL = timedelta(seconds=20)
# wait for the backend to settle its own progress map before the next campaign is started
SETTLE_DELAY = timedelta(seconds=2)
CLAIM_DELAY = timedelta(milliseconds=500)
# how long fetches and commands keep retrying an unreachable backend
RETRY_WINDOW = timedelta(seconds=30)
# Logging
LOGGING_LEVELS = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: CALL,
    4: logging.DEBUG,
}
FILE_FORMATTER = logging.Formatter(
    "{asctime}.{msecs:03.0f}:\t{levelname:>7}:\t{message}",
    style='{',
    datefmt="%Y-%m-%d %H:%M:%S",
)
OUTPUT_FORMATTER = logging.Formatter("{levelname}: {message}", style='{', datefmt="%H:%M:%S")


class State(Enum):
    IDLE = auto()
    DATA_FETCH = auto()
    EXIT = auto()


class QueueState(Enum):
    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    ABORTED = auto()


class PriorityMode(Enum):
    PRIORITY_ONLY = 0
    ENDING_SOONEST = 1
    LOW_AVBL_FIRST = 2

    @property
    def backend_name(self) -> str:
        return PRIORITY_MODE_NAMES[self]


PRIORITY_MODE_NAMES: dict[PriorityMode, str] = {
    PriorityMode.PRIORITY_ONLY: "PriorityOnly",
    PriorityMode.ENDING_SOONEST: "EndingSoonest",
    PriorityMode.LOW_AVBL_FIRST: "LowAvailFirst",
}


class RecoveryMode(Enum):
    AUTOMATIC = "Automatic"
    RELAXED = "Relaxed"
    MANUAL_ONLY = "ManualOnly"


class CampaignStatus(Enum):
    ACTIVE = "Active"
    UPCOMING = "Upcoming"
    EXPIRED = "Expired"


class Event:
    # pushed by the backend
    MINING_STATUS = "mining-status-update"
    PROGRESS = "progress-update"
    MINING_COMPLETE = "mining-complete"
    NO_CHANNELS = "mining-stopped-no-channels"
    # emitted by us
    NEW_FAVORITE_CAMPAIGNS = "new-favorite-campaigns"


class Operation(JsonType):
    """
    A named backend command, along with the default arguments it's invoked with.

    Arguments set to `...` have to be provided via `with_args` before the call.
    """
    def __init__(self, command: str, *, args: JsonType | None = None):
        super().__init__(command=command, args=args if args is not None else {})

    @property
    def command(self) -> str:
        return self["command"]

    @property
    def args(self) -> JsonType:
        return self["args"]

    def with_args(self, **args: Any) -> Operation:
        modified = deepcopy(self)
        modified_args: JsonType = modified["args"]
        for k, v in args.items():
            if k not in modified_args:
                raise RuntimeError(f"Unknown argument for '{self.command}': '{k}'")
            modified_args[k] = v
        return modified

    def validate(self) -> None:
        for k, v in self.args.items():
            if v is Ellipsis:
                raise RuntimeError(f"Unspecified argument for '{self.command}': '{k}'")


OPERATIONS: dict[str, Operation] = {
    "Campaigns": Operation("get_active_drop_campaigns"),
    "Progress": Operation("get_drop_progress"),
    "Inventory": Operation("get_drops_inventory"),
    "Statistics": Operation("get_drops_statistics"),
    "MiningStatus": Operation("get_mining_status"),
    "EligibleChannels": Operation(
        "get_eligible_channels_for_campaign",
        args={
            "campaign_id": ...,
        },
    ),
    "StartCampaign": Operation(
        "start_campaign_mining",
        args={
            "campaign_id": ...,
        },
    ),
    "StartCampaignWithChannel": Operation(
        "start_campaign_mining_with_channel",
        args={
            "campaign_id": ...,
            "channel_id": ...,
        },
    ),
    "StartAutoMining": Operation("start_auto_mining"),
    "StopMining": Operation("stop_auto_mining"),
    "ClaimDrop": Operation(
        "claim_drop",
        args={
            "drop_id": ...,
            "drop_instance_id": None,  # optional
        },
    ),
    "UpdateSettings": Operation(
        "update_drops_settings",
        args={
            "settings": ...,
        },
    ),
}

from __future__ import annotations

from typing import Any, TypedDict, TYPE_CHECKING

from yarl import URL

from utils import json_load, json_save
from constants import (
    SETTINGS_PATH, DEFAULT_LANG, DEFAULT_BACKEND, CHECK_INTERVAL, WATCH_INTERVAL,
    JsonType, PriorityMode, RecoveryMode,
)

if TYPE_CHECKING:
    from main import ParsedArgs


class RecoverySettings(TypedDict):
    stale_progress_threshold_seconds: int
    streamer_blacklist_duration_seconds: int
    campaign_deprioritize_duration_seconds: int
    stream_status_check_interval_seconds: int
    recovery_mode: RecoveryMode
    notify_on_recovery_action: bool
    detect_game_category_change: bool


class SettingsFile(TypedDict):
    proxy: URL
    backend_url: URL
    language: str
    connection_quality: int
    check_interval_seconds: int
    watch_interval_seconds: int
    auto_claim_drops: bool
    auto_mining_enabled: bool
    notify_on_drop_available: bool
    notify_on_drop_claimed: bool
    notify_new_favorite_campaigns: bool
    favorite_games: list[str]
    priority_games: list[str]
    excluded_games: set[str]
    priority_mode: PriorityMode
    recovery: RecoverySettings


default_settings: SettingsFile = {
    "proxy": URL(),
    "backend_url": DEFAULT_BACKEND,
    "language": DEFAULT_LANG,
    "connection_quality": 1,
    "check_interval_seconds": int(CHECK_INTERVAL.total_seconds()),
    "watch_interval_seconds": int(WATCH_INTERVAL.total_seconds()),
    "auto_claim_drops": True,
    "auto_mining_enabled": False,
    "notify_on_drop_available": True,
    "notify_on_drop_claimed": True,
    "notify_new_favorite_campaigns": True,
    "favorite_games": [],
    "priority_games": [],
    "excluded_games": set(),
    "priority_mode": PriorityMode.PRIORITY_ONLY,
    "recovery": {
        "stale_progress_threshold_seconds": 420,  # 7 minutes
        "streamer_blacklist_duration_seconds": 600,  # 10 minutes
        "campaign_deprioritize_duration_seconds": 1800,  # 30 minutes
        "stream_status_check_interval_seconds": 180,
        "recovery_mode": RecoveryMode.AUTOMATIC,
        "notify_on_recovery_action": True,
        "detect_game_category_change": True,
    },
}


class Settings:
    # from args
    log: bool
    once: bool
    mine_all: str | None
    campaign: str | None
    channel: str | None
    # args properties
    debug_ws: int
    debug_backend: int
    logging_level: int
    # from settings file
    proxy: URL
    backend_url: URL
    language: str
    connection_quality: int
    check_interval_seconds: int
    watch_interval_seconds: int
    auto_claim_drops: bool
    auto_mining_enabled: bool
    notify_on_drop_available: bool
    notify_on_drop_claimed: bool
    notify_new_favorite_campaigns: bool
    favorite_games: list[str]
    priority_games: list[str]
    excluded_games: set[str]
    priority_mode: PriorityMode
    recovery: RecoverySettings

    _OWN = frozenset(("_settings", "_args", "_altered"))

    def __init__(self, args: ParsedArgs):
        self._args: ParsedArgs = args
        self._settings: SettingsFile = json_load(SETTINGS_PATH, default_settings)
        self._altered: bool = False

    def __getattr__(self, name: str, /) -> Any:
        # values given on the command line win over the settings file
        if name in self._OWN:
            raise AttributeError(name)
        value = getattr(self._args, name, None)
        if value is not None:
            return value
        if name in self._settings:
            return self._settings[name]  # type: ignore[literal-required]
        if hasattr(self._args, name):
            return None
        raise AttributeError(f"Unknown setting: {name}")

    def __setattr__(self, name: str, value: Any, /) -> None:
        if name in self._OWN:
            object.__setattr__(self, name, value)
        elif name in self._settings:
            self._settings[name] = value  # type: ignore[literal-required]
            self._altered = True
        else:
            raise TypeError(f"'{name}' can only be set on the command line")

    def __delattr__(self, name: str, /) -> None:
        raise RuntimeError("Settings can't be deleted")

    def is_favorite(self, game_name: str) -> bool:
        lowered = game_name.lower()
        return any(name.lower() == lowered for name in self._settings["favorite_games"])

    def drops_settings(self) -> JsonType:
        """
        Returns the settings subset the backend understands, in its own field naming.
        """
        s = self._settings
        recovery = s["recovery"]
        return {
            "auto_claim_drops": s["auto_claim_drops"],
            "notify_on_drop_available": s["notify_on_drop_available"],
            "notify_on_drop_claimed": s["notify_on_drop_claimed"],
            "auto_mining_enabled": s["auto_mining_enabled"],
            "check_interval_seconds": s["check_interval_seconds"],
            "watch_interval_seconds": s["watch_interval_seconds"],
            "priority_games": list(s["priority_games"]),
            "excluded_games": sorted(s["excluded_games"]),
            "favorite_games": list(s["favorite_games"]),
            "priority_mode": s["priority_mode"].backend_name,
            "recovery_settings": {
                **recovery,
                "recovery_mode": recovery["recovery_mode"].value,
            },
        }

    def save(self, *, force: bool = False) -> None:
        if self._altered or force:
            json_save(SETTINGS_PATH, self._settings, sort=True)

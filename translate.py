from __future__ import annotations

from copy import deepcopy
from typing import Any, TypedDict, TYPE_CHECKING

from exceptions import MinerException
from utils import json_load
from constants import LANG_PATH, DEFAULT_LANG

if TYPE_CHECKING:
    from typing_extensions import NotRequired


class StatusMessages(TypedDict):
    idle: str
    exiting: str
    terminated: str
    fetching: str
    refreshed: str
    mining: str
    not_mining: str
    mining_stopped: str
    mining_complete: str
    no_channels: str
    claimed_drop: str
    claimed_all: str
    nothing_to_claim: str


class QueueMessages(TypedDict):
    nothing_to_do: str
    started: str
    step: str
    skipped: str
    finished: str
    aborted: str


class FavoriteMessages(TypedDict):
    new_campaigns: str


class ErrorMessages(TypedDict):
    no_connection: str
    site_down: str
    all_sources_failed: str
    command_failed: str
    settings_push: str


class EventStreamMessages(TypedDict):
    disconnected: str
    connecting: str
    connected: str
    reconnecting: str


class Translation(TypedDict):
    language_name: NotRequired[str]
    english_name: str
    status: StatusMessages
    queue: QueueMessages
    favorites: FavoriteMessages
    error: ErrorMessages
    events: EventStreamMessages


default_translation: Translation = {
    "english_name": "English",
    "status": {
        "idle": "Idle",
        "exiting": "Exiting...",
        "terminated": "Application Terminated.\nClose the window to exit the application.",
        "fetching": "Fetching drops data...",
        "refreshed": "{games} games, {active} active rewards, {claimable} claimable",
        "mining": "Mining: {drop} ({game}) - {current}/{required} min ({percent})",
        "not_mining": "Not mining",
        "mining_stopped": "Mining stopped",
        "mining_complete": "Mining complete for {game}: {reason}",
        "no_channels": "Mining stopped, no eligible channels: {reason}",
        "claimed_drop": "Claimed drop: {drop}",
        "claimed_all": "Claimed {count} drops for {game}",
        "nothing_to_claim": "Nothing to claim for {game}",
    },
    "queue": {
        "nothing_to_do": "All campaigns for {game} are already complete",
        "started": "Mining {count} campaigns for {game}",
        "step": "Mining campaign {index} of {count}: {campaign}",
        "skipped": "Skipping campaign {campaign}, it's no longer active",
        "finished": "Finished mining all campaigns for {game}!",
        "aborted": "Stopped mining campaigns for {game}",
    },
    "favorites": {
        "new_campaigns": "{game}: {count} new campaign(s) - {names}",
    },
    "error": {
        "no_connection": "Cannot connect to the backend, retrying in {seconds} seconds...",
        "site_down": "Backend is down, retrying in {seconds} seconds...",
        "all_sources_failed": "Unable to fetch any drops data, keeping the previous view",
        "command_failed": "Command failed: {reason}",
        "settings_push": "Unable to update the backend drops settings: {reason}",
    },
    "events": {
        "disconnected": "Disconnected",
        "connecting": "Connecting...",
        "connected": "Connected",
        "reconnecting": "Reconnecting...",
    },
}


class Translator:
    """
    Looks up interface strings by their path, like `_("status", "idle")`.

    English is built in, other languages are read from `lang/<name>.json`
    and have the missing keys filled in from English.
    """
    def __init__(self) -> None:
        found: list[str] = []
        if LANG_PATH.exists():
            found = sorted(path.stem for path in LANG_PATH.glob("*.json"))
        self._langs: list[str] = [DEFAULT_LANG, *(lang for lang in found if lang != DEFAULT_LANG)]
        self._translation: Translation = self._builtin()

    @staticmethod
    def _builtin() -> Translation:
        translation = deepcopy(default_translation)
        translation["language_name"] = DEFAULT_LANG
        return translation

    @property
    def current(self) -> str:
        return self._translation["language_name"]

    def set_language(self, language: str) -> None:
        if language not in self._langs:
            raise ValueError(f"Unknown language: {language}")
        if language == self.current:
            return
        if language == DEFAULT_LANG:
            self._translation = self._builtin()
            return
        translation: Translation = json_load(
            LANG_PATH / f"{language}.json", deepcopy(default_translation)
        )
        if "language_name" in translation:
            raise ValueError("Translations cannot define 'language_name'")
        translation["language_name"] = language
        self._translation = translation

    def __call__(self, *path: str) -> str:
        if not path:
            raise ValueError("Language path expected")
        node: Any = self._translation
        for key in path:
            if not isinstance(node, dict) or key not in node:
                joined = " -> ".join(path)
                raise MinerException(f"{self.current} translation has no '{joined}' key")
            node = node[key]
        return node


_ = Translator()

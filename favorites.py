from __future__ import annotations

import json
import logging
from pathlib import Path
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from utils import json_load, json_save
from exceptions import StaleCache
from constants import FAVORITES_KEY, FAVORITES_PATH, Event

if TYPE_CHECKING:
    from collections import abc

    from constants import JsonType
    from output import OutputManager
    from inventory import UnifiedGame


logger = logging.getLogger("DropsCenter")
FavoriteCache = dict[str, set[str]]


class KeyValueStore(ABC):
    @abstractmethod
    def load(self, key: str) -> bytes | None:
        raise NotImplementedError

    @abstractmethod
    def save(self, key: str, value: bytes) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def load(self, key: str) -> bytes | None:
        return self._data.get(key)

    def save(self, key: str, value: bytes) -> None:
        self._data[key] = value


class JsonFileStore(KeyValueStore):
    """
    Keeps every key inside a single JSON file, values stored as text.
    """
    def __init__(self, path: Path = FAVORITES_PATH):
        self._path: Path = path

    def _read(self) -> JsonType:
        try:
            return json_load(self._path, {}, merge=False)
        except (ValueError, TypeError, AttributeError):
            logger.warning(f"Unable to read {self._path}, starting over")
            return {}

    def load(self, key: str) -> bytes | None:
        value = self._read().get(key)
        if not isinstance(value, str):
            return None
        return value.encode("utf8")

    def save(self, key: str, value: bytes) -> None:
        contents = self._read()
        contents[key] = value.decode("utf8")
        json_save(self._path, contents, sort=True)


class Notification:
    __slots__ = ("game_name", "image_url", "count", "campaign_names")

    def __init__(self, game_name: str, image_url: str | None, campaign_names: list[str]):
        self.game_name: str = game_name
        self.image_url: str | None = image_url
        self.count: int = len(campaign_names)
        self.campaign_names: list[str] = campaign_names

    def __repr__(self) -> str:
        return f"Notification({self.game_name}, {self.count})"

    def to_json(self) -> JsonType:
        return {
            "game_name": self.game_name,
            "image_url": self.image_url,
            "count": self.count,
            "campaign_names": self.campaign_names,
        }


def decode_cache(raw: bytes | None) -> FavoriteCache:
    if raw is None:
        return {}
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise TypeError(type(data).__name__)
        return {
            str(name).lower(): {str(campaign_id) for campaign_id in ids}
            for name, ids in data.items()
        }
    except (ValueError, TypeError) as exc:
        raise StaleCache(FAVORITES_KEY) from exc


def encode_cache(cache: FavoriteCache) -> bytes:
    return json.dumps(
        {name: sorted(ids) for name, ids in sorted(cache.items())}
    ).encode("utf8")


def diff(
    current_games: abc.Iterable[UnifiedGame], cache: FavoriteCache
) -> tuple[list[Notification], FavoriteCache]:
    """
    Compares the favorited games' campaigns with what was seen last time.

    Games without an earlier entry (including every game on the very first run)
    are only recorded, never reported.
    """
    notifications: list[Notification] = []
    new_cache: FavoriteCache = {}
    for game in current_games:
        if not game.is_favorite:
            continue
        key = game.name.lower()
        current_ids = {c.id for c in game.campaigns}
        new_cache[key] = current_ids
        if key not in cache:
            continue
        new_ids = current_ids - cache[key]
        if new_ids:
            names = [c.name for c in game.campaigns if c.id in new_ids]
            notifications.append(Notification(game.name, game.image_url, names))
    return notifications, new_cache


class FavoriteNotifier:
    def __init__(self, store: KeyValueStore, output: OutputManager | None = None):
        self._store: KeyValueStore = store
        self._output: OutputManager | None = output

    def load_cache(self) -> FavoriteCache:
        try:
            return decode_cache(self._store.load(FAVORITES_KEY))
        except StaleCache as exc:
            logger.warning(f"{exc}, treating it as empty")
            return {}

    def check(self, current_games: abc.Iterable[UnifiedGame]) -> list[Notification]:
        cache = self.load_cache()
        notifications, new_cache = diff(current_games, cache)
        # persisted every time, even when nothing changed
        self._store.save(FAVORITES_KEY, encode_cache(new_cache))
        for notification in notifications:
            logger.info(
                f"New campaigns for {notification.game_name}: "
                f"{', '.join(notification.campaign_names)}"
            )
            if self._output is not None:
                self._output.emit(Event.NEW_FAVORITE_CAMPAIGNS, notification.to_json())
        return notifications

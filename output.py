from __future__ import annotations

import asyncio
import logging
from enum import Enum
from collections import defaultdict
from typing import Any, TypeVar, TYPE_CHECKING

from translate import _
from exceptions import ExitRequest

if TYPE_CHECKING:
    from collections import abc

    from constants import JsonType
    from inventory import MiningStatus, UnifiedGame


_T = TypeVar("_T")
logger = logging.getLogger("DropsCenter")


class ToastKind(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class StatusBar:
    def __init__(self) -> None:
        self.text: str = ''

    def update(self, text: str) -> None:
        if text != self.text:
            self.text = text
            logger.info(f"Status: {text}")


class OutputManager:
    """
    Console replacement for a window: prints messages, shows transient notifications,
    and dispatches application events to whoever listens for them.
    """
    def __init__(self) -> None:
        self._close_requested = asyncio.Event()
        self._listeners: defaultdict[str, list[Any]] = defaultdict(list)
        self.status = StatusBar()
        # the most recent notifications, newest last
        self.toasts: list[tuple[ToastKind, str]] = []

    def print(self, message: str) -> None:
        print(message)

    def toast(self, message: str, kind: ToastKind = ToastKind.INFO) -> None:
        self.toasts.append((kind, message))
        del self.toasts[:-20]
        if kind is ToastKind.ERROR:
            logger.error(message)
        elif kind is ToastKind.WARNING:
            logger.warning(message)
        else:
            logger.info(message)
        self.print(f"[{kind.value}] {message}")

    def listen(self, event: str, listener: abc.Callable[[JsonType], Any]) -> None:
        self._listeners[event].append(listener)

    def emit(self, event: str, payload: JsonType) -> None:
        logger.debug(f"Emitting {event}: {payload}")
        for listener in self._listeners.get(event, []):
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Exception in the {event} listener")

    def display_mining(self, status: MiningStatus) -> None:
        drop = status.current_drop
        if not status.is_mining or drop is None:
            self.status.update(_("status", "not_mining"))
            return
        self.status.update(
            _("status", "mining").format(
                drop=drop.drop_name,
                game=drop.game_name,
                current=drop.current_minutes,
                required=drop.required_minutes,
                percent=f"{drop.percentage:.1%}",
            )
        )

    def display_games(self, games: abc.Iterable[UnifiedGame]) -> None:
        for game in games:
            flags: list[str] = []
            if game.is_favorite:
                flags.append("★")
            if game.is_mining:
                flags.append("mining")
            if game.has_claimable:
                flags.append("claimable")
            if game.all_drops_claimed:
                flags.append("done")
            flags_text = f" [{', '.join(flags)}]" if flags else ''
            self.print(
                f"{game.name}: {len(game.campaigns)} campaigns, "
                f"{game.total_active_drops} rewards, {game.drops_in_progress} in progress"
                f"{flags_text}"
            )

    @property
    def close_requested(self) -> bool:
        return self._close_requested.is_set()

    def prevent_close(self) -> None:
        self._close_requested.clear()

    async def wait_until_closed(self) -> None:
        await self._close_requested.wait()

    def close(self) -> None:
        self._close_requested.set()

    async def coro_unless_closed(self, coro: abc.Awaitable[_T]) -> _T:
        # asyncio.wait only accepts tasks and futures
        tasks = [asyncio.ensure_future(coro), asyncio.ensure_future(self._close_requested.wait())]
        done: set[asyncio.Future[Any]]
        pending: set[asyncio.Future[Any]]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if self._close_requested.is_set():
            raise ExitRequest()
        return await next(iter(done))

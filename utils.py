from __future__ import annotations

import io
import os
import re
import sys
import json
import random
import asyncio
import logging
import traceback
from enum import Enum
from copy import deepcopy
from pathlib import Path
from functools import wraps
from collections import abc
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Mapping, TypeVar, ParamSpec, cast

from yarl import URL

from exceptions import ExitRequest
from constants import JsonType, PriorityMode, RecoveryMode


_T = TypeVar("_T")  # type
_D = TypeVar("_D")  # default
_P = ParamSpec("_P")  # params
_JSON_T = TypeVar("_JSON_T", bound=Mapping[Any, Any])
logger = logging.getLogger("DropsCenter")
FRACTION_PATTERN = re.compile(r'\.(\d+)')
WHITESPACE_PATTERN = re.compile(r'\s+')


def format_traceback(exc: BaseException, **kwargs: Any) -> str:
    """
    Formats the exception passed, along with its traceback, into a single string.
    """
    return ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__, **kwargs))


def lock_file(path: Path) -> tuple[bool, io.TextIOWrapper]:
    """
    Opens and locks the file, so that a second instance can tell we're already running.

    The returned file has to stay open for as long as the lock should be held.
    """
    file = path.open('w', encoding="utf8")
    file.write(str(os.getpid()))
    file.flush()
    try:
        if sys.platform == "win32":
            import msvcrt
            file.seek(0)
            msvcrt.locking(file.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl
            fcntl.lockf(file, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False, file
    return True, file


def json_minify(data: JsonType | list[JsonType]) -> str:
    return json.dumps(data, separators=(',', ':'))


def timestamp(string: str) -> datetime:
    # the backend can send up to nanosecond precision, datetime only takes microseconds
    string = FRACTION_PATTERN.sub(lambda m: f".{m.group(1)[:6]:0<6}", string, count=1)
    if string.endswith('Z'):
        string = f"{string[:-1]}+00:00"
    dt = datetime.fromisoformat(string)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def optional_timestamp(string: str | None) -> datetime | None:
    if not string:
        return None
    try:
        return timestamp(string)
    except ValueError:
        return None


def generated_id(name: str) -> str:
    """
    Builds a stable identifier out of a display name, for entities that arrive without one.
    """
    return "generated-" + WHITESPACE_PATTERN.sub('-', name.lower())


def _owning_miner(args: tuple[Any, ...]) -> Any:
    from miner import Miner  # cyclic import
    if args and isinstance(args[0], Miner):
        return args[0]
    return None


def task_wrapper(
    afunc: abc.Callable[_P, abc.Coroutine[Any, Any, _T]] | None = None, *, critical: bool = False
):
    """
    Decorates a coroutine function that runs as a background task.

    Control flow exceptions end the task quietly, anything else is logged and re-raised.
    The death of a `critical` task also closes the miner owning it.
    """
    def decorator(
        afunc: abc.Callable[_P, abc.Coroutine[Any, Any, _T]]
    ) -> abc.Callable[_P, abc.Coroutine[Any, Any, _T]]:
        @wraps(afunc)
        async def wrapper(*args: _P.args, **kwargs: _P.kwargs):
            try:
                await afunc(*args, **kwargs)
            except ExitRequest:
                return
            except Exception:
                logger.exception(f"The {afunc.__name__} task has died")
                if critical and (miner := _owning_miner(args)) is not None:
                    miner.close()
                raise
        return wrapper
    if afunc is None:
        return decorator
    return decorator(afunc)


def _utc_timestamp(dt: datetime) -> float:
    if dt.tzinfo is None:
        # naive objects are assumed to be UTC
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# Settings and caches are stored as JSON, with the non-JSON types wrapped
# into {"__type": <name>, "data": <value>} objects
SERIALIZERS: dict[type, Callable[[Any], Any]] = {
    datetime: _utc_timestamp,
    set: list,
    URL: str,
}
DESERIALIZERS: dict[str, Callable[[Any], object]] = {
    "set": set,
    "URL": URL,
    "PriorityMode": PriorityMode,
    "RecoveryMode": RecoveryMode,
    "datetime": lambda d: datetime.fromtimestamp(d, timezone.utc),
}
_MISSING = object()


def _serialize(obj: Any) -> JsonType:
    if isinstance(obj, Enum):
        data = obj.value
    else:
        for obj_type, convert in SERIALIZERS.items():
            if isinstance(obj, obj_type):
                data = convert(obj)
                break
        else:
            raise TypeError(f"Can't serialize: {type(obj).__name__}")
    return {"__type": type(obj).__name__, "data": data}


def _deserialize(obj: JsonType) -> Any:
    if "__type" not in obj:
        return obj
    convert = DESERIALIZERS.get(obj["__type"])
    if convert is None:
        # a type we no longer know about, it gets dropped
        return _MISSING
    return convert(obj["data"])


def _drop_missing(obj: JsonType) -> JsonType:
    for key, value in list(obj.items()):
        if value is _MISSING:
            del obj[key]
        elif isinstance(value, dict):
            _drop_missing(value)
            if not value:
                del obj[key]
    return obj


def merge_json(obj: JsonType, template: Mapping[Any, Any]) -> None:
    """
    Makes `obj` follow the shape of `template`, in place.

    Unknown keys are removed, missing keys and values of the wrong type
    are taken from the template. Nested dictionaries are merged recursively.
    """
    for key in list(obj):
        if key not in template:
            del obj[key]
    for key, default in template.items():
        value = obj.get(key, _MISSING)
        if value is _MISSING or type(value) is not type(default):
            obj[key] = deepcopy(default)
        elif isinstance(value, dict):
            merge_json(value, default)


def json_load(path: Path, defaults: _JSON_T, *, merge: bool = True) -> _JSON_T:
    if not path.exists():
        return cast(_JSON_T, deepcopy(defaults))
    with open(path, 'r', encoding="utf8") as file:
        contents: JsonType = _drop_missing(json.load(file, object_hook=_deserialize))
    if merge:
        merge_json(contents, defaults)
    return cast(_JSON_T, contents)


def json_save(path: Path, contents: Mapping[Any, Any], *, sort: bool = False) -> None:
    with open(path, 'w', encoding="utf8") as file:
        json.dump(contents, file, default=_serialize, sort_keys=sort, indent=4)


class ExponentialBackoff:
    """
    Endless iterator of retry delays: `base ** step`, with some random variance applied,
    capped at `maximum`.
    """
    def __init__(
        self,
        *,
        base: float = 2,
        variance: float | tuple[float, float] = 0.1,
        shift: float = 0,
        maximum: float = 300,
    ):
        if base <= 1:
            raise ValueError("Base has to be greater than 1")
        self.steps: int = 0
        self.base: float = float(base)
        self.shift: float = float(shift)
        self.maximum: float = float(maximum)
        self.variance: tuple[float, float]
        if isinstance(variance, tuple):
            self.variance = variance
        else:
            self.variance = (1 - variance, 1 + variance)

    def __iter__(self) -> abc.Iterator[float]:
        return self

    def __next__(self) -> float:
        delay = self.base ** self.steps * random.uniform(*self.variance) + self.shift
        if delay >= self.maximum:
            # stop stepping once capped, so the exponent doesn't grow forever
            return self.maximum
        self.steps += 1
        return delay

    def reset(self) -> None:
        self.steps = 0


class AwaitableValue(Generic[_T]):
    """
    A value slot that's either set or empty.
    """
    def __init__(self) -> None:
        self._value: _T
        self._set = asyncio.Event()

    def get_with_default(self, default: _D) -> _T | _D:
        return self._value if self._set.is_set() else default

    def set(self, value: _T) -> None:
        self._value = value
        self._set.set()

    def clear(self) -> None:
        self._set.clear()

from __future__ import annotations

import logging
import argparse
from typing import TYPE_CHECKING

from yarl import URL

from version import __version__
from constants import LOGGING_LEVELS, SELF_PATH

if TYPE_CHECKING:
    from settings import Settings


class ParsedArgs(argparse.Namespace):
    _verbose: int = 0
    _debug_ws: bool = False
    _debug_backend: bool = False
    log: bool = False
    once: bool = False
    backend_url: URL | None = None
    mine_all: str | None = None
    campaign: str | None = None
    channel: str | None = None

    @property
    def logging_level(self) -> int:
        return LOGGING_LEVELS[min(self._verbose, 4)]

    def _sublogger_level(self, flag: bool) -> int:
        # raw traffic shows up only when asked for, -vvvv alone gives a summary of it
        if flag:
            return logging.DEBUG
        if self._verbose >= 4:
            return logging.INFO
        return logging.NOTSET

    @property
    def debug_ws(self) -> int:
        """
        Level of the event stream logger. NOTSET makes it follow the main logging level.
        """
        return self._sublogger_level(self._debug_ws)

    @property
    def debug_backend(self) -> int:
        return self._sublogger_level(self._debug_backend)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        SELF_PATH.name,
        description="Keeps track of drops progress, and mines campaigns through the backend.",
    )
    parser.add_argument("--version", action="version", version=f"v{__version__}")
    parser.add_argument("-v", dest="_verbose", action="count", default=0)
    parser.add_argument("--log", action="store_true")
    parser.add_argument(
        "--once", action="store_true", help="fetch everything once, print a summary and exit"
    )
    parser.add_argument("--backend", dest="backend_url", type=URL, metavar="URL")
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--mine-all", dest="mine_all", metavar="GAME", help="mine every campaign of a game"
    )
    action.add_argument("--campaign", metavar="ID", help="mine a single campaign")
    parser.add_argument(
        "--channel", metavar="ID", help="channel to use with --campaign"
    )
    # undocumented debug args
    parser.add_argument(
        "--debug-ws", dest="_debug_ws", action="store_true", help=argparse.SUPPRESS
    )
    parser.add_argument(
        "--debug-backend", dest="_debug_backend", action="store_true", help=argparse.SUPPRESS
    )
    return parser


def setup_logging(settings: Settings) -> None:
    from constants import FILE_FORMATTER, OUTPUT_FORMATTER, LOG_PATH

    if settings.logging_level > logging.DEBUG:
        # third-party loggers stay silent unless running at DEBUG
        logging.getLogger().addHandler(logging.NullHandler())
    logger = logging.getLogger("DropsCenter")
    logger.setLevel(settings.logging_level)
    console = logging.StreamHandler()
    console.setFormatter(OUTPUT_FORMATTER)
    logger.addHandler(console)
    if settings.log:
        log_file = logging.FileHandler(LOG_PATH)
        log_file.setFormatter(FILE_FORMATTER)
        logger.addHandler(log_file)
    logging.getLogger("DropsCenter.backend").setLevel(settings.debug_backend)
    logging.getLogger("DropsCenter.events").setLevel(settings.debug_ws)


if __name__ == "__main__":
    import sys
    import signal
    import asyncio
    import warnings
    import traceback

    import truststore
    truststore.inject_into_ssl()

    from translate import _
    from miner import Miner
    from settings import Settings
    from utils import lock_file
    from constants import LOCK_PATH

    warnings.simplefilter("default", ResourceWarning)
    if sys.version_info < (3, 10):
        raise RuntimeError("DropsCenter needs Python 3.10 or newer")

    parser = build_parser()
    args = parser.parse_args(namespace=ParsedArgs())
    if args.channel is not None and args.campaign is None:
        parser.error("--channel requires --campaign")
    try:
        settings = Settings(args)
    except Exception:
        print(
            f"Unable to load the settings file:\n\n{traceback.format_exc()}", file=sys.stderr
        )
        sys.exit(4)

    async def main() -> int:
        try:
            _.set_language(settings.language)
        except ValueError:
            pass  # unknown language, English stays
        setup_logging(settings)

        miner = Miner(settings)
        loop = asyncio.get_running_loop()
        stop_signals = (signal.SIGINT, signal.SIGTERM) if sys.platform == "linux" else ()
        for signum in stop_signals:
            loop.add_signal_handler(signum, miner.close)
        status = 0
        try:
            await miner.run()
        except Exception:
            status = 1
            miner.prevent_close()
            miner.print(f"Fatal error encountered:\n{traceback.format_exc()}")
        finally:
            for signum in stop_signals:
                loop.remove_signal_handler(signum)
            miner.print(_("status", "exiting"))
            await miner.shutdown()
        if status:
            miner.print(_("status", "terminated"))
        miner.save(force=True)
        return status

    # the lock file keeps a second instance from starting
    locked, lock = lock_file(LOCK_PATH)
    exit_code = 3
    try:
        if locked:
            exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        exit_code = 0
    finally:
        lock.close()
    sys.exit(exit_code)

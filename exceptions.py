class MinerException(Exception):
    """
    Root of every error raised by DropsCenter itself.
    """
    def __init__(self, *args: object):
        if args:
            super().__init__(*args)
        else:
            super().__init__("Unknown miner error")


class ExitRequest(MinerException):
    """
    Unwinds a pending request or task once a shutdown has been requested.

    Intended for internal use only.
    """
    def __init__(self):
        super().__init__("Exit requested")


class RequestException(MinerException):
    """
    The backend answered with something we can't use.
    """
    def __init__(self, *args: object):
        if args:
            super().__init__(*args)
        else:
            super().__init__("Unknown error during request")


class RequestInvalid(RequestException):
    """
    The request outlived its `invalidate_after` deadline while being retried.

    Intended for internal use only.
    """
    def __init__(self):
        super().__init__("Request expired while retrying")


class EventStreamClosed(RequestException):
    """
    The event stream connection went away.

    `received` is set when the backend sent us a close frame.
    """
    def __init__(self, *args: object, received: bool = False):
        if args:
            super().__init__(*args)
        else:
            super().__init__("Event stream has been closed")
        self.received: bool = received


class SourceUnavailable(RequestException):
    """
    Raised when one of the data sources couldn't be fetched.

    The fetcher replaces it with an empty value, so it never reaches the view.
    """
    def __init__(self, source: str, *args: object):
        if args:
            super().__init__(*args)
        else:
            super().__init__(f"Data source unavailable: {source}")
        self.source: str = source


class CommandFailed(RequestException):
    """
    Raised when the backend rejects a command (start, stop, claim, settings update).
    """
    def __init__(self, command: str, reason: str = ''):
        if reason:
            super().__init__(f"Command '{command}' failed: {reason}")
        else:
            super().__init__(f"Command '{command}' failed")
        self.command: str = command
        self.reason: str = reason


class StaleCache(MinerException):
    """
    Raised when a persisted cache can't be parsed back.

    Callers treat the cache as empty.
    """
    def __init__(self, key: str):
        super().__init__(f"Unable to parse the stored cache: {key}")
        self.key: str = key

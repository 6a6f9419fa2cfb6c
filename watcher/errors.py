"""Exception types shared across the bridge."""


class WatcherError(Exception):
    """Base class for all bridge errors."""
    pass


class ConfigError(WatcherError):
    """Missing or invalid configuration. Fatal at startup."""
    pass


class StoreError(WatcherError):
    """A subscription store read or write failed."""
    pass


class UpstreamError(WatcherError):
    """The X API returned an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StreamOpenError(UpstreamError):
    """A stream session could not be established from a valid filter."""
    pass

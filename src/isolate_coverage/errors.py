"""Exceptions raised while collecting coverage."""


class CoverageError(Exception):
    """Base class for coverage collection failures."""


class ServiceConnectionError(CoverageError):
    """The VM service could not be reached or did not answer the probe."""


class CollectionTimeoutError(CoverageError, TimeoutError):
    """An operation did not complete within the overall deadline."""

    def __init__(self, timeout):
        self.timeout = timeout
        if timeout >= 1:
            duration = f"{int(timeout)}s"
        else:
            duration = f"{int(timeout * 1000)}ms"
        super().__init__(f"Failed to complete within {duration}")


class UnpausedIsolatesError(CoverageError):
    """Some isolates are still running while waiting for all to pause."""


class MalformedServiceUriError(CoverageError, ValueError):
    """The service URI cannot be turned into a websocket URI."""


class IsolateExitedError(CoverageError):
    """The isolate is gone; the service answered with a sentinel."""

"""VM service capabilities consumed by the collectors.

The wire client is not part of this package. Anything that satisfies the
protocols below can be plugged in through a connection factory, a callable
taking the websocket URI and returning an awaitable ServiceClient.

Listeners passed to ``on_isolate_start`` and ``on_pause_or_resume`` are plain
callables; clients call them on the event loop, one event per call.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol, Sequence
from urllib.parse import urlsplit, urlunsplit

from isolate_coverage.errors import MalformedServiceUriError

_WEBSOCKET_SCHEMES = {"http": "ws", "https": "wss"}


class EventKind(str, Enum):
    """Debug stream event kinds reported by the VM service."""

    PAUSE_START = "PauseStart"
    PAUSE_EXIT = "PauseExit"
    PAUSE_BREAKPOINT = "PauseBreakpoint"
    PAUSE_INTERRUPTED = "PauseInterrupted"
    PAUSE_EXCEPTION = "PauseException"
    PAUSE_POST_REQUEST = "PausePostRequest"
    RESUME = "Resume"
    NONE = "None"


@dataclass
class ServiceEvent:
    kind: EventKind
    data: dict = field(default_factory=dict)

    @property
    def is_pause(self):
        return self.kind.value.startswith("Pause")


@dataclass
class Isolate:
    """Snapshot of an isolate as returned by loading its reference."""

    id: str
    name: str = ""
    pause_event: Optional[ServiceEvent] = None

    @property
    def is_paused(self):
        return self.pause_event is not None and self.pause_event.is_pause

    @property
    def is_exiting(self):
        """True while the isolate sits in its pause before exit."""
        return self.pause_event is not None and self.pause_event.kind == EventKind.PAUSE_EXIT


@dataclass
class Script:
    """A loaded script able to map token positions to lines.

    ``token_lines`` maps a token position to its 0-based line.
    """

    uri: str
    token_lines: dict = field(default_factory=dict)

    @classmethod
    def from_token_pos_table(cls, uri, table):
        """Build from a service token position table.

        Each row is ``[line, tokenPos, column, tokenPos, column, ...]`` with a
        1-based line.
        """
        token_lines = {}
        for row in table:
            line = row[0] - 1
            for i in range(1, len(row), 2):
                token_lines[row[i]] = line
        return cls(uri, token_lines)

    def line_of(self, token_pos):
        """Return the 0-based line of ``token_pos``."""
        return self.token_lines[token_pos]


class ScriptRef(Protocol):
    id: str
    uri: str

    async def load(self) -> Script: ...


@dataclass
class SourceReportRange:
    """Coverage of one compiled range; token lists may be absent."""

    script: ScriptRef
    hits: Optional[List[int]] = None
    misses: Optional[List[int]] = None


@dataclass
class SourceReport:
    ranges: List[SourceReportRange] = field(default_factory=list)


class Subscription(Protocol):
    async def cancel(self) -> None: ...


class IsolateRef(Protocol):
    id: str
    name: str

    async def load(self) -> Isolate:
        """Load the isolate; raises IsolateExitedError if it is gone."""
        ...

    async def get_source_report(self, force_compile: bool = False) -> SourceReport: ...

    async def resume(self) -> None: ...

    def on_pause_or_resume(self, listener: Callable[[ServiceEvent], Any]) -> Subscription: ...


@dataclass
class VM:
    isolates: Sequence[IsolateRef] = ()


class ServiceClient(Protocol):
    async def get_vm(self) -> VM: ...

    def on_isolate_start(self, listener: Callable[[IsolateRef], Any]) -> Subscription: ...

    async def close(self) -> None: ...


def websocket_uri(service_uri):
    """Derive the websocket URI of the service from its http(s) URI.

    ``http://127.0.0.1:8181/abc=/`` becomes ``ws://127.0.0.1:8181/abc=/ws``.
    """
    if not isinstance(service_uri, str):
        raise MalformedServiceUriError(f"Invalid service URI: {service_uri!r}")
    try:
        parts = urlsplit(service_uri)
        parts.port
    except ValueError as e:
        raise MalformedServiceUriError(f"Invalid service URI: {service_uri!r}") from e

    scheme = _WEBSOCKET_SCHEMES.get(parts.scheme.lower())
    if scheme is None or not parts.hostname:
        raise MalformedServiceUriError(f"Invalid service URI: {service_uri!r}")

    segments = [s for s in parts.path.split("/") if s]
    segments.append("ws")
    return urlunsplit((scheme, parts.netloc, "/" + "/".join(segments), parts.query, ""))

# In-memory VM service used by the tests.
#
# Scripts use a token position table where token N*10 sits on line N, so
# tokens(3, 4) produces tokens on lines 3 and 4.

import asyncio

from isolate_coverage.errors import IsolateExitedError
from isolate_coverage.service import (
    VM,
    EventKind,
    Isolate,
    Script,
    ServiceEvent,
    SourceReport,
    SourceReportRange,
)

SERVICE_URI = "http://127.0.0.1:8181/abc=/"


def tokens(*lines):
    return [line * 10 for line in lines]


class FakeSubscription:
    def __init__(self, listeners, listener):
        self._listeners = listeners
        self._listener = listener
        self.cancel_count = 0
        listeners.append(listener)

    async def cancel(self):
        self.cancel_count += 1
        if self._listener in self._listeners:
            self._listeners.remove(self._listener)


class FakeScriptRef:
    def __init__(self, uri, n_lines=100, script_id=None):
        self.id = script_id or f"scripts/{uri}"
        self.uri = uri
        self.load_count = 0
        self._table = [[line, line * 10, 1] for line in range(1, n_lines + 1)]

    async def load(self):
        self.load_count += 1
        return Script.from_token_pos_table(self.uri, self._table)


def make_range(script_ref, hits=None, misses=None):
    return SourceReportRange(script=script_ref, hits=hits, misses=misses)


class FakeIsolateRef:
    def __init__(self, service, isolate_id, report=None, pause_kind=EventKind.RESUME):
        self.service = service
        self.id = isolate_id
        self.name = f"isolate-{isolate_id}"
        self.report = report or SourceReport()
        self.pause_kind = pause_kind
        self.exited = False
        self.listeners = []
        self.subscriptions = []
        self.load_count = 0
        self.report_count = 0
        self.resume_count = 0
        self.force_compile = None
        self.report_delay = 0
        # Optional list receiving ("enter"/"exit", isolate id) around reports.
        self.trace = None
        # Optional hook run on every load(), after the count is bumped.
        self.on_load = None

    async def load(self):
        if self.exited:
            raise IsolateExitedError(f"isolate {self.id} has exited")
        self.load_count += 1
        if self.on_load is not None:
            self.on_load(self)
        return Isolate(self.id, self.name, ServiceEvent(self.pause_kind))

    async def get_source_report(self, force_compile=False):
        self.force_compile = force_compile
        if self.trace is not None:
            self.trace.append(("enter", self.id))
        await asyncio.sleep(self.report_delay)
        if self.trace is not None:
            self.trace.append(("exit", self.id))
        self.report_count += 1
        return self.report

    async def resume(self):
        self.resume_count += 1
        if self.pause_kind == EventKind.PAUSE_EXIT:
            self.exit()
        else:
            self.pause_kind = EventKind.RESUME

    def exit(self):
        self.exited = True
        if self in self.service.isolates:
            self.service.isolates.remove(self)

    def on_pause_or_resume(self, listener):
        subscription = FakeSubscription(self.listeners, listener)
        self.subscriptions.append(subscription)
        return subscription

    def pause(self, kind=EventKind.PAUSE_EXIT):
        """Pause the isolate and notify subscribers."""
        self.pause_kind = kind
        for listener in list(self.listeners):
            listener(ServiceEvent(kind))


class FakeService:
    def __init__(self):
        self.isolates = []
        self.start_listeners = []
        self.start_subscriptions = []
        self.close_count = 0
        self.get_vm_count = 0
        self.probe_delay = 0

    def add_isolate(self, isolate_id, report=None, pause_kind=EventKind.RESUME):
        isolate_ref = FakeIsolateRef(self, isolate_id, report, pause_kind)
        self.isolates.append(isolate_ref)
        return isolate_ref

    def start_isolate(self, isolate_id, report=None, pause_kind=EventKind.RESUME):
        """Add an isolate and announce it to isolate-start subscribers."""
        isolate_ref = self.add_isolate(isolate_id, report, pause_kind)
        for listener in list(self.start_listeners):
            listener(isolate_ref)
        return isolate_ref

    async def get_vm(self):
        self.get_vm_count += 1
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        return VM(isolates=list(self.isolates))

    def on_isolate_start(self, listener):
        subscription = FakeSubscription(self.start_listeners, listener)
        self.start_subscriptions.append(subscription)
        return subscription

    async def close(self):
        self.close_count += 1


class Connector:
    """Connection factory handing out a fixed FakeService."""

    def __init__(self, service, failures=0):
        self.service = service
        self.failures = failures
        self.uris = []

    async def __call__(self, uri):
        self.uris.append(uri)
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        return self.service


async def demo_connect(uri):
    """Factory for CLI tests: one isolate already paused at exit."""
    service = FakeService()
    script = FakeScriptRef("file:///app/main.dart")
    service.add_isolate(
        "1",
        SourceReport([make_range(script, hits=tokens(1, 2), misses=tokens(3))]),
        pause_kind=EventKind.PAUSE_EXIT,
    )
    return service


async def broken_connect(uri):
    """Factory for CLI tests: the only isolate fails to report."""
    service = FakeService()
    isolate = service.add_isolate("1", pause_kind=EventKind.PAUSE_EXIT)

    async def fail(force_compile=False):
        raise RuntimeError("source report unavailable")

    isolate.get_source_report = fail
    return service

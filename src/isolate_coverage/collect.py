"""Coverage collection from all isolates of a running VM.

Two strategies share the connect/prepare/collect/tear down template of
CoverageCollector:

* OneTimeCollector takes a single snapshot of every live isolate, optionally
  after waiting for all of them to pause.
* OnExitCollector follows isolates as they start and collects from each one
  when it pauses before exiting.

Both produce the same envelope::

    {"type": "CodeCoverage", "coverage": [<script coverage>, ...]}
"""

import abc
import asyncio
import logging
from urllib.parse import quote

from isolate_coverage.errors import (
    IsolateExitedError,
    ServiceConnectionError,
    UnpausedIsolatesError,
)
from isolate_coverage.service import EventKind, websocket_uri
from isolate_coverage.util import retry

logger = logging.getLogger(__name__)

RETRY_INTERVAL = 0.2

# Ranges from ad-hoc expression evaluation have no durable source.
EVALUATE_SCHEME = "evaluate:"

# Characters besides letters, digits and "_.-~" left unescaped in script ids.
URI_COMPONENT_SAFE = "!*'()"


async def collect(service_uri, resume=False, wait_paused=False, on_exit=False,
                  timeout=None, *, connect):
    """Collect merged coverage for all isolates of the VM at ``service_uri``.

    Args:
        service_uri: http(s) URI of the VM service.
        resume: Resume paused isolates once their coverage is collected.
        wait_paused: One-time mode only: wait until every isolate is paused
            before collecting.
        on_exit: Collect from each isolate when it pauses before exiting
            instead of taking a single snapshot.
        timeout: Seconds allowed for connecting and for waiting on paused
            isolates. None waits forever.
        connect: Connection factory, ``connect(websocket_uri)`` returning an
            awaitable ServiceClient.

    Returns:
        The CodeCoverage envelope.
    """
    if on_exit:
        collector = OnExitCollector(service_uri, connect, resume, timeout=timeout)
    else:
        collector = OneTimeCollector(service_uri, connect, wait_paused, resume, timeout=timeout)
    return await collector.collect()


class CoverageCollector(abc.ABC):
    """Shared connect/prepare/collect/tear down sequence."""

    def __init__(self, service_uri, connect, timeout=None):
        self.service_uri = service_uri
        self.websocket_uri = websocket_uri(service_uri)
        self.timeout = timeout
        self._connect = connect
        self._collected_coverage = []
        self.service = None

    async def connect_to_service(self):
        """Connect, retrying until the service answers a probe."""

        async def attempt():
            try:
                service = await self._connect(self.websocket_uri)
            except OSError as e:
                raise ServiceConnectionError(
                    f"Cannot connect to VM service at {self.websocket_uri}: {e}"
                ) from e
            try:
                await asyncio.wait_for(service.get_vm(), RETRY_INTERVAL)
            except Exception as e:
                # Half-open connection; drop it before the next attempt.
                await service.close()
                raise ServiceConnectionError(
                    f"No response from VM service at {self.websocket_uri}"
                ) from e
            except asyncio.CancelledError:
                # Overall deadline passed mid-probe.
                await service.close()
                raise
            return service

        service = await retry(attempt, RETRY_INTERVAL, timeout=self.timeout)
        logger.info("Connected to VM service at %s", self.websocket_uri)
        return service

    @abc.abstractmethod
    async def prepare(self):
        pass

    @abc.abstractmethod
    async def collect_coverage(self):
        pass

    @abc.abstractmethod
    async def tear_down(self):
        pass

    async def collect(self):
        self.service = await self.connect_to_service()

        try:
            await self.prepare()
            await self.collect_coverage()
        finally:
            try:
                await self.tear_down()
            finally:
                await self.service.close()

        logger.info("Collected coverage for %d script(s)", len(self._collected_coverage))
        return {
            "type": "CodeCoverage",
            "coverage": self._collected_coverage,
        }

    async def collect_from_isolate(self, isolate_ref):
        logger.debug("Collecting coverage from isolate %s", isolate_ref.id)
        report = await isolate_ref.get_source_report(force_compile=True)
        coverage = await get_coverage_json(report)
        self._collected_coverage.extend(coverage)

    async def _list_isolates(self):
        vm = await self.service.get_vm()
        return list(vm.isolates)


class OneTimeCollector(CoverageCollector):
    """Collect once, optionally waiting for all isolates to pause first and
    optionally resuming them afterwards."""

    def __init__(self, service_uri, connect, wait_paused, resume, timeout=None):
        super().__init__(service_uri, connect, timeout=timeout)
        self.wait_paused = wait_paused
        self.resume = resume

    async def prepare(self):
        if not self.wait_paused:
            return

        async def all_paused():
            for isolate_ref in await self._list_isolates():
                isolate = await isolate_ref.load()
                if not isolate.is_paused:
                    raise UnpausedIsolatesError("Unpaused isolates remaining.")

        await retry(all_paused, RETRY_INTERVAL, timeout=self.timeout)

    async def collect_coverage(self):
        for isolate_ref in await self._list_isolates():
            await self.collect_from_isolate(isolate_ref)

    async def tear_down(self):
        if not self.resume:
            return

        for isolate_ref in await self._list_isolates():
            try:
                isolate = await isolate_ref.load()
                if isolate.is_paused:
                    await isolate_ref.resume()
            except IsolateExitedError:
                logger.debug("Isolate %s exited before it could be resumed", isolate_ref.id)


class OnExitCollector(CoverageCollector):
    """Collect from each isolate when it pauses before exiting, optionally
    resuming it afterwards."""

    def __init__(self, service_uri, connect, resume, timeout=None):
        super().__init__(service_uri, connect, timeout=timeout)
        self.resume = resume
        # isolate id -> subscription to its pause/resume events
        self._exit_subscriptions = {}
        self._isolate_start_subscription = None
        self._all_isolates_exited = None
        self._tracking_initial = False
        self._collection_lock = asyncio.Lock()
        self._pending = set()

    async def prepare(self):
        pass

    async def collect_coverage(self):
        self._all_isolates_exited = asyncio.get_running_loop().create_future()
        try:
            all_exiting = True
            self._tracking_initial = True
            for isolate_ref in await self._list_isolates():
                if not await self._track_isolate(isolate_ref):
                    all_exiting = False
            self._tracking_initial = False

            # Nothing left to wait for: new isolates would only be reported
            # by an isolate that is still running.
            if all_exiting:
                return

            self._check_all_exited()
            if not self._all_isolates_exited.done():
                self._isolate_start_subscription = self.service.on_isolate_start(
                    self._on_isolate_start
                )
            await self._all_isolates_exited
        finally:
            if self._isolate_start_subscription is not None:
                await self._isolate_start_subscription.cancel()
                self._isolate_start_subscription = None
            await self._cancel_pending()
            # Only left over when collection failed.
            while self._exit_subscriptions:
                _, subscription = self._exit_subscriptions.popitem()
                await subscription.cancel()

    async def tear_down(self):
        pass

    async def _track_isolate(self, isolate_ref):
        """Watch ``isolate_ref`` for its exit pause.

        Returns True if the isolate was already exiting and has been
        collected, or is already gone.
        """
        try:
            isolate = await isolate_ref.load()
        except IsolateExitedError:
            logger.debug("Isolate %s exited before it could be watched", isolate_ref.id)
            return True
        if isolate.is_exiting:
            await self._collect_and_resume(isolate_ref)
            return True

        logger.debug("Watching isolate %s for exit", isolate_ref.id)
        self._exit_subscriptions[isolate_ref.id] = isolate_ref.on_pause_or_resume(
            lambda event: self._on_pause_or_resume(isolate_ref, event)
        )

        # The exit pause may have happened between load() and subscribing,
        # in which case no event will arrive for it.
        try:
            isolate = await isolate_ref.load()
        except IsolateExitedError:
            logger.debug("Isolate %s exited while being watched", isolate_ref.id)
            await self._stop_watching(isolate_ref)
            self._check_all_exited()
            return True
        if isolate.is_exiting:
            await self._collect_from_exiting_isolate(isolate_ref)
            return True
        return False

    async def _stop_watching(self, isolate_ref):
        async with self._collection_lock:
            subscription = self._exit_subscriptions.pop(isolate_ref.id, None)
            if subscription is not None:
                await subscription.cancel()

    def _on_isolate_start(self, isolate_ref):
        self._spawn(self._track_isolate(isolate_ref))

    def _on_pause_or_resume(self, isolate_ref, event):
        if event.kind == EventKind.PAUSE_EXIT:
            self._spawn(self._collect_from_exiting_isolate(isolate_ref))

    async def _collect_from_exiting_isolate(self, isolate_ref):
        await self._collect_and_resume(isolate_ref, cancel_subscription=True)
        self._check_all_exited()

    def _check_all_exited(self):
        # Isolates listed at start are not all subscribed yet.
        if self._tracking_initial:
            return
        if not self._exit_subscriptions and not self._all_isolates_exited.done():
            self._all_isolates_exited.set_result(None)

    async def _collect_and_resume(self, isolate_ref, cancel_subscription=False):
        # Only one isolate is collected at a time.
        async with self._collection_lock:
            if cancel_subscription and isolate_ref.id not in self._exit_subscriptions:
                return

            await self.collect_from_isolate(isolate_ref)
            if self.resume:
                await isolate_ref.resume()

            if cancel_subscription:
                subscription = self._exit_subscriptions.pop(isolate_ref.id)
                await subscription.cancel()

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        if self._all_isolates_exited.done():
            logger.error("Coverage collection from exiting isolate failed: %s", error,
                         exc_info=error)
        else:
            self._all_isolates_exited.set_exception(error)

    async def _cancel_pending(self):
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def get_coverage_json(report):
    """Merge the ranges of a source report into script coverage entries.

    Hits on the same line add up; a line only ever missed is kept with a
    count of 0. Returns one entry per script URI, in the order the scripts
    first appear in the report.
    """
    scripts = {}
    for source_range in report.ranges:
        script_ref = source_range.script
        if script_ref.uri.startswith(EVALUATE_SCHEME) or script_ref.id in scripts:
            continue
        scripts[script_ref.id] = await script_ref.load()

    # script uri -> {line: hit count}
    hit_maps = {}
    for source_range in report.ranges:
        script_ref = source_range.script
        if script_ref.uri.startswith(EVALUATE_SCHEME):
            continue

        hit_map = hit_maps.setdefault(script_ref.uri, {})
        script = scripts[script_ref.id]
        for hit in source_range.hits or ():
            line = script.line_of(hit) + 1
            hit_map[line] = hit_map.get(line, 0) + 1
        for miss in source_range.misses or ():
            line = script.line_of(miss) + 1
            hit_map.setdefault(line, 0)

    return [to_script_coverage_json(uri, hit_map) for uri, hit_map in hit_maps.items()]


def to_script_coverage_json(script_uri, hit_map):
    """Flatten one script's hit map into a coverage entry."""
    hits = []
    for line, count in hit_map.items():
        hits.append(line)
        hits.append(count)
    return {
        "source": script_uri,
        "script": {
            "type": "@Script",
            "fixedId": True,
            "id": f"libraries/1/scripts/{quote(script_uri, safe=URI_COMPONENT_SAFE)}",
            "uri": script_uri,
            "_kind": "library",
        },
        "hits": hits,
    }

"""Helpers shared by the collectors and the CLI."""

import asyncio
import logging
import re
import socket
from urllib.parse import urlsplit

from isolate_coverage.errors import CollectionTimeoutError

logger = logging.getLogger(__name__)

# Prefixes the VM prints when its service starts listening.
SERVICE_LISTENING_MARKERS = (
    "Observatory listening on ",
    "The Dart VM service is listening on ",
)


async def retry(operation, interval, timeout=None):
    """Call ``operation`` until it succeeds and return its result.

    Any exception raised by ``operation`` is swallowed and the call is
    repeated after ``interval`` seconds. Without ``timeout`` this retries
    forever. With ``timeout`` the whole loop, including a call or sleep in
    flight, is cancelled once the deadline passes and
    CollectionTimeoutError is raised; ``operation`` is never called after
    that point.
    """
    last_error = None

    async def _attempts():
        nonlocal last_error
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                last_error = e
                logger.debug("Attempt %d failed, retrying in %.3fs: %s", attempt, interval, e)
            await asyncio.sleep(interval)

    if timeout is None:
        return await _attempts()

    try:
        return await asyncio.wait_for(_attempts(), timeout)
    except asyncio.TimeoutError:
        raise CollectionTimeoutError(timeout) from last_error


def extract_observatory_uri(text):
    """Scrape the VM service URI from a line of program output.

    Returns None when the line does not announce the service or the URI
    after the announcement cannot be parsed.
    """
    for marker in SERVICE_LISTENING_MARKERS:
        pos = text.find(marker)
        if pos != -1:
            break
    else:
        return None

    match = re.match(r"\S+", text[pos + len(marker):])
    if not match:
        return None
    candidate = match.group(0)
    try:
        parts = urlsplit(candidate)
        parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return candidate


def get_open_port():
    """Return a currently unused TCP port on the loopback interface."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("127.0.0.1", 0))
    except OSError:
        # IPv4 may be disabled; fall back to an IPv6-only socket.
        sock.close()
        sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            sock.bind(("::1", 0))
        except OSError:
            sock.close()
            raise
    with sock:
        return sock.getsockname()[1]

"""
IMAP Retry Logic

Proxy around an imaplib connection that re-issues read-only commands when the
server answers with a transient "busy" reply, backing off exponentially.
"""

from __future__ import annotations

import time

TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED")

# Commands the export issues that return (typ, data) and have no side effects
RETRYABLE_METHODS = frozenset({"select", "list", "fetch", "noop", "status"})


def _is_transient_error(data) -> bool:
    """True when any bytes item of an IMAP reply carries a transient pattern."""
    for item in data or ():
        if not isinstance(item, bytes):
            continue
        if any(pattern in item for pattern in TRANSIENT_PATTERNS):
            return True
    return False


class ConnectionProxy:
    """Transparent proxy that retries busy replies on RETRYABLE_METHODS.

    Everything else (attributes, LOGOUT, sockets) passes straight through to
    the wrapped connection. A reply that is still busy after the last
    attempt is returned as-is so the caller's error handling sees it.
    """

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=print, sleep=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep = sleep

    @property
    def wrapped(self):
        return self._conn

    def _discard_untagged(self):
        # Responses collected by the failed attempt would be returned again
        # together with the retry's own.
        untagged = getattr(self._conn, "untagged_responses", None)
        if isinstance(untagged, dict):
            untagged.clear()

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in RETRYABLE_METHODS or not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            result = None
            for attempt in range(1, self._max_retries + 1):
                result = attr(*args, **kwargs)
                if not isinstance(result, tuple) or len(result) < 2:
                    return result
                typ, data = result[0], result[1]
                if typ == "OK" or not _is_transient_error(data):
                    return result
                if attempt < self._max_retries:
                    self._discard_untagged()
                    wait = self._initial_wait * (2 ** (attempt - 1))
                    self._log_fn(
                        f"Server busy on {name.upper()}, retrying in {wait}s... "
                        f"(attempt {attempt}/{self._max_retries})"
                    )
                    self._sleep(wait)
            return result

        return wrapper

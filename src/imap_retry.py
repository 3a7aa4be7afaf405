"""
IMAP Retry Logic

Retries IMAP commands in place when the server answers with a transient
"busy" response, before the caller ever sees the failure. Connection-level
failures are not retried here; they end the session and the run supervisor
starts a new one.
"""

from __future__ import annotations

import time

TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED")

# Commands the transfer engine issues that return (typ, data) and are safe
# to repeat after a NO: the server did not act on a refused command.
RETRYABLE_METHODS = frozenset({"select", "create", "fetch", "append", "store", "expunge", "noop"})


def is_transient_error(data) -> bool:
    """Check if IMAP response data carries one of the transient error markers."""
    for item in data or ():
        if isinstance(item, bytes) and any(pattern in item for pattern in TRANSIENT_PATTERNS):
            return True
    return False


class ConnectionProxy:
    """Wraps an imaplib connection and retries busy responses with exponential backoff.

    Methods outside RETRYABLE_METHODS, and plain attributes, pass straight
    through to the wrapped connection.
    """

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=None, sleep=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep = sleep

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in RETRYABLE_METHODS or not callable(attr):
            return attr

        def call_with_retry(*args, **kwargs):
            result = None
            for attempt in range(1, self._max_retries + 1):
                result = attr(*args, **kwargs)
                if not isinstance(result, tuple) or len(result) < 2:
                    return result
                typ, data = result[0], result[1]
                if typ == "OK" or not is_transient_error(data):
                    return result
                if attempt < self._max_retries:
                    wait = self._initial_wait * (2 ** (attempt - 1))
                    if self._log_fn is not None:
                        self._log_fn(
                            f"Server busy on {name.upper()}, retrying in {wait}s... "
                            f"(attempt {attempt}/{self._max_retries})"
                        )
                    self._sleep(wait)
            return result

        return call_with_retry

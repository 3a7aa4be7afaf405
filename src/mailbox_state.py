"""
Mailbox State Tracker

Holds the two counters shared between the notification listener and the
transfer pipeline:

- processed: highest source sequence number already handled
- observed:  latest message count reported by the server

Every setter bumps a version number and wakes waiters. Readers wait for
"version differs from the one I last read" rather than for a bare signal,
so a change that lands between a read and the wait is never lost.
"""

from __future__ import annotations

import threading
from typing import NamedTuple


class Cursor(NamedTuple):
    processed: int
    observed: int
    version: int

    @property
    def pending(self) -> bool:
        return self.observed > self.processed


class MailboxStateTracker:
    def __init__(self, observed: int = 0, processed: int = 0):
        if observed < 0 or processed < 0:
            raise ValueError("message counts must be >= 0")
        self._cond = threading.Condition()
        self._processed = processed
        self._observed = observed
        self._version = 0

    def read(self) -> Cursor:
        with self._cond:
            return Cursor(self._processed, self._observed, self._version)

    def _changed(self):
        self._version += 1
        self._cond.notify_all()

    def set_observed(self, count: int) -> None:
        with self._cond:
            self._observed = count
            self._changed()

    def decrement_both(self) -> None:
        """Account for one expunged message.

        Assumes this engine is the only client removing messages from the
        source mailbox; an expunge by anyone else still lowers `processed`.
        """
        with self._cond:
            self._processed = max(self._processed - 1, 0)
            self._observed = max(self._observed - 1, 0)
            self._changed()

    def advance_processed(self, count: int) -> None:
        """Record that every message up to `count` was handled. Never moves backwards."""
        with self._cond:
            if count > self._processed:
                self._processed = count
            self._changed()

    def wake(self) -> None:
        """Wake waiters without changing state, so they can re-check their cancel signal."""
        with self._cond:
            self._cond.notify_all()

    def wait_for_change(self, since_version: int, cancel_event=None, timeout=None) -> bool:
        """
        Block until the version moves past since_version.

        Returns True on a change; False if cancel_event was set (callers must
        call wake() after setting it) or the timeout expired.
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: self._version != since_version or (cancel_event is not None and cancel_event.is_set()),
                timeout=timeout,
            ) and self._version != since_version

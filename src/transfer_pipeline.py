"""
Transfer Pipeline

Moves (or copies) the pending range of source messages to the destination
mailbox, then waits for the source to change and repeats.

Each iteration:
  1. settle the listener and snapshot (processed, observed)
  2. stream messages processed+1..observed from the source and APPEND each
     one to the destination with its flags and internal date
  3. advance `processed` to the snapshot's `observed`, even past messages
     whose APPEND was refused
  4. move mode: one STORE +FLAGS \\Deleted for the appended messages, one EXPUNGE
  5. once mode: return
  6. otherwise race source IDLE against a tracker change and go again
"""

from __future__ import annotations

import threading
from typing import NamedTuple

import imap_common
from imap_common import TransferError
from imap_mailbox import DEFAULT_FETCH_BATCH, DEFAULT_IDLE_TIMEOUT, AppendRejectedError, MailboxError

STOP_POLL_INTERVAL = 0.5


class BatchResult(NamedTuple):
    start: int
    end: int
    appended: int
    skipped: int
    deleted: int


class TransferPipeline:
    def __init__(
        self,
        source,
        destination,
        tracker,
        dest_mailbox,
        *,
        listener=None,
        copy=False,
        once=False,
        stop_event=None,
        idle_timeout=DEFAULT_IDLE_TIMEOUT,
        batch_size=DEFAULT_FETCH_BATCH,
        log_fn=None,
        error_fn=imap_common.log_error,
    ):
        self._source = source
        self._destination = destination
        self._tracker = tracker
        self._dest_mailbox = dest_mailbox
        self._listener = listener
        self.copy = copy
        self.once = once
        self._stop = stop_event or threading.Event()
        self._idle_timeout = idle_timeout
        self._batch_size = batch_size
        self._log_fn = log_fn
        self._error_fn = error_fn

    def _log(self, message):
        if self._log_fn is not None:
            self._log_fn(message)

    def snapshot(self):
        if self._listener is not None:
            self._listener.settle()
        return self._tracker.read()

    def run(self):
        """Run until once-mode completes or a stop is requested. Fatal failures raise TransferError."""
        while not self._stop.is_set():
            cursor = self.snapshot()
            if cursor.pending:
                self.transfer_range(cursor.processed + 1, cursor.observed)
            if self.once:
                return
            self.wait_for_activity(cursor.version)

    def _append(self, record):
        if self._log_fn is not None:
            subject = imap_common.subject_from_bytes(record.body)
            self._log(f"appending message {record.seq} to dst ({record.size / 1024:.1f}KB | {subject[:40]})")
        try:
            self._destination.append(self._dest_mailbox, record.flags, record.internal_date, record.body)
        except AppendRejectedError as e:
            self._error_fn(f"appending message {record.seq} to dst: {e}")
            return False
        except MailboxError as e:
            raise TransferError("appending to dst", e) from e
        return True

    def transfer_range(self, start, end):
        """Transfer source messages start..end and, in move mode, delete the ones that arrived."""
        self._log(f"processing src messages {start} to {end}")
        appended = []
        skipped = 0
        try:
            with self._source.fetch_range(start, end, batch_size=self._batch_size) as records:
                for record in records:
                    if self._append(record):
                        appended.append(record.seq)
                    else:
                        skipped += 1
        except MailboxError as e:
            raise TransferError("fetching src messages", e) from e

        self._tracker.advance_processed(end)

        deleted = 0
        if not self.copy and appended:
            try:
                self._source.mark_deleted(appended)
                self._source.expunge()
            except MailboxError as e:
                raise TransferError("deleting src messages", e) from e
            deleted = len(appended)

        self._log(f"processed src messages, src now has {end - deleted} messages")
        return BatchResult(start, end, len(appended), skipped, deleted)

    def wait_for_activity(self, since_version):
        """
        Race source IDLE against a tracker change newer than since_version.

        Whichever finishes first wins; the other is cancelled and joined
        before returning so the source connection is free again. A stop
        request also ends the wait. Returns "changed", "idle" or "stopped".
        """
        if self._tracker.read().version != since_version:
            return "changed"

        cancel = threading.Event()
        woke = threading.Event()
        outcome = {}

        def idle():
            try:
                outcome["idle"] = self._source.idle(cancel, timeout=self._idle_timeout)
            except MailboxError as e:
                outcome["error"] = e
            finally:
                woke.set()

        def watch():
            if self._tracker.wait_for_change(since_version, cancel):
                outcome["changed"] = True
            woke.set()

        racers = [
            threading.Thread(target=idle, name="idle", daemon=True),
            threading.Thread(target=watch, name="watch", daemon=True),
        ]
        for racer in racers:
            racer.start()
        while not woke.wait(STOP_POLL_INTERVAL):
            if self._stop.is_set():
                break

        cancel.set()
        self._tracker.wake()
        for racer in racers:
            racer.join()

        if "error" in outcome:
            raise TransferError("idling src", outcome["error"]) from outcome["error"]
        if outcome.get("changed"):
            return "changed"
        if self._stop.is_set():
            return "stopped"
        return "idle"

"""
Run Supervisor

run_session() performs one complete session: open both sides, make sure the
destination mailbox exists, select the source, start the notification
listener and drive the transfer pipeline. Both connections are logged out
however the session ends.

RunSupervisor repeats sessions forever: a failed session is logged, followed
by a fixed sleep, and then a brand new session with no state carried over.
"""

from __future__ import annotations

import contextlib
import threading
from dataclasses import dataclass

import imap_common
import imap_session
from imap_common import TransferError
from imap_listener import NotificationListener
from imap_mailbox import DEFAULT_FETCH_BATCH, DEFAULT_IDLE_TIMEOUT, MailboxError, MailboxNotFoundError
from mailbox_state import MailboxStateTracker
from transfer_pipeline import TransferPipeline

RETRY_DELAY_SECONDS = 60

STATE_RUNNING = "running"
STATE_RETRYING = "retrying"


@dataclass
class SyncOptions:
    src_conf: dict
    dest_conf: dict
    src_folder: str = imap_common.FOLDER_INBOX
    dest_folder: str | None = None
    once: bool = False
    copy: bool = False
    retry_delay: float = RETRY_DELAY_SECONDS
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    batch_size: int = DEFAULT_FETCH_BATCH
    timeout: float | None = None

    @property
    def target_folder(self):
        return self.dest_folder or self.src_folder


def ensure_dest_mailbox(dest, folder, log_fn=None):
    """Select the destination mailbox, creating it when the server says it does not exist."""
    try:
        dest.select(folder, readonly=True)
        return
    except MailboxNotFoundError:
        pass
    except MailboxError as e:
        raise TransferError("selecting dst mailbox", e) from e

    if log_fn is not None:
        log_fn(f"creating dst mailbox {folder}")
    try:
        dest.create(folder)
    except MailboxError as e:
        raise TransferError("creating dst mailbox", e) from e


def run_session(options, stop_event=None, log_fn=None, error_fn=imap_common.log_error, open_mailbox=None):
    """Run one session to completion. Raises TransferError on any fatal failure."""
    open_mailbox = open_mailbox or imap_session.open_mailbox
    with contextlib.ExitStack() as stack:
        dest = open_mailbox(options.dest_conf, log_fn=log_fn, timeout=options.timeout)
        stack.callback(dest.logout)
        ensure_dest_mailbox(dest, options.target_folder, log_fn)

        src = open_mailbox(options.src_conf, log_fn=log_fn, timeout=options.timeout)
        stack.callback(src.logout)
        try:
            # Deleting requires a writable selection.
            info = src.select(options.src_folder, readonly=options.copy)
        except MailboxError as e:
            raise TransferError("selecting src mailbox", e) from e

        if log_fn is not None:
            log_fn(f"src {options.src_folder} has {info.message_count} messages")

        tracker = MailboxStateTracker(observed=info.message_count)
        listener = NotificationListener(src.subscribe(), tracker, log_fn=log_fn)
        listener.start()
        stack.callback(listener.stop)

        pipeline = TransferPipeline(
            src,
            dest,
            tracker,
            options.target_folder,
            listener=listener,
            copy=options.copy,
            once=options.once,
            stop_event=stop_event,
            idle_timeout=options.idle_timeout,
            batch_size=options.batch_size,
            log_fn=log_fn,
            error_fn=error_fn,
        )
        pipeline.run()


class RunSupervisor:
    """Two-state loop: Running a session, or Retrying after a fixed delay."""

    def __init__(self, options, log_fn=None, error_fn=imap_common.log_error, stop_event=None, session_fn=run_session):
        self.options = options
        self.state = STATE_RUNNING
        self.sessions = 0
        self.stop_event = stop_event or threading.Event()
        self._log_fn = log_fn
        self._error_fn = error_fn
        self._session_fn = session_fn

    def _log(self, message):
        if self._log_fn is not None:
            self._log_fn(message)

    def stop(self):
        self.stop_event.set()

    def run(self):
        """Loop until a session finishes cleanly or a stop is requested. Returns the exit status."""
        while True:
            self.state = STATE_RUNNING
            self.sessions += 1
            try:
                self._session_fn(
                    self.options,
                    stop_event=self.stop_event,
                    log_fn=self._log_fn,
                    error_fn=self._error_fn,
                )
            except (TransferError, MailboxError) as e:
                self._error_fn(str(e))
            else:
                return 0

            if self.stop_event.is_set():
                return 0
            self.state = STATE_RETRYING
            self._log(f"retrying in {self.options.retry_delay}s")
            if self.stop_event.wait(self.options.retry_delay):
                return 0

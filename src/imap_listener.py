"""
Notification Listener

Background thread that folds the source connection's change events into
the mailbox state tracker, one event at a time in server order.
"""

import threading

from imap_mailbox import MailboxGrew, MessageExpunged

_STOP = object()


class NotificationListener:
    def __init__(self, events, tracker, log_fn=None):
        self._events = events
        self._tracker = tracker
        self._log_fn = log_fn
        self._thread = None

    def _log(self, message):
        if self._log_fn is not None:
            self._log_fn(message)

    def start(self):
        if self._thread is not None:
            raise RuntimeError("listener already started")
        self._thread = threading.Thread(target=self._run, name="listener", daemon=True)
        self._thread.start()

    def _run(self):
        while True:
            event = self._events.get()
            try:
                if event is _STOP:
                    return
                self.apply(event)
            finally:
                self._events.task_done()

    def apply(self, event):
        if isinstance(event, MailboxGrew):
            self._tracker.set_observed(event.total)
            self._log(f"adding messages: src now has {event.total} messages")
        elif isinstance(event, MessageExpunged):
            self._tracker.decrement_both()
            self._log(f"removing message: src now has {self._tracker.read().observed} messages")

    def settle(self):
        """Block until every event queued so far has been applied to the tracker."""
        if self._thread is not None and self._thread.is_alive():
            self._events.join()

    def stop(self):
        """Stop the listener thread and wait for it. Safe to call more than once."""
        if self._thread is None:
            return
        self._events.put(_STOP)
        self._thread.join()
        self._thread = None

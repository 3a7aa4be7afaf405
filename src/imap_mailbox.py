"""
IMAP Remote Mailbox

Adapter that exposes one authenticated imaplib session as the remote mailbox
service used by the transfer engine: select/create, streamed range fetch,
append, delete+expunge, a cancellable IDLE, and an ordered stream of
mailbox change events (EXISTS / EXPUNGE) collected while any command or
IDLE is outstanding.

imaplib is not thread-safe. A RemoteMailbox must only ever have one command
in flight; the transfer engine guarantees this by joining the fetch producer
and the IDLE thread before it touches the connection again.
"""

from __future__ import annotations

import imaplib
import queue
import re
import select
import threading
import time
from dataclasses import dataclass

import imap_common
from imap_retry import ConnectionProxy, is_transient_error

# RFC 2177: clients should re-issue IDLE at least every 29 minutes.
DEFAULT_IDLE_TIMEOUT = 29 * 60
IDLE_POLL_INTERVAL = 0.25
# Servers without IDLE are polled with NOOP this often.
NOOP_POLL_INTERVAL = 30
DEFAULT_FETCH_BATCH = 10

_RECV_SIZE = 65536
_MAX_LINE = 1000000
_UNTAGGED_CHANGE_RE = re.compile(rb"^\* (\d+) (EXISTS|EXPUNGE)\b", re.IGNORECASE)


class MailboxError(Exception):
    """Base class for remote mailbox failures."""


class MailboxConnectionError(MailboxError):
    """Dial failure, dropped socket or server BYE."""


class MailboxAuthError(MailboxError):
    """Login was refused."""


class MailboxNotFoundError(MailboxError):
    """The server answered NO to a SELECT/EXAMINE."""


class MailboxProtocolError(MailboxError):
    """The server refused or garbled a command."""


class AppendRejectedError(MailboxProtocolError):
    """The server refused one APPEND; the connection itself is still usable."""


@dataclass(frozen=True)
class MailboxInfo:
    message_count: int


@dataclass
class MessageRecord:
    seq: int
    flags: tuple
    internal_date: str | None
    size: int
    envelope: str | None
    body: bytes


@dataclass(frozen=True)
class MailboxGrew:
    total: int


@dataclass(frozen=True)
class MessageExpunged:
    seq: int


class _ChangeEventConnectionMixin:
    """
    imaplib connection that forwards EXISTS/EXPUNGE to an event sink in the
    order they are read, and buffers socket reads itself so that pending
    input can be detected without blocking (needed for a cancellable IDLE).
    """

    event_sink = None
    change_count = 0

    def _append_untagged(self, typ, dat):
        sink = self.event_sink
        if sink is not None and typ in ("EXISTS", "EXPUNGE"):
            # Delivered to the subscriber instead of imaplib's response cache.
            count = int(dat)
            self.change_count += 1
            sink.put(MailboxGrew(count) if typ == "EXISTS" else MessageExpunged(count))
            return
        super()._append_untagged(typ, dat)

    def _read_buffer(self):
        buf = self.__dict__.get("_mvimap_rbuf")
        if buf is None:
            buf = self._mvimap_rbuf = bytearray()
        return buf

    def _fill_buffer(self):
        chunk = self.sock.recv(_RECV_SIZE)
        if not chunk:
            return False
        self._read_buffer().extend(chunk)
        return True

    def read(self, size):
        buf = self._read_buffer()
        while len(buf) < size and self._fill_buffer():
            pass
        data = bytes(buf[:size])
        del buf[:size]
        return data

    def readline(self):
        buf = self._read_buffer()
        scanned = 0
        while True:
            end = buf.find(b"\n", scanned)
            if end >= 0:
                break
            if len(buf) > _MAX_LINE:
                raise self.error(f"got more than {_MAX_LINE} bytes")
            scanned = len(buf)
            if not self._fill_buffer():
                end = len(buf) - 1
                break
        line = bytes(buf[: end + 1])
        del buf[: end + 1]
        return line

    def has_pending_line(self):
        if b"\n" in self._read_buffer():
            return True
        pending = getattr(self.sock, "pending", None)
        return bool(pending and pending() > 0)


class _IMAP4(_ChangeEventConnectionMixin, imaplib.IMAP4):
    pass


class _IMAP4_SSL(_ChangeEventConnectionMixin, imaplib.IMAP4_SSL):
    pass


def _error_text(exc):
    """imaplib raises some errors with the raw server text (bytes) as the argument."""
    if len(exc.args) == 1 and isinstance(exc.args[0], bytes):
        return exc.args[0].decode("utf-8", errors="replace")
    return str(exc)


def _describe(data):
    parts = []
    for item in data or ():
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        elif item is not None:
            parts.append(str(item))
    return " ".join(parts) or "no response text"


class FetchStream:
    """
    Lazy, finite, single-pass iterator over the messages of a FETCH range.

    A producer thread fetches `batch_size` messages per command and hands
    records over through a bounded queue, so appending message k overlaps
    with retrieving message k+1 and a slow consumer blocks the producer.
    Closing the stream early stops the producer after its current command.
    """

    _DONE = object()

    def __init__(self, mailbox, start, end, batch_size=DEFAULT_FETCH_BATCH):
        if start < 1 or end < start:
            raise ValueError(f"Invalid fetch range {start}:{end}")
        self._queue = queue.Queue(maxsize=max(1, batch_size))
        self._closed = threading.Event()
        self._exhausted = False
        self._thread = threading.Thread(
            target=self._produce,
            args=(mailbox, start, end, max(1, batch_size)),
            name="fetch",
            daemon=True,
        )
        self._thread.start()

    def _produce(self, mailbox, start, end, batch_size):
        try:
            for chunk_start in range(start, end + 1, batch_size):
                chunk_end = min(chunk_start + batch_size - 1, end)
                for record in mailbox.fetch_records(chunk_start, chunk_end):
                    if not self._offer(record):
                        return
        except Exception as e:
            # Re-raised on the consumer side by __next__.
            self._offer(e)
            return
        self._offer(self._DONE)

    def _offer(self, item):
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def __iter__(self):
        return self

    def __next__(self):
        if self._exhausted:
            raise StopIteration
        item = self._queue.get()
        if item is self._DONE:
            self.close()
            raise StopIteration
        if isinstance(item, Exception):
            self.close()
            raise item
        return item

    def close(self):
        self._exhausted = True
        self._closed.set()
        self._thread.join()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class RemoteMailbox:
    """One authenticated IMAP session as seen by the transfer engine."""

    noop_interval = NOOP_POLL_INTERVAL

    def __init__(self, conn, label="", log_fn=None, max_retries=3, retry_wait=5):
        self._raw = conn
        self._conn = ConnectionProxy(conn, max_retries=max_retries, initial_wait=retry_wait, log_fn=log_fn)
        self.label = label
        self.mailbox = None
        self.events = queue.Queue()
        self.capabilities = frozenset(getattr(conn, "capabilities", None) or ())

    @classmethod
    def connect(cls, address, timeout=None, label="", log_fn=None, **kwargs):
        """Dial the server. Raises MailboxConnectionError."""
        try:
            host, port, use_ssl = imap_common.parse_address(address)
        except ValueError as e:
            raise MailboxConnectionError(str(e)) from e

        conn_class = _IMAP4_SSL if use_ssl else _IMAP4
        try:
            conn = conn_class(host, port, timeout=timeout)
        except (OSError, imaplib.IMAP4.error) as e:
            raise MailboxConnectionError(f"{host}:{port}: {e}") from e
        return cls(conn, label=label, log_fn=log_fn, **kwargs)

    def login(self, user, password=None, oauth2_token=None):
        """Password LOGIN, or SASL XOAUTH2 with a pre-acquired bearer token."""
        try:
            if oauth2_token:
                auth_string = f"user={user}\x01auth=Bearer {oauth2_token}\x01\x01"
                self._raw.authenticate("XOAUTH2", lambda _: auth_string.encode())
            else:
                self._raw.login(user, password or "")
        except imaplib.IMAP4.abort as e:
            raise MailboxConnectionError(_error_text(e)) from e
        except imaplib.IMAP4.error as e:
            raise MailboxAuthError(_error_text(e)) from e
        except OSError as e:
            raise MailboxConnectionError(str(e)) from e
        self._load_capabilities()

    def _load_capabilities(self):
        """Re-read CAPABILITY; servers may advertise more once authenticated."""
        typ, data = self._command("capability")
        if typ == "OK" and data and data[-1]:
            self.capabilities = frozenset(data[-1].decode("ascii", errors="replace").upper().split())

    @property
    def supports_idle(self):
        return "IDLE" in self.capabilities

    def _command(self, name, *args):
        try:
            return getattr(self._conn, name)(*args)
        except imaplib.IMAP4.abort as e:
            raise MailboxConnectionError(f"{name.upper()}: {_error_text(e)}") from e
        except imaplib.IMAP4.error as e:
            raise MailboxProtocolError(f"{name.upper()}: {_error_text(e)}") from e
        except OSError as e:
            raise MailboxConnectionError(f"{name.upper()}: {_error_text(e)}") from e

    def select(self, name, readonly=True):
        """SELECT (or EXAMINE when readonly) a mailbox and return its size."""
        typ, data = self._command("select", imap_common.quote_mailbox(name), readonly)
        if typ == "NO" and not is_transient_error(data):
            raise MailboxNotFoundError(f"{name}: {_describe(data)}")
        if typ != "OK":
            raise MailboxProtocolError(f"SELECT {name}: {typ} {_describe(data)}")
        try:
            count = int(data[-1])
        except (TypeError, ValueError, IndexError) as e:
            raise MailboxProtocolError(f"SELECT {name}: no EXISTS count in response") from e
        self.mailbox = name
        return MailboxInfo(count)

    def create(self, name):
        typ, data = self._command("create", imap_common.quote_mailbox(name))
        if typ != "OK":
            raise MailboxProtocolError(f"CREATE {name}: {typ} {_describe(data)}")

    def subscribe(self):
        """Start routing EXISTS/EXPUNGE responses into self.events; returns the queue."""
        self._raw.event_sink = self.events
        return self.events

    def fetch_records(self, start, end):
        """Fetch messages start..end (inclusive) in one command, ascending by sequence number."""
        typ, data = self._command("fetch", f"{start}:{end}", imap_common.FETCH_ITEMS)
        if typ != "OK":
            raise MailboxProtocolError(f"FETCH {start}:{end}: {typ} {_describe(data)}")
        records = [
            MessageRecord(**fields)
            for fields in imap_common.parse_fetch_response(data)
            if start <= fields["seq"] <= end
        ]
        records.sort(key=lambda r: r.seq)
        return records

    def fetch_range(self, start, end, batch_size=DEFAULT_FETCH_BATCH):
        return FetchStream(self, start, end, batch_size=batch_size)

    def append(self, mailbox, flags, internal_date, body):
        """APPEND one message. Raises AppendRejectedError if the server refuses it."""
        date_arg = f'"{internal_date}"' if internal_date else None
        try:
            typ, data = self._conn.append(
                imap_common.quote_mailbox(mailbox), imap_common.format_append_flags(flags), date_arg, body
            )
        except imaplib.IMAP4.abort as e:
            raise MailboxConnectionError(f"APPEND: {_error_text(e)}") from e
        except imaplib.IMAP4.error as e:
            raise AppendRejectedError(f"APPEND: {_error_text(e)}") from e
        except OSError as e:
            raise MailboxConnectionError(f"APPEND: {_error_text(e)}") from e
        if typ != "OK":
            raise AppendRejectedError(f"APPEND {mailbox}: {typ} {_describe(data)}")
        # Nothing reads the destination's own EXISTS/RECENT; keep imaplib's cache from growing.
        for name in ("EXISTS", "RECENT"):
            self._raw.untagged_responses.pop(name, None)

    def mark_deleted(self, seqs):
        """Flag the given sequence numbers \\Deleted in a single STORE."""
        if not seqs:
            return
        seq_set = imap_common.compact_sequence_set(seqs)
        typ, data = self._command("store", seq_set, imap_common.OP_ADD_FLAGS_SILENT, imap_common.FLAG_DELETED_LITERAL)
        if typ != "OK":
            raise MailboxProtocolError(f"STORE {seq_set}: {typ} {_describe(data)}")

    def expunge(self):
        typ, data = self._command("expunge")
        if typ != "OK":
            raise MailboxProtocolError(f"EXPUNGE: {typ} {_describe(data)}")

    def noop(self):
        typ, data = self._command("noop")
        if typ != "OK":
            raise MailboxProtocolError(f"NOOP: {typ} {_describe(data)}")

    def _absorb_untagged(self, line):
        match = _UNTAGGED_CHANGE_RE.match(line)
        if match:
            self._raw._append_untagged(match.group(2).decode("ascii").upper(), match.group(1))

    def _wait_readable(self, timeout):
        if self._raw.has_pending_line():
            return True
        readable, _, _ = select.select([self._raw.sock], [], [], timeout)
        return bool(readable)

    def _read_idle_completion(self, tag):
        while True:
            line = self._raw.readline()
            if not line:
                raise MailboxConnectionError("connection closed while ending IDLE")
            if line.startswith(tag + b" "):
                status = line[len(tag) + 1 :].split(b" ", 1)[0].upper()
                if status != b"OK":
                    raise MailboxProtocolError(f"IDLE: {line.decode('utf-8', errors='replace').strip()}")
                return
            self._absorb_untagged(line)

    def _poll_with_noop(self, cancel_event, timeout):
        """IDLE stand-in for servers that lack it: NOOP every noop_interval seconds."""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if cancel_event.wait(min(self.noop_interval, remaining)):
                return False
            before = self._raw.change_count
            self.noop()
            if self._raw.change_count != before:
                return True

    def idle(self, cancel_event, timeout=DEFAULT_IDLE_TIMEOUT, poll_interval=IDLE_POLL_INTERVAL):
        """
        Block in IMAP IDLE until the server reports activity, cancel_event is
        set, or timeout seconds pass.

        Returns True when the server sent an untagged response, False when
        the wait was cancelled locally or timed out. Untagged EXISTS/EXPUNGE
        responses are delivered to the event stream as usual. The IDLE is
        always terminated with DONE before returning.

        Servers that do not advertise IDLE are polled with NOOP instead.
        """
        if not self.supports_idle:
            return self._poll_with_noop(cancel_event, timeout)

        conn = self._raw
        tag = conn._new_tag()
        activity = False
        try:
            conn.send(tag + b" IDLE\r\n")
            while True:
                line = conn.readline()
                if not line:
                    raise MailboxConnectionError("connection closed while starting IDLE")
                if line.startswith(b"+"):
                    break
                if line.startswith(b"* "):
                    self._absorb_untagged(line)
                    activity = True
                    continue
                raise MailboxProtocolError(f"IDLE rejected: {line.decode('utf-8', errors='replace').strip()}")

            deadline = time.monotonic() + timeout
            while not activity and not cancel_event.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                if not self._wait_readable(min(poll_interval, remaining)):
                    continue
                line = conn.readline()
                if not line:
                    raise MailboxConnectionError("connection closed during IDLE")
                if line.startswith(b"* "):
                    self._absorb_untagged(line)
                    activity = True

            conn.send(b"DONE\r\n")
            self._read_idle_completion(tag)
        except imaplib.IMAP4.abort as e:
            raise MailboxConnectionError(f"IDLE: {_error_text(e)}") from e
        except imaplib.IMAP4.error as e:
            raise MailboxProtocolError(f"IDLE: {_error_text(e)}") from e
        except OSError as e:
            raise MailboxConnectionError(f"IDLE: {_error_text(e)}") from e
        finally:
            conn.tagged_commands.pop(tag, None)
        return activity

    def logout(self):
        """Best-effort LOGOUT; errors are ignored."""
        self._raw.event_sink = None
        try:
            self._raw.logout()
        except (OSError, imaplib.IMAP4.error):
            pass

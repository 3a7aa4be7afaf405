import base64
import re
import select
import socketserver
import threading

RESPONSE_SELECT_FIRST = "NO Select first"
RESPONSE_READ_ONLY = "NO [READ-ONLY] Mailbox is read-only"
RESPONSE_BUSY = "NO [UNAVAILABLE] Server Busy, try again later"

DEFAULT_DATE = "01-Jan-2024 10:00:00 +0000"
CAPABILITIES = "IMAP4rev1 IDLE AUTH=XOAUTH2"
CAPABILITIES_NO_IDLE = "IMAP4rev1 AUTH=XOAUTH2"
IDLE_POLL_INTERVAL = 0.05

_APPEND_RE = re.compile(
    r'^(?P<mbox>"(?:[^"\\]|\\.)*"|\S+)(?: \((?P<flags>[^)]*)\))?(?: "(?P<date>[^"]*)")? \{(?P<size>\d+)\}$'
)
_SUBJECT_RE = re.compile(rb"^Subject: ?(.*?)\r?$", re.IGNORECASE | re.MULTILINE)
_MUTF7_RE = re.compile(r"&([^-]*)-")


def unquote(arg):
    arg = arg.strip()
    if len(arg) >= 2 and arg[0] == arg[-1] == '"':
        return re.sub(r"\\(.)", r"\1", arg[1:-1])
    return arg


def decode_mailbox_name(name):
    """Decode IMAP modified UTF-7, e.g. "Entw&APw-rfe" -> "Entwürfe"."""

    def expand(match):
        chunk = match.group(1)
        if not chunk:
            return "&"
        chunk = chunk.replace(",", "/")
        return base64.b64decode(chunk + "=" * (-len(chunk) % 4)).decode("utf-16-be")

    return _MUTF7_RE.sub(expand, name)


def mailbox_arg(arg):
    return decode_mailbox_name(unquote(arg))


def parse_sequence_set(seq_set, count):
    """Expand an IMAP sequence set ("1:3,7", "2:*") into sorted numbers within 1..count."""
    numbers = set()
    for part in seq_set.split(","):
        lo, _, hi = part.partition(":")
        lo = count if lo == "*" else int(lo)
        hi = lo if not hi else (count if hi == "*" else int(hi))
        if lo > hi:
            lo, hi = hi, lo
        numbers.update(n for n in range(lo, hi + 1) if 1 <= n <= count)
    return sorted(numbers)


def quote(text):
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def envelope_for(content):
    match = _SUBJECT_RE.search(content.split(b"\r\n\r\n", 1)[0])
    subject = quote(match.group(1).decode("utf-8", errors="replace")) if match else "NIL"
    return f"(NIL {subject} NIL NIL NIL NIL NIL NIL NIL NIL)"


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 mock server handler for testing purposes.
    Supports the commands the transfer engine issues, pushes EXISTS updates
    to idling clients and can inject faults (see MockIMAPServer).
    """

    def handle(self):
        self.selected_folder = None
        self.read_only = False
        self.exists = 0
        self.wfile.write(f"* OK [CAPABILITY {self.server.capabilities()}] Mock IMAP Server Ready\r\n".encode())

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper() if len(parts) > 1 else ""
                args = parts[2] if len(parts) > 2 else ""

                if self.server.take_busy(cmd):
                    self.send_response(tag, RESPONSE_BUSY)
                    continue

                if cmd == "CAPABILITY":
                    self.wfile.write(f"* CAPABILITY {self.server.capabilities()}\r\n".encode())
                    self.send_response(tag, "OK CAPABILITY completed")

                elif cmd == "LOGIN":
                    user, _, password = args.partition(" ")
                    if unquote(password) == self.server.bad_password:
                        self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
                    else:
                        self.server.record_login(unquote(user), "LOGIN")
                        self.send_response(tag, "OK LOGIN completed")

                elif cmd == "AUTHENTICATE":
                    self.handle_authenticate(tag, args)

                elif cmd == "LOGOUT":
                    self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
                    self.send_response(tag, "OK LOGOUT completed")
                    break

                elif cmd in ("SELECT", "EXAMINE"):
                    self.handle_select(tag, cmd, mailbox_arg(args))

                elif cmd == "CREATE":
                    folder = mailbox_arg(args)
                    with self.server.lock:
                        if folder in self.server.folders:
                            self.send_response(tag, "NO [ALREADYEXISTS] Mailbox exists")
                            continue
                        self.server.folders[folder] = []
                    self.send_response(tag, "OK CREATE completed")

                elif cmd == "FETCH":
                    self.handle_fetch(tag, args)

                elif cmd == "STORE":
                    self.handle_store(tag, args)

                elif cmd == "EXPUNGE":
                    self.handle_expunge(tag)

                elif cmd == "APPEND":
                    if not self.handle_append(tag, args):
                        break

                elif cmd == "NOOP":
                    self.announce_growth()
                    self.send_response(tag, "OK NOOP completed")

                elif cmd == "IDLE" and not self.server.idle_supported:
                    self.send_response(tag, "BAD Command not recognized")

                elif cmd == "IDLE":
                    if not self.handle_idle(tag):
                        break

                else:
                    self.send_response(tag, "BAD Command not recognized")

            except (OSError, ValueError, UnicodeDecodeError):
                break

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())

    def announce_growth(self):
        if self.selected_folder is None:
            return
        with self.server.lock:
            count = len(self.server.folders[self.selected_folder])
        if count > self.exists:
            self.exists = count
            self.wfile.write(f"* {count} EXISTS\r\n".encode())

    def handle_authenticate(self, tag, args):
        if args.strip().upper() != "XOAUTH2":
            self.send_response(tag, "NO Unsupported mechanism")
            return
        self.wfile.write(b"+ \r\n")
        response = base64.b64decode(self.rfile.readline().strip()).decode("utf-8")
        fields = dict(part.split("=", 1) for part in response.split("\x01") if "=" in part)
        token = fields.get("auth", "").removeprefix("Bearer ")
        if not token or token == self.server.bad_password:
            self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid token")
            return
        self.server.record_login(fields.get("user", ""), "XOAUTH2")
        self.send_response(tag, "OK AUTHENTICATE completed")

    def handle_select(self, tag, cmd, folder):
        with self.server.lock:
            msgs = self.server.folders.get(folder)
            count = len(msgs) if msgs is not None else 0
        if msgs is None:
            self.selected_folder = None
            self.send_response(tag, "NO [NONEXISTENT] Folder not found")
            return
        self.selected_folder = folder
        self.read_only = cmd == "EXAMINE"
        self.exists = count
        self.wfile.write(f"* {count} EXISTS\r\n".encode())
        self.wfile.write(b"* 0 RECENT\r\n")
        self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
        self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
        mode = "READ-ONLY" if self.read_only else "READ-WRITE"
        self.send_response(tag, f"OK [{mode}] {cmd} completed")

    def handle_fetch(self, tag, args):
        if self.selected_folder is None:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        seq_set, _, opts = args.partition(" ")
        opts = opts.upper()
        with self.server.lock:
            msgs = self.server.folders[self.selected_folder]
            numbers = parse_sequence_set(seq_set, min(self.exists, len(msgs)))
            selected = [(n, dict(msgs[n - 1], flags=set(msgs[n - 1]["flags"]))) for n in numbers]

        for n, m in selected:
            content = m["content"]
            items = [f"FLAGS ({' '.join(sorted(m['flags']))})"]
            if "INTERNALDATE" in opts:
                items.append(f'INTERNALDATE "{m["date"]}"')
            if "RFC822.SIZE" in opts:
                items.append(f"RFC822.SIZE {len(content)}")
            if "ENVELOPE" in opts:
                items.append(f"ENVELOPE {envelope_for(content)}")
            if "BODY" in opts or "RFC822" in opts.replace("RFC822.SIZE", ""):
                resp = f"* {n} FETCH ({' '.join(items)} BODY[] {{{len(content)}}}\r\n"
                self.wfile.write(resp.encode("utf-8"))
                self.wfile.write(content)
                self.wfile.write(b")\r\n")
            else:
                self.wfile.write(f"* {n} FETCH ({' '.join(items)})\r\n".encode("utf-8"))
        self.send_response(tag, "OK FETCH completed")

    def handle_store(self, tag, args):
        if self.selected_folder is None:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        if self.read_only:
            self.send_response(tag, RESPONSE_READ_ONLY)
            return
        try:
            seq_set, action, flags_str = args.split(" ", 2)
        except ValueError:
            self.send_response(tag, "BAD STORE")
            return
        action = action.upper()
        flags = {f for f in flags_str.strip().strip("()").split() if f}

        updates = []
        with self.server.lock:
            msgs = self.server.folders[self.selected_folder]
            for n in parse_sequence_set(seq_set, min(self.exists, len(msgs))):
                m = msgs[n - 1]
                if action.startswith("+FLAGS"):
                    m["flags"].update(flags)
                elif action.startswith("-FLAGS"):
                    m["flags"].difference_update(flags)
                else:
                    m["flags"] = set(flags)
                updates.append((n, " ".join(sorted(m["flags"]))))

        if not action.endswith(".SILENT"):
            for n, flag_output in updates:
                self.wfile.write(f"* {n} FETCH (FLAGS ({flag_output}))\r\n".encode())
        self.send_response(tag, "OK STORE completed")

    def handle_expunge(self, tag):
        if self.selected_folder is None:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        if self.read_only:
            self.send_response(tag, RESPONSE_READ_ONLY)
            return
        expunged = []
        with self.server.lock:
            msgs = self.server.folders[self.selected_folder]
            kept = []
            for idx, m in enumerate(msgs, start=1):
                if "\\Deleted" in m["flags"]:
                    # Each EXPUNGE renumbers the messages after it.
                    expunged.append(idx - len(expunged))
                else:
                    kept.append(m)
            msgs[:] = kept
        for n in expunged:
            self.wfile.write(f"* {n} EXPUNGE\r\n".encode())
        self.exists -= len(expunged)
        self.send_response(tag, "OK EXPUNGE completed")

    def handle_append(self, tag, args):
        """Returns False when the connection was dropped on purpose."""
        match = _APPEND_RE.match(args)
        if not match:
            self.send_response(tag, "BAD APPEND")
            return True
        if self.server.take_drop_on_append():
            return False

        self.wfile.write(b"+ Ready\r\n")
        data = self.rfile.read(int(match.group("size")))
        folder = mailbox_arg(match.group("mbox"))
        flags = {f for f in (match.group("flags") or "").split() if f}

        if "\\Recent" in flags:
            self.send_response(tag, "BAD Cannot set \\Recent")
            return True
        reject = self.server.reject_append_containing
        if reject is not None and reject in data:
            self.send_response(tag, "NO [LIMIT] Message rejected")
            return True
        if not self.server.append(folder, data, flags, match.group("date")):
            self.send_response(tag, "NO [TRYCREATE] Folder not found")
            return True
        if folder == self.selected_folder:
            self.announce_growth()
        self.send_response(tag, "OK APPEND completed")
        return True

    def handle_idle(self, tag):
        """Returns False when the client went away while idling or the connection is dropped on purpose."""
        self.wfile.write(b"+ idling\r\n")
        if self.server.take_drop_on_idle():
            return False
        while True:
            self.announce_growth()
            readable, _, _ = select.select([self.request], [], [], IDLE_POLL_INTERVAL)
            if not readable:
                continue
            line = self.rfile.readline()
            if not line:
                return False
            if line.strip().upper() == b"DONE":
                break
        self.send_response(tag, "OK IDLE terminated")
        return True


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """
    Shared mailbox state for every connection, plus fault injection knobs:

    - bad_password: LOGIN/XOAUTH2 with this secret is refused
    - reject_append_containing: APPEND of a body containing these bytes gets NO
    - drop_on_append: the n-th APPEND (counted server-wide) closes the connection, once
    - busy: {"SELECT": 2} answers the next two SELECTs with a transient NO
    - idle_supported: when False, IDLE is neither advertised nor accepted
    - drop_on_idle: the next IDLE is accepted and then the connection is closed
    """

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None):
        super().__init__(server_address, request_handler_class)
        self.lock = threading.RLock()
        self.folders = {}
        self.logins = []
        self.append_count = 0
        self.bad_password = "bad"
        self.reject_append_containing = None
        self.drop_on_append = None
        self.busy = {}
        self.idle_supported = True
        self.drop_on_idle = False
        for fname, contents in (initial_folders or {"INBOX": []}).items():
            self.folders[fname] = []
            self.deliver(fname, *contents)

    def deliver(self, folder, *contents, flags=(), date=DEFAULT_DATE):
        """Add messages to a folder (creating it), as if they arrived from outside."""
        with self.lock:
            msgs = self.folders.setdefault(folder, [])
            for c in contents:
                if isinstance(c, dict):
                    msgs.append(c)
                else:
                    msgs.append({"uid": self._next_uid(msgs), "flags": set(flags), "content": c, "date": date})

    def append(self, folder, content, flags, date):
        with self.lock:
            msgs = self.folders.get(folder)
            if msgs is None:
                return False
            msgs.append(
                {"uid": self._next_uid(msgs), "flags": set(flags), "content": content, "date": date or DEFAULT_DATE}
            )
            return True

    @staticmethod
    def _next_uid(msgs):
        return max((m["uid"] for m in msgs), default=0) + 1

    def messages(self, folder):
        with self.lock:
            return [m["content"] for m in self.folders.get(folder, [])]

    def message_flags(self, folder):
        with self.lock:
            return [set(m["flags"]) for m in self.folders.get(folder, [])]

    def record_login(self, user, method):
        with self.lock:
            self.logins.append((user, method))

    def take_busy(self, cmd):
        with self.lock:
            remaining = self.busy.get(cmd, 0)
            if remaining <= 0:
                return False
            self.busy[cmd] = remaining - 1
            return True

    def capabilities(self):
        return CAPABILITIES if self.idle_supported else CAPABILITIES_NO_IDLE

    def take_drop_on_idle(self):
        with self.lock:
            drop, self.drop_on_idle = self.drop_on_idle, False
            return drop

    def take_drop_on_append(self):
        with self.lock:
            self.append_count += 1
            if self.drop_on_append is not None and self.append_count == self.drop_on_append:
                self.drop_on_append = None
                return True
            return False


def start_server_thread(port=0, initial_folders=None):
    """Start a mock server on localhost. Returns (server, thread, actual_port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders)
    t = threading.Thread(target=server.serve_forever, name="mock-imap")
    t.daemon = True
    t.start()
    return server, t, server.server_address[1]

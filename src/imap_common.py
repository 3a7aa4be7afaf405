"""
IMAP Common Utilities

Shared constants and helpers for the mvimap transfer engine: thread-tagged
logging, server address parsing, flag handling and FETCH response parsing.
"""

from __future__ import annotations

import base64
import re
import sys
import threading
import urllib.parse
from email.header import decode_header
from email.parser import BytesParser
from email import policy

# Standard IMAP flags
FLAG_SEEN = "\\Seen"
FLAG_DELETED = "\\Deleted"
FLAG_RECENT = "\\Recent"
FLAG_DELETED_LITERAL = "(\\Deleted)"

# \Recent is session-specific and cannot be set by clients
UNSETTABLE_FLAGS = {FLAG_RECENT}

# IMAP Folder Constants
FOLDER_INBOX = "INBOX"

# IMAP Commands
OP_ADD_FLAGS_SILENT = "+FLAGS.SILENT"

IMAPS_PORT = 993
IMAP_PORT = 143

# Everything needed to re-deliver a message verbatim. BODY.PEEK leaves \Seen untouched.
FETCH_ITEMS = "(FLAGS INTERNALDATE RFC822.SIZE ENVELOPE BODY.PEEK[])"


class TransferError(Exception):
    """A fatal failure of one session, tagged with the stage that faulted."""

    def __init__(self, stage, cause):
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class OAuth2Error(Exception):
    """An OAuth2 access token could not be acquired or refreshed."""


_print_lock = threading.Lock()


def safe_print(message: str, file=None) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}", file=file or sys.stdout, flush=True)


def log_error(message: str) -> None:
    safe_print(f"Error: {message}", file=sys.stderr)


def _no_log(message: str) -> None:
    pass


def progress_logger(verbose: bool):
    """Return the progress log function for the given verbosity."""
    return safe_print if verbose else _no_log


def parse_address(address: str) -> tuple[str, int, bool]:
    """
    Split a server address into (host, port, use_ssl).

    Accepts "host", "host:port", "imaps://host[:port]" and "imap://host[:port]".
    Bare addresses and imaps:// use TLS on port 993 unless a port is given;
    imap:// is plain TCP on port 143.
    """
    if not address or not address.strip():
        raise ValueError("Empty IMAP address")
    address = address.strip()

    use_ssl = True
    if "://" in address:
        parsed = urllib.parse.urlparse(address)
        scheme = parsed.scheme.lower()
        if scheme in {"imap", "tcp"}:
            use_ssl = False
        elif scheme not in {"imaps", "imap+ssl", "ssl"}:
            raise ValueError(f"Unsupported IMAP scheme: {scheme}")
        if not parsed.hostname:
            raise ValueError(f"Invalid IMAP address: {address}")
        host = parsed.hostname
        port = parsed.port
    else:
        host, sep, port_str = address.rpartition(":")
        if not sep:
            host, port = address, None
        elif not port_str.isdigit():
            raise ValueError(f"Invalid port in IMAP address: {address}")
        else:
            port = int(port_str)

    if port is None:
        port = IMAPS_PORT if use_ssl else IMAP_PORT
    return host, port, use_ssl


def encode_mailbox_name(name: str) -> str:
    """
    Encode a mailbox name as IMAP modified UTF-7 (RFC 3501 5.1.3).

    Printable ASCII passes through ("&" becomes "&-"); every other run of
    characters is UTF-16BE, base64 with "," for "/" and no padding, framed
    by "&" and "-".
    """
    out = []
    pending = []

    def flush():
        if pending:
            encoded = base64.b64encode("".join(pending).encode("utf-16-be")).decode("ascii")
            out.append("&" + encoded.rstrip("=").replace("/", ",") + "-")
            pending.clear()

    for ch in name:
        if 0x20 <= ord(ch) <= 0x7E:
            flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    flush()
    return "".join(out)


def quote_mailbox(name: str) -> str:
    name = encode_mailbox_name(name)
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def format_append_flags(flags) -> str | None:
    """
    Build the APPEND flag list from fetched flags.
    Flags a client cannot set are dropped. Returns None when nothing is left.
    """
    kept = [f for f in flags or () if f and f not in UNSETTABLE_FLAGS]
    return f"({' '.join(kept)})" if kept else None


def compact_sequence_set(seqs) -> str:
    """Render sequence numbers as an IMAP sequence set, e.g. [1, 2, 3, 7] -> "1:3,7"."""
    ordered = sorted(set(int(s) for s in seqs))
    if not ordered:
        raise ValueError("Empty sequence set")

    ranges = []
    start = prev = ordered[0]
    for n in ordered[1:]:
        if n == prev + 1:
            prev = n
            continue
        ranges.append((start, prev))
        start = prev = n
    ranges.append((start, prev))
    return ",".join(str(a) if a == b else f"{a}:{b}" for a, b in ranges)


_FETCH_START_RE = re.compile(rb"^(\d+) \(")
_LITERAL_SUFFIX_RE = re.compile(rb"\{\d+\}$")
_BODY_LITERAL_RE = re.compile(rb"BODY\[\](?:<\d+>)? \{\d+\}$")
_FLAGS_RE = re.compile(r"FLAGS \(([^)]*)\)")
_INTERNALDATE_RE = re.compile(r'INTERNALDATE "([^"]*)"')
_SIZE_RE = re.compile(r"RFC822\.SIZE (\d+)")


def _quote_literal(literal: bytes) -> bytes:
    return b'"' + literal.replace(b"\\", b"\\\\").replace(b'"', b'\\"') + b'"'


def _extract_parenthesized(text: str, keyword: str) -> str | None:
    """Return the balanced "(...)" group that follows keyword, honouring quoted strings."""
    idx = text.find(f"{keyword} (")
    if idx < 0:
        return None
    start = idx + len(keyword) + 1
    depth = 0
    in_quote = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_quote = False
            continue
        if ch == '"':
            in_quote = True
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[start : pos + 1]
    return None


def parse_fetch_response(data) -> list[dict]:
    """
    Parse imaplib FETCH data for FETCH_ITEMS into one dict per message.

    imaplib returns a flat list mixing (meta, literal) tuples and bare byte
    strings; a message starts at an item whose meta begins with "<seq> (".
    Non-body literals (e.g. inside ENVELOPE) are folded back into the text as
    quoted strings. Entries without a body, such as unsolicited flag updates,
    are dropped.

    Returns a list of dicts with keys: seq, flags, internal_date, size,
    envelope, body.
    """
    parts = []
    current = None
    for item in data or []:
        if item is None:
            continue
        if isinstance(item, tuple):
            meta, literal = item[0], item[1]
        else:
            meta, literal = item, None
        if isinstance(meta, str):
            meta = meta.encode("utf-8")

        start = _FETCH_START_RE.match(meta)
        if start:
            current = {"seq": int(start.group(1)), "text": b"", "body": None}
            parts.append(current)
        if current is None:
            continue

        if literal is None:
            current["text"] += meta
        elif _BODY_LITERAL_RE.search(meta):
            current["text"] += _LITERAL_SUFFIX_RE.sub(b"", meta)
            current["body"] = literal
        else:
            current["text"] += _LITERAL_SUFFIX_RE.sub(b"", meta) + _quote_literal(literal)

    records = []
    for part in parts:
        if part["body"] is None:
            continue
        text = part["text"].decode("utf-8", errors="replace")

        flags_match = _FLAGS_RE.search(text)
        date_match = _INTERNALDATE_RE.search(text)
        size_match = _SIZE_RE.search(text)
        records.append(
            {
                "seq": part["seq"],
                "flags": tuple(flags_match.group(1).split()) if flags_match else (),
                "internal_date": date_match.group(1) if date_match else None,
                "size": int(size_match.group(1)) if size_match else len(part["body"]),
                "envelope": _extract_parenthesized(text, "ENVELOPE"),
                "body": part["body"],
            }
        )
    return records


def decode_mime_header(header_value):
    """
    Decodes MIME encoded headers (Subject, etc.) to a unicode string.
    """
    if not header_value:
        return "(No Subject)"
    try:
        decoded_list = decode_header(header_value)
        text_parts = []
        for data, encoding in decoded_list:
            if isinstance(data, bytes):
                charset = encoding or "utf-8"
                try:
                    text_parts.append(data.decode(charset, errors="ignore"))
                except LookupError:
                    text_parts.append(data.decode("utf-8", errors="ignore"))
            else:
                text_parts.append(str(data))
        return "".join(text_parts)
    except (ValueError, UnicodeError):
        return str(header_value)


def subject_from_bytes(raw_message):
    """Decoded Subject of an RFC822 message, parsing headers only."""
    if not raw_message:
        return "(No Subject)"
    # compat32 keeps raw headers with continuation lines intact
    parser = BytesParser(policy=policy.compat32)
    email_obj = parser.parsebytes(raw_message, headersonly=True)
    raw_subject = email_obj.get("Subject")
    return decode_mime_header(raw_subject) if raw_subject else "(No Subject)"

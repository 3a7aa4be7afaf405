"""
Tests for imap_retry.py

Tests cover:
- Transient error detection
- ConnectionProxy transparent proxying
- Retry with exponential backoff on transient errors
- Pass-through for non-retryable methods
- Pass-through for non-transient errors
"""

import imaplib
import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

import imap_retry
from mock_imap_server import start_server_thread as start_mock_server


class TestIsTransientError:
    def test_unavailable(self):
        assert imap_retry.is_transient_error([b"[UNAVAILABLE] Server Busy"]) is True

    def test_server_busy(self):
        assert imap_retry.is_transient_error([b"Server Busy"]) is True

    def test_try_again(self):
        assert imap_retry.is_transient_error([b"please try again later"]) is True

    def test_throttled(self):
        assert imap_retry.is_transient_error([b"[THROTTLED]"]) is True

    def test_not_transient(self):
        assert imap_retry.is_transient_error([b"[NONEXISTENT] Folder not found"]) is False

    def test_empty_data(self):
        assert imap_retry.is_transient_error([]) is False
        assert imap_retry.is_transient_error(None) is False

    def test_non_bytes_ignored(self):
        data = ["UNAVAILABLE", None, b"[AUTHENTICATIONFAILED]"]
        assert imap_retry.is_transient_error(data) is False

    def test_multiple_items_matches_second(self):
        data = [b"OK", b"[UNAVAILABLE]"]
        assert imap_retry.is_transient_error(data) is True


class TestConnectionProxy:
    @pytest.fixture(scope="class")
    def imap_server_info(self):
        server, thread, port = start_mock_server(0, {"INBOX": [b"Subject: one\r\n\r\nbody\r\n"]})
        yield server, port
        server.shutdown()
        server.server_close()
        thread.join(timeout=2)

    @pytest.fixture
    def imap_server(self, imap_server_info):
        server, _ = imap_server_info
        server.busy.clear()
        return server

    @pytest.fixture
    def imap_conn(self, imap_server_info):
        _, port = imap_server_info
        client = imaplib.IMAP4("127.0.0.1", port)
        client.login("user", "pass")
        yield client
        try:
            client.logout()
        except (OSError, imaplib.IMAP4.error):
            pass

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def proxy(self, imap_conn, imap_server, sleeps):
        # Record waits instead of sleeping
        return imap_retry.ConnectionProxy(imap_conn, max_retries=3, initial_wait=5, sleep=sleeps.append)

    def test_ok_response_returns_immediately(self, proxy, sleeps):
        typ, data = proxy.select('"INBOX"')
        assert typ == "OK"
        assert sleeps == []

    def test_non_transient_error_not_retried(self, proxy, sleeps):
        typ, data = proxy.select('"Missing"')
        assert typ == "NO"
        assert b"NONEXISTENT" in data[0]
        assert sleeps == []

    def test_transient_error_retried_then_succeeds(self, proxy, imap_server, sleeps):
        imap_server.busy["SELECT"] = 2
        typ, data = proxy.select('"INBOX"')
        assert typ == "OK"
        assert sleeps == [5, 10]

    def test_fetch_retried(self, proxy, imap_server, sleeps):
        proxy.select('"INBOX"')
        imap_server.busy["FETCH"] = 1
        typ, data = proxy.fetch("1", "(RFC822.SIZE)")
        assert typ == "OK"
        assert sleeps == [5]

    def test_max_retries_exhausted_returns_last_error(self, proxy, imap_server, sleeps):
        proxy.select('"INBOX"')
        imap_server.busy["STORE"] = 5
        typ, data = proxy.store("1", "+FLAGS", "(\\Seen)")
        assert typ == "NO"
        assert b"UNAVAILABLE" in data[0]
        # No sleep after the final attempt
        assert sleeps == [5, 10]

    def test_append_method_retried(self, proxy, imap_server, sleeps):
        imap_server.busy["APPEND"] = 1
        typ, data = proxy.append('"INBOX"', None, None, b"Subject: two\r\n\r\nbody\r\n")
        assert typ == "OK"
        assert len(sleeps) == 1

    def test_retry_is_logged(self, imap_conn, imap_server):
        logs = []
        proxy = imap_retry.ConnectionProxy(imap_conn, initial_wait=0, log_fn=logs.append, sleep=lambda s: None)
        imap_server.busy["NOOP"] = 1
        typ, _ = proxy.noop()
        assert typ == "OK"
        assert logs == ["Server busy on NOOP, retrying in 0s... (attempt 1/3)"]

    def test_non_retryable_method_passes_through(self, proxy, imap_server):
        imap_server.busy["CAPABILITY"] = 1
        typ, data = proxy.capability()
        assert typ == "NO"

    def test_non_callable_attribute_passes_through(self, proxy):
        assert proxy.state == "AUTH"

    def test_non_tuple_return_passes_through(self):
        class DummyConn:
            def noop(self):
                return "unexpected"

        p = imap_retry.ConnectionProxy(DummyConn())
        assert p.noop() == "unexpected"

    def test_max_retries_zero_raises(self):
        with pytest.raises(ValueError, match="max_retries must be >= 1"):
            imap_retry.ConnectionProxy(None, max_retries=0)

    def test_max_retries_negative_raises(self):
        with pytest.raises(ValueError, match="max_retries must be >= 1"):
            imap_retry.ConnectionProxy(None, max_retries=-1)

    def test_initial_wait_negative_raises(self):
        with pytest.raises(ValueError, match="initial_wait must be >= 0"):
            imap_retry.ConnectionProxy(None, initial_wait=-1)

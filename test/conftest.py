"""
Shared pytest fixtures and utilities for mvimap tests.
"""

import os
import sys
import threading
import time
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread  # noqa: E402


def make_message(subject, body="Hello", sender="sender@example.com"):
    """Build a small RFC822 message with CRLF line endings."""
    return (
        f"From: {sender}\r\n"
        f"To: rcpt@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"Message-ID: <{subject.replace(' ', '-')}@example.com>\r\n"
        f"\r\n"
        f"{body}\r\n"
    ).encode("utf-8")


def imap_address(port):
    return f"imap://localhost:{port}"


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll predicate until it returns truthy or timeout expires. Returns the last result."""
    deadline = time.monotonic() + timeout
    result = predicate()
    while not result and time.monotonic() < deadline:
        time.sleep(interval)
        result = predicate()
    return result


@pytest.fixture
def single_mock_server():
    """
    Factory fixture that starts mock IMAP servers.
    Returns (server, port); all servers are shut down after the test.
    """
    servers = []

    def _create(initial_folders=None):
        server, thread, port = start_server_thread(0, initial_folders)
        servers.append((server, thread))
        return server, port

    yield _create

    for server, thread in servers:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2)


@pytest.fixture
def mock_server_factory(single_mock_server):
    """
    Factory fixture that creates a (source, destination) pair of mock servers.
    Returns src_server, dest_server, src_port, dest_port.
    """

    def _create(src_data=None, dest_data=None):
        src_server, src_port = single_mock_server(src_data)
        dest_server, dest_port = single_mock_server(dest_data)
        return src_server, dest_server, src_port, dest_port

    return _create


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@contextmanager
def run_in_thread(target, *args, **kwargs):
    """Run target in a daemon thread; yields a dict that receives "result" or "error"."""
    outcome = {}

    def runner():
        try:
            outcome["result"] = target(*args, **kwargs)
        except Exception as e:
            outcome["error"] = e

    t = threading.Thread(target=runner, name="under-test", daemon=True)
    t.start()
    try:
        yield outcome
    finally:
        t.join(timeout=10)
        outcome["alive"] = t.is_alive()


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["mvimap"]
    yield
    sys.argv = original


__all__ = [
    "mock_server_factory",
    "single_mock_server",
    "make_message",
    "imap_address",
    "wait_until",
    "temp_env",
    "run_in_thread",
]

"""
Shared pytest fixtures and utilities for IMAP export tests.
"""

import os
import sys
import zipfile
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread


def make_message(subject, body="Body content"):
    return f"Subject: {subject}\r\nMessage-ID: <{subject.replace(' ', '.')}@test>\r\n\r\n{body}\r\n".encode()


@pytest.fixture
def single_mock_server():
    """
    Factory fixture creating mock IMAP servers; all are shut down after the test.

    Returns (server, port). Keyword options are passed to MockIMAPServer.
    """
    servers = []

    def _create(initial_data=None, **options):
        server, actual_port = start_server_thread(0, initial_data, **options)
        servers.append(server)
        return server, actual_port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


def make_conf(port, user="user", password="pass", timeout=10):
    """Password-auth conf dict pointing at a plain-text mock server."""
    return {
        "host": f"imap://localhost:{port}",
        "user": user,
        "password": password,
        "oauth2_token": None,
        "oauth2": None,
        "timeout": timeout,
    }


def read_archive(path):
    """Returns {entry name: bytes} for a finished ZIP archive."""
    with zipfile.ZipFile(path) as zf:
        return {name: zf.read(name) for name in zf.namelist()}


class RecordingArchive:
    """In-memory stand-in for ZipArchive that records every entry."""

    def __init__(self, path=None):
        self.path = path
        self.entries = []
        self.closed = False
        self.close_calls = 0

    def add(self, relative_path, data):
        assert not self.closed, "entry added after close"
        self.entries.append((relative_path, data))

    def close(self):
        self.close_calls += 1
        self.closed = True


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


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


__all__ = [
    "single_mock_server",
    "make_conf",
    "make_message",
    "read_archive",
    "RecordingArchive",
    "temp_env",
]

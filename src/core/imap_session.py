"""
IMAP Session Management

The session contract the export pipeline runs on, built over imaplib:
connect, authenticate, list folders, select a folder, stream message bodies
and log out. imaplib failures are translated into core.errors exceptions so
the pipeline can tell fatal errors from per-folder ones.

A conf dict (see build_imap_conf) carries everything needed to open a
session and is shared by the enumerator and every download worker.
"""

from __future__ import annotations

import imaplib
import re
import ssl
import urllib.parse
from collections.abc import Iterator
from typing import NamedTuple

from auth import imap_oauth2
from core import imap_retry
from core.errors import (
    AuthError,
    ConfigError,
    ConnectError,
    FetchAborted,
    FetchFailed,
    ListError,
    SelectAborted,
    SelectError,
)
from utils import imap_common

DEFAULT_PORT = 143
DEFAULT_SSL_PORT = 993
LOGOUT_TIMEOUT = 30
FETCH_BATCH_SIZE = 10

_FETCH_SEQ_PATTERN = re.compile(rb"^\s*(\d+)\s+\(")


class Folder(NamedTuple):
    """One LIST entry. ``name`` is the server identity used for SELECT."""

    name: str
    delimiter: str | None = "/"
    flags: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return imap_common.export_folder_name(self.name, self.delimiter)


class MailboxMeta(NamedTuple):
    name: str
    messages: int
    readonly: bool


def parse_server_address(address: str) -> tuple[str, int, bool]:
    """
    Splits a server address into (host, port, use_ssl).

    Accepts "host", "host:port", "[v6addr]:port" and imap:// / imaps:// URLs.
    Without a scheme, TLS is implied only by port 993; plain connections are
    upgraded with STARTTLS later when the server offers it.
    """
    if not address or not address.strip():
        raise ConfigError("IMAP server address is required")
    address = address.strip()

    use_ssl = None
    if "://" in address:
        parsed = urllib.parse.urlsplit(address)
        scheme = parsed.scheme.lower()
        if scheme in {"imap", "tcp"}:
            use_ssl = False
        elif scheme in {"imaps", "imap+ssl", "imapssl", "ssl"}:
            use_ssl = True
        else:
            raise ConfigError(f"Unsupported IMAP scheme: {scheme}")
    else:
        parsed = urllib.parse.urlsplit(f"//{address}")

    try:
        port = parsed.port
    except ValueError as e:
        raise ConfigError(f"Invalid port in IMAP server address '{address}'") from e
    if not parsed.hostname:
        raise ConfigError(f"Invalid IMAP server address '{address}'")

    if use_ssl is None:
        use_ssl = port == DEFAULT_SSL_PORT
    if port is None:
        port = DEFAULT_SSL_PORT if use_ssl else DEFAULT_PORT
    return parsed.hostname, port, use_ssl


def connect(address: str, timeout: float | None = None, ssl_context: ssl.SSLContext | None = None):
    """Opens a connection (TLS, or plain with opportunistic STARTTLS)."""
    host, port, use_ssl = parse_server_address(address)
    try:
        if use_ssl:
            return imaplib.IMAP4_SSL(host, port, ssl_context=ssl_context or ssl.create_default_context(), timeout=timeout)

        conn = imaplib.IMAP4(host, port, timeout=timeout)
        if "STARTTLS" in conn.capabilities:
            try:
                conn.starttls(ssl_context=ssl_context or ssl.create_default_context())
            except (OSError, imaplib.IMAP4.error):
                _close_quietly(conn)
                raise
        return conn
    except (OSError, imaplib.IMAP4.error) as e:
        raise ConnectError(f"Connection error to {address}: {e}") from e


def authenticate(conn, user: str, password: str | None = None, oauth2_token: str | None = None) -> None:
    """LOGIN with a password, or AUTHENTICATE XOAUTH2 when a token is given."""
    try:
        if oauth2_token:
            auth_string = imap_oauth2.build_xoauth2_string(user, oauth2_token)
            conn.authenticate("XOAUTH2", lambda _: auth_string)
        else:
            conn.login(user, password or "")
    except imaplib.IMAP4.abort as e:
        raise ConnectError(f"Connection lost while authenticating {user}: {e}") from e
    except imaplib.IMAP4.error as e:
        raise AuthError(f"Authentication failed for {user}: {e}") from e
    except OSError as e:
        raise ConnectError(f"Connection lost while authenticating {user}: {e}") from e


def _close_quietly(conn) -> None:
    try:
        conn.shutdown()
    except OSError:
        pass


def build_imap_conf(host, user, password, client_id=None, client_secret=None, tenant=None, timeout=None):
    """
    Builds the connection config dict shared by every session of a run.

    If client_id is provided, an OAuth2 token is acquired up front (raising
    AuthError on failure). Otherwise the config uses password auth.

    Returns:
        Dict with keys: host, user, password, oauth2_token, oauth2, timeout
    """
    oauth2_token = None
    oauth2_info = None

    if client_id:
        oauth2_token, provider = imap_oauth2.acquire_token(host, client_id, user, client_secret, tenant)
        oauth2_info = {
            "provider": provider,
            "client_id": client_id,
            "email": user,
            "client_secret": client_secret,
            "tenant": tenant,
        }

    return {
        "host": host,
        "user": user,
        "password": password,
        "oauth2_token": oauth2_token,
        "oauth2": oauth2_info,
        "timeout": timeout,
    }


def open_session(conf):
    """
    Connects and authenticates from a conf dict.

    An OAuth2 token rejected as expired is refreshed once and the login is
    retried on a fresh connection. Returns the connection wrapped in a
    retrying ConnectionProxy.
    """
    token = conf.get("oauth2_token")
    conn = connect(conf["host"], timeout=conf.get("timeout"))
    try:
        authenticate(conn, conf["user"], conf.get("password"), token)
    except ConnectError:
        _close_quietly(conn)
        raise
    except AuthError as e:
        _close_quietly(conn)
        if not conf.get("oauth2") or not imap_oauth2.is_token_expired_error(e):
            raise
        imap_common.safe_print("OAuth2 token expired, refreshing...")
        token = imap_oauth2.refresh_oauth2_token(conf, token)
        if not token:
            raise
        conn = connect(conf["host"], timeout=conf.get("timeout"))
        try:
            authenticate(conn, conf["user"], conf.get("password"), token)
        except (AuthError, ConnectError):
            _close_quietly(conn)
            raise

    return imap_retry.ConnectionProxy(conn, log_fn=imap_common.safe_print)


def list_folders(conn, pattern: str = "*") -> list[Folder]:
    try:
        typ, data = conn.list('""', pattern)
    except (imaplib.IMAP4.error, OSError) as e:
        raise ListError(f"Could not list folders: {e}") from e
    if typ != "OK":
        raise ListError(f"Could not list folders: {typ} {data}")

    folders = []
    for item in data:
        parsed = imap_common.parse_list_response(item)
        if parsed is None:
            if item is not None:
                imap_common.safe_print(f"Ignoring unparseable LIST entry: {item!r}")
            continue
        folders.append(Folder(*parsed))
    return folders


def select_folder(conn, name: str, readonly: bool = True) -> MailboxMeta:
    """SELECT (or EXAMINE when readonly) a folder and return its message count."""
    try:
        typ, data = conn.select(imap_common.quote_folder_name(name), readonly=readonly)
    except imaplib.IMAP4.abort as e:
        raise SelectAborted(f"Connection lost selecting '{name}': {e}") from e
    except imaplib.IMAP4.error as e:
        raise SelectError(f"Could not select '{name}': {e}") from e
    except OSError as e:
        raise SelectAborted(f"Connection lost selecting '{name}': {e}") from e

    if typ != "OK":
        raise SelectError(f"Could not select '{name}': {typ} {data}")

    try:
        # imaplib accumulates EXISTS responses; the last one is current
        messages = int(data[-1]) if data and data[-1] else 0
    except ValueError as e:
        raise SelectError(f"Unexpected EXISTS count for '{name}': {data[-1]!r}") from e
    return MailboxMeta(name, messages, readonly)


def _parse_fetch_bodies(data) -> list[tuple[int, bytes]]:
    bodies = []
    for item in data or ():
        if not isinstance(item, tuple) or len(item) < 2:
            continue
        match = _FETCH_SEQ_PATTERN.match(item[0])
        if match and isinstance(item[1], bytes):
            bodies.append((int(match.group(1)), item[1]))
    return bodies


def fetch_bodies(conn, count: int, batch_size: int = FETCH_BATCH_SIZE) -> Iterator[tuple[int, bytes]]:
    """
    Lazily yields (sequence number, raw message) for messages 1..count.

    Messages are requested in sequence ranges of ``batch_size`` and each
    range is yielded before the next one is requested, so no more than one
    batch is held here. Bodies are fetched with BODY.PEEK[] to leave \\Seen
    untouched.

    Raises:
        FetchAborted: the connection dropped. Nothing from the broken batch
            is yielded.
        FetchFailed: the server answered NO or BAD. Bodies the server sent
            before a NO are yielded first.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    for start in range(1, count + 1, batch_size):
        end = min(start + batch_size - 1, count)
        message_set = str(start) if start == end else f"{start}:{end}"
        try:
            typ, data = conn.fetch(message_set, "(BODY.PEEK[])")
        except imaplib.IMAP4.abort as e:
            raise FetchAborted(f"Fetch command aborted at {message_set}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise FetchFailed(f"Fetch error at {message_set}: {e}") from e
        except OSError as e:
            raise FetchAborted(f"Fetch command aborted at {message_set}: {e}") from e

        if typ != "OK":
            # imaplib returns the tagged text on NO; bodies received before it
            # are still queued as untagged FETCH responses.
            _, partial = conn.response("FETCH")
            yield from _parse_fetch_bodies(partial)
            reason = data[-1] if data else b""
            if isinstance(reason, bytes):
                reason = reason.decode("utf-8", errors="replace")
            raise FetchFailed(f"Fetch error at {message_set}: {typ} {reason}")

        yield from _parse_fetch_bodies(data)


def logout(conn, timeout: float = LOGOUT_TIMEOUT) -> None:
    """Best-effort LOGOUT bounded by ``timeout`` seconds."""
    try:
        sock = getattr(conn, "sock", None)
        if sock is not None:
            sock.settimeout(timeout)
        conn.logout()
    except (imaplib.IMAP4.error, OSError) as e:
        imap_common.safe_print(f"Logout error: {e}")

"""
IMAP Export Common Utilities

Shared helpers for the export pipeline: thread-safe logging, LIST response
parsing, folder name quoting and the folder naming/exclusion policy.
"""

from __future__ import annotations

import base64
import re
import threading

# IMAP Folder Constants
FOLDER_INBOX = "INBOX"

# Non-content folders never exported (exact, case-sensitive display names)
EXCLUDED_FOLDERS = frozenset({"dovecot.sieve", "Spam", "Trash", "Junk"})

_print_lock = threading.Lock()

# (flags) "delimiter" name  |  (flags) NIL name
_LIST_PATTERN = re.compile(
    r'^\((?P<flags>[^)]*)\)\s+(?:"(?P<delimiter>(?:[^"\\]|\\.)*)"|NIL)\s+(?P<name>.*)$',
    re.IGNORECASE,
)
_LITERAL_PATTERN = re.compile(r"\{\d+\}$")
_MUTF7_PATTERN = re.compile(r"&([^-]*)-")


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}", flush=True)


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def quote_folder_name(name: str) -> str:
    """Quotes a mailbox name for SELECT/EXAMINE, escaping backslashes and quotes."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_list_response(item) -> tuple[str, str | None, tuple[str, ...]] | None:
    """
    Parses one entry of an imaplib LIST response.

    imaplib hands back either a bytes line such as
    ``(\\HasNoChildren) "/" "INBOX/Work"`` or, when the server sent the name
    as a literal, a ``(line, name)`` tuple.

    Returns (name, delimiter, flags) or None for entries that don't parse.
    """
    literal_name = None
    if isinstance(item, tuple):
        item, literal_name = item[0], item[1]
        if isinstance(literal_name, bytes):
            literal_name = literal_name.decode("utf-8", errors="replace")
    if item is None:
        return None
    if isinstance(item, bytes):
        item = item.decode("utf-8", errors="replace")

    match = _LIST_PATTERN.match(item.strip())
    if not match:
        return None

    flags = tuple(match.group("flags").split())
    delimiter = match.group("delimiter")
    if delimiter is not None:
        delimiter = _unquote(f'"{delimiter}"') or None

    raw_name = match.group("name")
    if literal_name is not None and _LITERAL_PATTERN.search(raw_name):
        name = literal_name
    else:
        name = _unquote(raw_name)
    return name, delimiter, flags


def decode_folder_name(name: str) -> str:
    """Decodes IMAP modified UTF-7 (RFC 3501 5.1.3) into a unicode string."""
    if "&" not in name:
        return name

    def _decode(match):
        encoded = match.group(1)
        if not encoded:
            return "&"
        encoded = encoded.replace(",", "/")
        encoded += "=" * (-len(encoded) % 4)
        try:
            return base64.b64decode(encoded, validate=True).decode("utf-16-be")
        except (ValueError, UnicodeDecodeError):
            return match.group(0)

    return _MUTF7_PATTERN.sub(_decode, name)


def export_folder_name(name: str, delimiter: str | None = "/") -> str:
    """
    Returns the archive folder name for a server folder.

    Strips the ``INBOX<delimiter>`` namespace some servers put in front of
    every folder, maps the server delimiter to "/" and decodes modified
    UTF-7. The raw name is still what gets selected on the server.
    """
    display = name
    if delimiter:
        prefix = f"{FOLDER_INBOX}{delimiter}"
        if display.startswith(prefix):
            display = display[len(prefix) :]
        if delimiter != "/":
            display = display.replace(delimiter, "/")
    return decode_folder_name(display)


def is_excluded_folder(display_name: str) -> bool:
    return display_name in EXCLUDED_FOLDERS


def archive_folder_path(display_name: str) -> str:
    """
    Turns a display name into a safe relative archive directory.

    Empty, "." and ".." segments would collapse or escape the archive root
    when extracted; they are replaced with "_".
    """
    parts = []
    for part in display_name.split("/"):
        if part in ("", ".", ".."):
            part = "_"
        parts.append(part)
    return "/".join(parts)

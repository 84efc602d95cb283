"""
Archive Writer

The single consumer of the message channel. Every message becomes one
Maildir-style entry, ``<folder>/cur/<unique name>``, in the output archive.
"""

from __future__ import annotations

import socket
import time

from utils import imap_common

MAILDIR_INFO = "2,S"


def maildir_hostname(hostname: str | None = None) -> str:
    """Hostname with "/" and ":" escaped the way Maildir delivery does."""
    hostname = hostname or socket.gethostname() or "localhost"
    return hostname.replace("/", "\\057").replace(":", "\\072")


class MaildirNamer:
    """
    Generates run-unique Maildir file names:
    ``<unix seconds>.<sequence>_1.<hostname>:2,S``.

    The sequence alone guarantees uniqueness within a run. It is not
    synchronized and must only be used from the writer thread.
    """

    def __init__(self, hostname=None, clock=time.time):
        self.hostname = maildir_hostname(hostname)
        self._clock = clock
        self.sequence = 0

    def next_name(self) -> str:
        self.sequence += 1
        return f"{int(self._clock())}.{self.sequence}_1.{self.hostname}:{MAILDIR_INFO}"


class ArchiveWriter:
    def __init__(self, archive, namer: MaildirNamer | None = None):
        self.archive = archive
        self.namer = namer or MaildirNamer()
        self.count = 0

    def entry_path(self, folder: str) -> str:
        return f"{imap_common.archive_folder_path(folder)}/cur/{self.namer.next_name()}"

    def write(self, message) -> str:
        path = self.entry_path(message.folder)
        self.archive.add(path, message.body)
        self.count += 1
        return path

    def drain(self, messages) -> int:
        """Writes every message until the channel is closed and empty."""
        for message in messages:
            self.write(message)
        return self.count

    def finalize(self) -> None:
        self.archive.close()

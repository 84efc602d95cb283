"""
ZIP Archive Sink

The output container: a single ZIP file receiving one entry per message.
Entries are written one at a time by a single owner; zipfile does not
support concurrent writers on the same archive.
"""

from __future__ import annotations

import time
import zipfile

from core.errors import ArchiveError

ENTRY_MODE = 0o600


class ZipArchive:
    def __init__(self, zf: zipfile.ZipFile, path: str, compression: int = zipfile.ZIP_DEFLATED):
        self._zf = zf
        self.path = path
        self.compression = compression
        self.entries = 0

    @classmethod
    def create(cls, output_path: str, compression: int = zipfile.ZIP_DEFLATED) -> ZipArchive:
        """Creates (or truncates) the archive at output_path."""
        try:
            zf = zipfile.ZipFile(output_path, "w", compression=compression, allowZip64=True)
        except OSError as e:
            raise ArchiveError(f"Could not create archive {output_path}: {e}") from e
        return cls(zf, output_path, compression)

    @property
    def closed(self) -> bool:
        return self._zf is None

    def new_entry(self, relative_path: str):
        """
        Opens a write stream for a new entry.

        ``relative_path`` uses "/" separators. The stream must be closed
        before the next entry is opened.
        """
        if self._zf is None:
            raise ArchiveError(f"Archive {self.path} is already closed")

        info = zipfile.ZipInfo(relative_path, date_time=time.localtime(time.time())[:6])
        info.compress_type = self.compression
        info.external_attr = ENTRY_MODE << 16
        try:
            stream = self._zf.open(info, mode="w")
        except (OSError, ValueError) as e:
            raise ArchiveError(f"Could not add {relative_path} to {self.path}: {e}") from e
        self.entries += 1
        return stream

    def add(self, relative_path: str, data: bytes) -> None:
        stream = self.new_entry(relative_path)
        try:
            with stream:
                stream.write(data)
        except OSError as e:
            raise ArchiveError(f"Could not write {relative_path} to {self.path}: {e}") from e

    def close(self) -> None:
        """Writes the central directory. Later calls do nothing."""
        if self._zf is None:
            return
        zf, self._zf = self._zf, None
        try:
            zf.close()
        except OSError as e:
            raise ArchiveError(f"Could not finalize archive {self.path}: {e}") from e

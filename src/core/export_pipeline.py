"""
IMAP Export Pipeline

Three stages joined by two bounded channels:

    enumerator --(folders, 5)--> download workers --(messages, 100)--> archive writer

Completion only moves forward: the enumerator closes the folder channel once
every folder is queued, the last download worker to exit closes the message
channel, and the writer finalizes the archive once that channel is drained.

A fatal error in any stage cancels the run. Every blocked channel operation
wakes up and raises Cancelled, and ExportPipeline.run() re-raises the
original error on the main thread. Per-folder errors stay inside the worker.
"""

from __future__ import annotations

import queue
import threading
from typing import NamedTuple

from core import imap_session
from core.archive_writer import ArchiveWriter, MaildirNamer
from core.errors import Cancelled, FolderError
from utils import imap_common
from utils.zip_archive import ZipArchive

FOLDER_QUEUE_SIZE = 5
MESSAGE_QUEUE_SIZE = 100
DEFAULT_WORKERS = 3

_POLL_INTERVAL = 0.1
_CLOSED = object()

safe_print = imap_common.safe_print


class MessageRecord(NamedTuple):
    folder: str
    body: bytes


class Channel:
    """
    Bounded FIFO with close semantics, built on queue.Queue.

    close() enqueues a terminator behind the pending items. A consumer that
    reads it puts it back, so every other consumer of the channel stops too.
    Blocking put/iteration poll ``cancel_event`` and raise Cancelled once it
    is set.
    """

    def __init__(self, maxsize: int, cancel_event: threading.Event):
        self._queue = queue.Queue(maxsize)
        self._cancel = cancel_event
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def _put(self, item) -> None:
        while True:
            if self._cancel.is_set():
                raise Cancelled("Export cancelled")
            try:
                self._queue.put(item, timeout=_POLL_INTERVAL)
                return
            except queue.Full:
                continue

    def put(self, item) -> None:
        if self._closed:
            raise ValueError("put() on a closed channel")
        self._put(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._put(_CLOSED)

    def __iter__(self):
        while True:
            if self._cancel.is_set():
                raise Cancelled("Export cancelled")
            try:
                item = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return
            yield item


class FolderEnumerator:
    """Lists every folder over one session and feeds the folder channel."""

    def __init__(self, conf, folders: Channel, pattern="*", session_factory=imap_session.open_session):
        self.conf = conf
        self.folders = folders
        self.pattern = pattern
        self._session_factory = session_factory
        self.listed = 0

    def run(self) -> int:
        safe_print(f"Connecting to {self.conf['host']} as user {self.conf['user']}")
        conn = self._session_factory(self.conf)
        try:
            found = imap_session.list_folders(conn, self.pattern)
            if not found:
                safe_print("No folders found on server.")
            else:
                safe_print(f"Found {len(found)} folders.")
            for folder in found:
                self.folders.put(folder)
                self.listed += 1
        finally:
            imap_session.logout(conn)
        self.folders.close()
        return self.listed


class DownloadWorker:
    """
    Drains the folder channel over a private session.

    The session is opened when the first folder arrives, excluded or not; a
    worker that never gets one never connects. Failing to open a session is
    fatal and propagates. Folder-level errors are logged and recorded in
    ``failed_folders``.
    """

    def __init__(
        self,
        conf,
        folders: Channel,
        messages: Channel,
        batch_size: int = imap_session.FETCH_BATCH_SIZE,
        session_factory=imap_session.open_session,
    ):
        self.conf = conf
        self.folders = folders
        self.messages = messages
        self.batch_size = batch_size
        self._session_factory = session_factory
        self.conn = None
        self.sessions_opened = 0
        self.folders_received = 0
        self.messages_sent = 0
        self.failed_folders = []

    def _session(self):
        if self.conn is None:
            self.conn = self._session_factory(self.conf)
            self.sessions_opened += 1
        return self.conn

    def _drop_session(self):
        conn, self.conn = self.conn, None
        if conn is None:
            return
        try:
            conn.shutdown()
        except OSError:
            pass

    def _folder_failed(self, name, error):
        self.failed_folders.append(name)
        if error.aborted:
            self._drop_session()

    def download_folder(self, folder) -> int:
        """Pushes every message of ``folder``. Returns how many were pushed."""
        conn = self._session()
        name = folder.display_name
        if imap_common.is_excluded_folder(name):
            safe_print(f"{name} - skipped")
            return 0

        try:
            meta = imap_session.select_folder(conn, folder.name, readonly=True)
        except FolderError as e:
            safe_print(f"Error selecting mailbox '{folder.name}': {e}")
            self._folder_failed(name, e)
            return 0

        safe_print(f"{name} - {meta.messages} messages")
        if meta.messages == 0:
            return 0

        sent = 0
        try:
            for _seq, body in imap_session.fetch_bodies(conn, meta.messages, self.batch_size):
                self.messages.put(MessageRecord(name, body))
                sent += 1
        except FolderError as e:
            safe_print(f"[{name}] {e} ({sent}/{meta.messages} messages retrieved)")
            self._folder_failed(name, e)
        finally:
            self.messages_sent += sent
        return sent

    def run(self) -> None:
        try:
            for folder in self.folders:
                self.folders_received += 1
                self.download_folder(folder)
        finally:
            self.close()
        safe_print(f"Worker done: {self.folders_received} folders, {self.messages_sent} messages")

    def close(self) -> None:
        conn, self.conn = self.conn, None
        if conn is not None:
            imap_session.logout(conn)


class WorkerPool:
    """
    Fixed set of daemon threads, one per worker.

    A countdown of running workers stands in for a wait group: the last
    worker to exit closes the message channel. Worker exceptions other than
    Cancelled go to ``on_error``.
    """

    def __init__(self, workers, messages: Channel, on_error, name_prefix="DL"):
        self.workers = list(workers)
        self.messages = messages
        self._on_error = on_error
        self._name_prefix = name_prefix
        self._running = len(self.workers)
        self._lock = threading.Lock()
        self.threads = []

    def start(self) -> None:
        if not self.workers:
            self.messages.close()
            return
        for index, worker in enumerate(self.workers, 1):
            thread = threading.Thread(
                target=self._run, args=(worker,), name=f"{self._name_prefix}-{index}", daemon=True
            )
            self.threads.append(thread)
            thread.start()

    def _run(self, worker) -> None:
        try:
            worker.run()
        except Cancelled:
            pass
        except Exception as e:
            self._on_error(e)
        finally:
            with self._lock:
                self._running -= 1
                last = self._running == 0
            if last:
                try:
                    self.messages.close()
                except Cancelled:
                    pass

    def join(self, timeout=None) -> None:
        for thread in self.threads:
            thread.join(timeout)


class ExportPipeline:
    """Wires enumerator, worker pool and archive writer for one run."""

    def __init__(
        self,
        conf,
        output_path: str,
        workers: int = DEFAULT_WORKERS,
        batch_size: int = imap_session.FETCH_BATCH_SIZE,
        folder_queue_size: int = FOLDER_QUEUE_SIZE,
        message_queue_size: int = MESSAGE_QUEUE_SIZE,
        pattern: str = "*",
        session_factory=imap_session.open_session,
        archive_factory=ZipArchive.create,
        namer: MaildirNamer | None = None,
    ):
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.conf = conf
        self.output_path = output_path
        self.cancel_event = threading.Event()
        self.folders = Channel(folder_queue_size, self.cancel_event)
        self.messages = Channel(message_queue_size, self.cancel_event)
        self.enumerator = FolderEnumerator(conf, self.folders, pattern, session_factory)
        self.workers = [
            DownloadWorker(conf, self.folders, self.messages, batch_size, session_factory) for _ in range(workers)
        ]
        self.pool = WorkerPool(self.workers, self.messages, self.fail)
        self._archive_factory = archive_factory
        self._namer = namer
        self.writer = None
        self._error = None
        self._error_lock = threading.Lock()

    def fail(self, error: BaseException) -> None:
        """Records the first fatal error and cancels the run."""
        with self._error_lock:
            if self._error is None:
                self._error = error
        self.cancel_event.set()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def failed_folders(self) -> list[str]:
        return [name for worker in self.workers for name in worker.failed_folders]

    @property
    def sessions_opened(self) -> int:
        return sum(worker.sessions_opened for worker in self.workers)

    def _run_enumerator(self) -> None:
        try:
            self.enumerator.run()
        except Cancelled:
            pass
        except Exception as e:
            self.fail(e)

    def run(self) -> int:
        """
        Runs the export to completion on the calling thread.

        Returns the number of messages written. Raises the first fatal error
        of any stage; the archive is not finalized in that case.
        """
        archive = self._archive_factory(self.output_path)
        self.writer = ArchiveWriter(archive, self._namer)

        self.pool.start()
        enumerator_thread = threading.Thread(target=self._run_enumerator, name="ENUM", daemon=True)
        enumerator_thread.start()

        try:
            count = self.writer.drain(self.messages)
        except Cancelled:
            raise self._error or Cancelled("Export cancelled") from None
        except BaseException:
            self.cancel()
            raise

        if self._error is not None:
            raise self._error

        self.pool.join()
        enumerator_thread.join()
        self.writer.finalize()

        safe_print(f"retrieved {count} messages, output written to {self.output_path}")
        failed = self.failed_folders
        if failed:
            safe_print(f"Folders with errors ({len(failed)}): {', '.join(failed)}")
        return count

"""
Tests for export_pipeline.py

Tests cover:
- Channel close/cancel semantics with several consumers
- End-to-end export into a ZIP against the mock IMAP server
- Lazy per-worker sessions
- Excluded and empty folders
- Per-folder SELECT/FETCH failures (run continues, partial folders kept)
- Fatal enumerator/worker/archive failures (run fails, archive not finalized)
"""

import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../../src")))

from conftest import RecordingArchive, make_conf, make_message, read_archive
from core import imap_session
from core.archive_writer import MaildirNamer
from core.errors import ArchiveError, AuthError, Cancelled, ConnectError, ListError
from core.export_pipeline import Channel, ExportPipeline, MessageRecord


def run_export(port, output_path, **kwargs):
    kwargs.setdefault("namer", MaildirNamer("testhost"))
    pipeline = ExportPipeline(make_conf(port), str(output_path), **kwargs)
    count = pipeline.run()
    return pipeline, count


class RecordingArchiveFactory:
    def __init__(self):
        self.archives = []

    def __call__(self, path):
        archive = RecordingArchive(path)
        self.archives.append(archive)
        return archive


class TestChannel:
    def test_items_then_close(self):
        channel = Channel(5, threading.Event())
        channel.put(1)
        channel.put(2)
        channel.close()

        assert list(channel) == [1, 2]
        assert channel.closed

    def test_close_stops_every_consumer(self):
        channel = Channel(5, threading.Event())
        results = []
        lock = threading.Lock()

        def consume():
            for item in channel:
                with lock:
                    results.append(item)

        threads = [threading.Thread(target=consume) for _ in range(3)]
        for t in threads:
            t.start()
        for i in range(10):
            channel.put(i)
        channel.close()
        for t in threads:
            t.join(timeout=5)

        assert not any(t.is_alive() for t in threads)
        assert sorted(results) == list(range(10))

    def test_put_after_close(self):
        channel = Channel(1, threading.Event())
        channel.close()

        with pytest.raises(ValueError):
            channel.put("late")

    def test_close_twice_is_noop(self):
        channel = Channel(1, threading.Event())
        channel.close()
        channel.close()

        assert list(channel) == []

    def test_blocked_put_raises_on_cancel(self):
        cancel = threading.Event()
        channel = Channel(1, cancel)
        channel.put("fills it")
        threading.Timer(0.2, cancel.set).start()

        with pytest.raises(Cancelled):
            channel.put("blocks")

    def test_blocked_consumer_raises_on_cancel(self):
        cancel = threading.Event()
        channel = Channel(1, cancel)
        threading.Timer(0.2, cancel.set).start()

        with pytest.raises(Cancelled):
            list(channel)


class TestEndToEnd:
    def test_folders_exported_to_maildir_layout(self, single_mock_server, tmp_path, capsys):
        m1, m2, m3 = make_message("one"), make_message("two"), make_message("three")
        server, port = single_mock_server(
            {"INBOX": [m1, m2], "INBOX/Work": [m3], "Spam": [make_message("spam")]}
        )
        output = tmp_path / "export.zip"

        pipeline, count = run_export(port, output, workers=1)

        entries = read_archive(output)
        assert count == 3
        assert len(entries) == 3
        inbox = [name for name in entries if name.startswith("INBOX/cur/")]
        work = [name for name in entries if name.startswith("Work/cur/")]
        assert [entries[name] for name in inbox] == [m1, m2]
        assert [entries[name] for name in work] == [m3]
        assert all(name.endswith("_1.testhost:2,S") for name in entries)
        assert "Spam" not in server.selects
        assert pipeline.failed_folders == []

        out = capsys.readouterr().out
        assert f"retrieved 3 messages, output written to {output}" in out
        assert "Spam - skipped" in out

    def test_many_messages_through_small_queues(self, single_mock_server, tmp_path):
        folders = {f"F{i}": [make_message(f"f{i}-m{j}") for j in range(12)] for i in range(6)}
        _, port = single_mock_server(folders)
        output = tmp_path / "export.zip"

        _, count = run_export(
            port, output, workers=3, batch_size=4, folder_queue_size=1, message_queue_size=2
        )

        entries = read_archive(output)
        assert count == 72
        assert len(entries) == 72
        for i in range(6):
            assert sum(1 for name in entries if name.startswith(f"F{i}/cur/")) == 12
        assert sorted(entries.values()) == sorted(msg for msgs in folders.values() for msg in msgs)

    def test_colliding_display_names_get_distinct_entries(self, single_mock_server, tmp_path):
        a, b = make_message("prefixed work"), make_message("top-level work")
        server, port = single_mock_server({"INBOX/Work": [a], "Work": [b]})
        output = tmp_path / "export.zip"

        _, count = run_export(port, output, workers=2)

        entries = read_archive(output)
        assert count == 2
        assert len(entries) == 2
        assert all(name.startswith("Work/cur/") for name in entries)
        assert sorted(entries.values()) == sorted([a, b])
        assert sorted(server.selects) == ["INBOX/Work", "Work"]

    def test_dot_delimiter_server(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [], "INBOX.Archive.2023": [make_message("old")]}, delimiter=".")
        output = tmp_path / "export.zip"

        run_export(port, output, workers=1)

        assert [name.rsplit("/cur/", 1)[0] for name in read_archive(output)] == ["Archive/2023"]


class TestSessions:
    def test_only_workers_with_folders_connect(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [make_message("a")]})

        pipeline, _ = run_export(port, tmp_path / "out.zip", workers=3)

        assert pipeline.sessions_opened == 1
        # enumerator + the one worker that received INBOX
        assert len(server.logins) == 2

    def test_one_session_per_busy_worker(self, single_mock_server, tmp_path):
        server, port = single_mock_server({name: [make_message(name)] for name in ("A", "B", "C", "D")})

        pipeline, _ = run_export(port, tmp_path / "out.zip", workers=3)

        active = [w for w in pipeline.workers if w.folders_received]
        assert pipeline.sessions_opened == len(active)
        assert all(w.sessions_opened == 1 for w in active)
        assert sum(w.folders_received for w in pipeline.workers) == 4
        assert len(server.logins) == 1 + len(active)

    def test_worker_with_only_excluded_folders_connects_but_never_selects(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"Trash": [make_message("t")], "Junk": [], "dovecot.sieve": []})

        pipeline, count = run_export(port, tmp_path / "out.zip", workers=1)

        assert count == 0
        assert pipeline.sessions_opened == 1
        assert len(server.logins) == 2
        assert server.selects == []
        assert server.fetches == []

    def test_single_excluded_folder_opens_one_session(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"Trash": [make_message("t")]})

        pipeline, _ = run_export(port, tmp_path / "out.zip", workers=3)

        assert pipeline.sessions_opened == 1
        assert [w.sessions_opened for w in pipeline.workers if w.folders_received] == [1]
        assert server.selects == []


class TestFolderEdgeCases:
    def test_empty_folder_contributes_nothing(self, single_mock_server, tmp_path, capsys):
        server, port = single_mock_server({"INBOX": []})
        output = tmp_path / "out.zip"

        _, count = run_export(port, output, workers=1)

        assert count == 0
        assert read_archive(output) == {}
        assert server.fetches == []
        assert "INBOX - 0 messages" in capsys.readouterr().out

    def test_no_folders_still_writes_archive(self, single_mock_server, tmp_path, capsys):
        _, port = single_mock_server({})
        output = tmp_path / "out.zip"

        pipeline, count = run_export(port, output)

        assert count == 0
        assert read_archive(output) == {}
        assert pipeline.sessions_opened == 0
        assert "No folders found on server." in capsys.readouterr().out


class TestFolderFailures:
    def test_select_failure_skips_folder(self, single_mock_server, tmp_path, capsys):
        _, port = single_mock_server(
            {"INBOX": [make_message("a")], "Work": [make_message("b")]}, select_failures={"Work"}
        )
        output = tmp_path / "out.zip"

        pipeline, count = run_export(port, output, workers=1)

        assert count == 1
        assert list(read_archive(output))[0].startswith("INBOX/cur/")
        assert pipeline.failed_folders == ["Work"]
        out = capsys.readouterr().out
        assert "Error selecting mailbox 'Work'" in out
        assert "Folders with errors (1): Work" in out

    def test_fetch_abort_keeps_partial_folder_and_reconnects(self, single_mock_server, tmp_path, capsys):
        inbox = [make_message(f"m{i}") for i in range(5)]
        sent = make_message("sent")
        server, port = single_mock_server(
            {"INBOX": inbox, "Sent": [sent]}, fetch_failures={"INBOX": (2, "abort")}
        )
        output = tmp_path / "out.zip"

        pipeline, count = run_export(port, output, workers=1, batch_size=1)

        entries = read_archive(output)
        assert count == 3
        assert [data for name, data in entries.items() if name.startswith("INBOX/")] == inbox[:2]
        assert [data for name, data in entries.items() if name.startswith("Sent/")] == [sent]
        assert pipeline.failed_folders == ["INBOX"]
        assert pipeline.sessions_opened == 2
        assert "(2/5 messages retrieved)" in capsys.readouterr().out

    def test_fetch_no_keeps_session(self, single_mock_server, tmp_path):
        inbox = [make_message(f"m{i}") for i in range(4)]
        _, port = single_mock_server(
            {"INBOX": inbox, "Sent": [make_message("sent")]}, fetch_failures={"INBOX": (3, "no")}
        )
        output = tmp_path / "out.zip"

        pipeline, count = run_export(port, output, workers=1)

        assert count == 4
        assert pipeline.failed_folders == ["INBOX"]
        assert pipeline.sessions_opened == 1


class TestFatalFailures:
    def test_list_failure_aborts_run(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [make_message("a")]}, list_error=True)
        factory = RecordingArchiveFactory()
        pipeline = ExportPipeline(make_conf(port), str(tmp_path / "out.zip"), archive_factory=factory)

        with pytest.raises(ListError):
            pipeline.run()

        assert factory.archives[0].closed is False

    def test_bad_credentials_abort_run(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": []}, password="secret")
        factory = RecordingArchiveFactory()
        pipeline = ExportPipeline(make_conf(port, password="wrong"), str(tmp_path / "out.zip"), archive_factory=factory)

        with pytest.raises(AuthError):
            pipeline.run()

        assert factory.archives[0].closed is False

    def test_worker_connect_failure_aborts_run(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [make_message("a")], "Sent": [make_message("b")]})
        factory = RecordingArchiveFactory()

        def session_factory(conf):
            if threading.current_thread().name.startswith("DL-"):
                raise ConnectError("Connection error to worker")
            return imap_session.open_session(conf)

        pipeline = ExportPipeline(
            make_conf(port), str(tmp_path / "out.zip"), workers=2,
            session_factory=session_factory, archive_factory=factory,
        )

        with pytest.raises(ConnectError, match="worker"):
            pipeline.run()

        assert factory.archives[0].closed is False

    def test_archive_failure_before_any_connection(self, single_mock_server, tmp_path):
        server, port = single_mock_server({"INBOX": [make_message("a")]})
        pipeline = ExportPipeline(make_conf(port), str(tmp_path / "missing" / "out.zip"))

        with pytest.raises(ArchiveError):
            pipeline.run()

        assert server.logins == []

    def test_writer_failure_cancels_stages(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [make_message(f"m{i}") for i in range(20)]})

        class FailingArchive(RecordingArchive):
            def add(self, relative_path, data):
                raise ArchiveError("disk full")

        pipeline = ExportPipeline(
            make_conf(port), str(tmp_path / "out.zip"), workers=1, message_queue_size=1,
            archive_factory=FailingArchive,
        )

        with pytest.raises(ArchiveError, match="disk full"):
            pipeline.run()

        assert pipeline.cancel_event.is_set()
        pipeline.pool.join(timeout=5)
        assert not any(t.is_alive() for t in pipeline.pool.threads)

    def test_cancelled_before_start(self, single_mock_server, tmp_path):
        _, port = single_mock_server({"INBOX": [make_message("a")]})
        factory = RecordingArchiveFactory()
        pipeline = ExportPipeline(make_conf(port), str(tmp_path / "out.zip"), archive_factory=factory)
        pipeline.cancel()

        with pytest.raises(Cancelled):
            pipeline.run()

        assert factory.archives[0].closed is False


def test_invalid_worker_count(tmp_path):
    with pytest.raises(ValueError):
        ExportPipeline(make_conf(1), str(tmp_path / "out.zip"), workers=0)


def test_message_record_fields():
    record = MessageRecord("INBOX", b"raw")
    assert record.folder == "INBOX"
    assert record.body == b"raw"

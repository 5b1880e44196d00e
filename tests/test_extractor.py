"""
Tests for archive extraction and executable location.
"""

import io
import queue
import subprocess
import tarfile
from unittest.mock import MagicMock, patch

import pytest

from conftest import build_zip
from store.extractor import ExtractEventType, ExtractionWorker, find_seven_zip
from store.locator import find_executable, matches_target


def drain(worker, timeout=10):
    """All events up to and including the final one."""
    events = []
    while True:
        try:
            event = worker.events.get(timeout=timeout)
        except queue.Empty:
            pytest.fail("worker produced no final event")
        events.append(event)
        if event.finished:
            return events


@pytest.mark.unit
class TestExtractionWorker:

    def test_zip_fallback_when_seven_zip_missing(self, tmp_path):
        archive = tmp_path / "app.zip"
        archive.write_bytes(build_zip({
            "app-1.0/app.exe": "x",
            "app-1.0/conf/app.conf": "y",
        }))
        dest = tmp_path / "out"

        worker = ExtractionWorker(archive, dest, seven_zip_path=str(tmp_path / "no-7z"))
        worker.start()
        events = drain(worker)
        worker.join(timeout=5)

        types = [e.type for e in events]
        assert types[0] is ExtractEventType.WARNING
        assert "7-Zip failed" in events[0].message
        assert ExtractEventType.START in types
        assert types[-1] is ExtractEventType.COMPLETE
        assert events[-1].log_detail == "Extraction completed"

        progress = [e for e in events if e.type is ExtractEventType.PROGRESS]
        assert progress[-1].extracted_count == progress[-1].total_entries == 2
        assert (dest / "app-1.0" / "app.exe").read_text() == "x"

    def test_tar_fallback(self, tmp_path):
        archive = tmp_path / "app.tar.gz"
        with tarfile.open(archive, "w:gz") as tf:
            data = b"redis"
            info = tarfile.TarInfo("redis-8.2.2/redis-server.exe")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))

        worker = ExtractionWorker(archive, tmp_path / "out", seven_zip_path=str(tmp_path / "no-7z"))
        worker.start()
        events = drain(worker)

        assert events[-1].type is ExtractEventType.COMPLETE
        assert (tmp_path / "out" / "redis-8.2.2" / "redis-server.exe").read_bytes() == b"redis"

    def test_unsupported_archive(self, tmp_path):
        archive = tmp_path / "app.zip"
        archive.write_bytes(b"definitely not an archive")

        worker = ExtractionWorker(archive, tmp_path / "out", seven_zip_path=str(tmp_path / "no-7z"))
        worker.start()
        events = drain(worker)

        assert events[-1].type is ExtractEventType.ERROR
        assert events[-1].message == "Unsupported archive format"

    def test_terminate_before_start(self, tmp_path):
        archive = tmp_path / "app.zip"
        archive.write_bytes(build_zip({"a.txt": "a"}))

        worker = ExtractionWorker(archive, tmp_path / "out", seven_zip_path=str(tmp_path / "no-7z"))
        worker.terminate()
        worker.start()
        events = drain(worker)

        assert events[-1].type is ExtractEventType.ERROR
        assert events[-1].message == "Extraction terminated"
        assert not (tmp_path / "out" / "a.txt").exists()

    def test_seven_zip_progress_is_parsed(self, tmp_path):
        archive = tmp_path / "app.zip"
        archive.write_bytes(b"")
        fake_7z = tmp_path / "7z"
        fake_7z.write_text("")

        child = MagicMock()
        child.stdout.read1.side_effect = [b"  10% 3 - a\r", b" 55% 9\r 80%", b"100%\n", b""]
        child.wait.return_value = 0
        child.poll.return_value = 0

        with patch("store.extractor.subprocess.Popen", return_value=child) as popen:
            worker = ExtractionWorker(archive, tmp_path / "out", seven_zip_path=str(fake_7z))
            worker.run()

        args = popen.call_args[0][0]
        assert args[:3] == [str(fake_7z), "x", str(archive)]
        assert f"-o{tmp_path / 'out'}" in args
        assert popen.call_args[1]["stderr"] is subprocess.STDOUT

        events = []
        while not worker.events.empty():
            events.append(worker.events.get_nowait())
        percents = [e.extracted_count for e in events if e.type is ExtractEventType.PROGRESS]
        assert percents == [10, 80, 100]
        assert events[-1].type is ExtractEventType.COMPLETE

    def test_seven_zip_failure_falls_back_with_its_output(self, tmp_path):
        archive = tmp_path / "app.zip"
        archive.write_bytes(build_zip({"app-1.0/app.exe": "x"}))
        fake_7z = tmp_path / "7z"
        fake_7z.write_text("")

        child = MagicMock()
        child.stdout.read1.side_effect = [
            b"  10% 1 - app.exe\r",
            b"ERROR: Data Error : app-1.0/app.exe\r\n",
            b"Sub items Errors: 1\r\n",
            b"",
        ]
        child.wait.return_value = 2
        child.poll.return_value = 2

        with patch("store.extractor.subprocess.Popen", return_value=child):
            worker = ExtractionWorker(archive, tmp_path / "out", seven_zip_path=str(fake_7z))
            worker.run()

        events = []
        while not worker.events.empty():
            events.append(worker.events.get_nowait())
        warning = next(e for e in events if e.type is ExtractEventType.WARNING)
        assert warning.message == (
            "7-Zip failed (7-Zip exited with code 2. "
            "ERROR: Data Error : app-1.0/app.exe Sub items Errors: 1)..."
        )
        assert events[-1].type is ExtractEventType.COMPLETE
        assert (tmp_path / "out" / "app-1.0" / "app.exe").read_text() == "x"

    def test_find_seven_zip_explicit_missing(self, tmp_path):
        assert find_seven_zip(str(tmp_path / "7z.exe")) is None


@pytest.mark.unit
class TestLocator:

    @pytest.mark.parametrize("relative,target,expected", [
        ("nginx-1.28.1/nginx.exe", "nginx.exe", True),
        ("mysql-8.4.7-winx64/bin/mysqld.exe", "bin/mysqld.exe", True),
        ("MySQL-8.4.7/BIN/MYSQLD.EXE", "bin/mysqld.exe", True),
        ("nvm/author-nvm.exe", "nvm.exe", False),
        ("nvm/bin/nvm.exe", "nvm.exe", True),
        ("mysql/lib/mysqld.exe", "bin/mysqld.exe", False),
        ("nginx.exe", "nginx.exe", True),
    ])
    def test_matches_target(self, relative, target, expected):
        assert matches_target(relative, target) is expected

    def test_boundary_rejects_prefix_match(self, tmp_path):
        (tmp_path / "author-nvm.exe").write_text("")
        (tmp_path / "bin").mkdir()
        (tmp_path / "bin" / "nvm.exe").write_text("")

        assert find_executable(tmp_path, "nvm.exe") == tmp_path / "bin" / "nvm.exe"

    def test_nested_target(self, tmp_path):
        bin_dir = tmp_path / "mariadb-11.4.9-winx64" / "bin"
        bin_dir.mkdir(parents=True)
        (bin_dir / "mysqld.exe").write_text("")
        (tmp_path / "mariadb-11.4.9-winx64" / "mysqld.exe").write_text("")

        found = find_executable(tmp_path, "bin/mysqld.exe")
        assert found == bin_dir / "mysqld.exe"

    def test_first_match_is_deterministic(self, tmp_path):
        for sub in ("b", "a"):
            (tmp_path / sub).mkdir()
            (tmp_path / sub / "php.exe").write_text("")

        assert find_executable(tmp_path, "php.exe") == tmp_path / "a" / "php.exe"

    def test_not_found(self, tmp_path):
        assert find_executable(tmp_path, "redis-server.exe") is None
        assert find_executable(tmp_path, None) is None

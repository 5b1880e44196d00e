"""
Extraction Worker - Unpacks a downloaded archive off the pipeline's thread.

Events are posted to a queue the pipeline drains:

    start     total_entries known (0 when the external tool is used)
    progress  extracted_count / total_entries
    warning   a non-fatal problem (7-Zip unavailable, one entry failed)
    complete  everything is on disk
    error     extraction failed or was terminated

The external 7-Zip binary is preferred. When it is missing or exits non-zero
the archive is read in-process with zipfile/tarfile, entry by entry.
"""

from __future__ import annotations

import logging
import queue
import re
import shutil
import subprocess
import tarfile
import threading
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from common.exceptions import ArchiveError

logger = logging.getLogger(__name__)

SEVEN_ZIP_NAMES = ("7z", "7za", "7zz")
PERCENT_RE = re.compile(r"\s*(\d+)%")
FALLBACK_REPORT_STEP = 5
OUTPUT_TAIL_BYTES = 4096
OUTPUT_TAIL_LINES = 3

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")


class ExtractEventType(Enum):
    START = "start"
    PROGRESS = "progress"
    WARNING = "warning"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ExtractEvent:
    """A message from the worker."""
    type: ExtractEventType
    extracted_count: int = 0
    total_entries: int = 0
    message: str = ""
    log_detail: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.type in (ExtractEventType.COMPLETE, ExtractEventType.ERROR)


class _Terminated(Exception):
    pass


def find_seven_zip(explicit: Optional[str] = None) -> Optional[str]:
    """Locate a 7-Zip binary: the configured path, else the first one on PATH."""
    if explicit:
        return explicit if Path(explicit).is_file() else None
    for name in SEVEN_ZIP_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return None


def _reason(error: ArchiveError) -> str:
    """The cause without the "Failed to extract <archive>" prefix."""
    return error.details.get("reason", error.message)


def _last_lines(output: bytes) -> str:
    """Trailing non-progress lines of 7-Zip output, joined on one line."""
    lines = re.split(r"[\r\n]+", output.decode("utf-8", errors="replace"))
    lines = [line.strip() for line in lines if line.strip() and not PERCENT_RE.match(line)]
    return " ".join(lines[-OUTPUT_TAIL_LINES:])


def _is_tar(path: Path) -> bool:
    name = path.name.lower()
    return any(name.endswith(suffix) for suffix in TAR_SUFFIXES)


class ExtractionWorker(threading.Thread):
    """
    Extract one archive into a directory on a daemon thread.

    Example:
        worker = ExtractionWorker(archive, dest)
        worker.start()
        while True:
            event = worker.events.get()
            ...
            if event.finished:
                break
    """

    def __init__(
        self,
        archive_path: Union[str, Path],
        dest_dir: Union[str, Path],
        seven_zip_path: Optional[str] = None,
    ):
        super().__init__(name=f"extract-{Path(archive_path).name}", daemon=True)
        self.archive_path = Path(archive_path)
        self.dest_dir = Path(dest_dir)
        self.seven_zip_path = seven_zip_path
        self.events: "queue.Queue[ExtractEvent]" = queue.Queue()

        self._stop_event = threading.Event()
        self._child: Optional[subprocess.Popen] = None
        self._child_lock = threading.Lock()

    @property
    def terminated(self) -> bool:
        return self._stop_event.is_set()

    def terminate(self) -> None:
        """Stop extracting as soon as possible; kills a running 7-Zip."""
        self._stop_event.set()
        with self._child_lock:
            if self._child is not None and self._child.poll() is None:
                logger.debug(f"Killing 7-Zip for {self.archive_path.name}")
                self._child.kill()

    def _post(self, event_type: ExtractEventType, **kwargs) -> None:
        self.events.put(ExtractEvent(type=event_type, **kwargs))

    def _check_stop(self) -> None:
        if self._stop_event.is_set():
            raise _Terminated()

    def run(self) -> None:
        try:
            try:
                self._extract_with_seven_zip()
            except ArchiveError as e:
                self._check_stop()
                logger.warning(f"7-Zip extraction failed: {_reason(e)}")
                self._post(ExtractEventType.WARNING, message=f"7-Zip failed ({_reason(e)})...")
                self._extract_in_process()

            self._check_stop()
            self._post(
                ExtractEventType.COMPLETE,
                extracted_count=100, total_entries=100,
                log_detail="Extraction completed",
            )
        except _Terminated:
            logger.info(f"Extraction of {self.archive_path.name} terminated")
            self._post(ExtractEventType.ERROR, message="Extraction terminated")
        except ArchiveError as e:
            logger.error(f"Extraction failed: {e}")
            self._post(ExtractEventType.ERROR, message=_reason(e))
        except Exception as e:
            logger.exception(f"Unexpected extraction failure: {e}")
            self._post(ExtractEventType.ERROR, message=str(e))

    # External tool

    def _extract_with_seven_zip(self) -> None:
        exe = find_seven_zip(self.seven_zip_path)
        if not exe:
            raise ArchiveError(
                str(self.archive_path),
                f"7-Zip not found at {self.seven_zip_path or 'PATH'}",
            )

        self._post(ExtractEventType.START, total_entries=0)
        args = [exe, "x", str(self.archive_path), f"-o{self.dest_dir}", "-y", "-bsp1"]

        try:
            with self._child_lock:
                self._check_stop()
                # One pipe, so a chatty stderr cannot fill up while stdout is read
                self._child = subprocess.Popen(
                    args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT
                )
        except OSError as e:
            raise ArchiveError(str(self.archive_path), f"Failed to start 7-Zip: {e}", cause=e)

        child = self._child
        last_percent = 0
        output = b""
        while True:
            chunk = child.stdout.read1(4096)
            if not chunk:
                break
            output = (output + chunk)[-OUTPUT_TAIL_BYTES:]
            found = PERCENT_RE.findall(chunk.decode("utf-8", errors="replace"))
            if not found:
                continue
            percent = max(int(p) for p in found)
            if percent > last_percent:
                last_percent = percent
                self._post(
                    ExtractEventType.PROGRESS,
                    extracted_count=percent, total_entries=100,
                    log_detail=f"Extracting... {percent}%",
                )

        code = child.wait()
        child.stdout.close()
        with self._child_lock:
            self._child = None

        self._check_stop()
        if code != 0:
            raise ArchiveError(
                str(self.archive_path), f"7-Zip exited with code {code}. {_last_lines(output)}".strip()
            )

    # In-process fallback

    def _extract_in_process(self) -> None:
        self.dest_dir.mkdir(parents=True, exist_ok=True)
        if zipfile.is_zipfile(self.archive_path):
            self._extract_zip()
        elif _is_tar(self.archive_path) and tarfile.is_tarfile(self.archive_path):
            self._extract_tar()
        else:
            raise ArchiveError(str(self.archive_path), "Unsupported archive format")

    def _report(self, done: int, total: int, last_reported: int) -> int:
        percent = round(done / total * 100) if total else 100
        if percent >= last_reported + FALLBACK_REPORT_STEP or done == total:
            self._post(
                ExtractEventType.PROGRESS,
                extracted_count=done, total_entries=total,
                log_detail=f"Extracted {done} / {total} files",
            )
            return percent
        return last_reported

    def _extract_zip(self) -> None:
        try:
            archive = zipfile.ZipFile(self.archive_path)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(str(self.archive_path), str(e), cause=e)

        with archive:
            entries = archive.infolist()
            total = len(entries)
            self._post(ExtractEventType.START, total_entries=total)

            last_reported = 0
            for done, entry in enumerate(entries, start=1):
                self._check_stop()
                try:
                    archive.extract(entry, self.dest_dir)
                except (OSError, zipfile.BadZipFile, ValueError) as e:
                    logger.warning(f"Failed to extract {entry.filename}: {e}")
                    self._post(
                        ExtractEventType.WARNING,
                        message=f"Failed to extract {entry.filename}: {e}",
                    )
                last_reported = self._report(done, total, last_reported)

    def _extract_tar(self) -> None:
        try:
            archive = tarfile.open(self.archive_path)
        except (OSError, tarfile.TarError) as e:
            raise ArchiveError(str(self.archive_path), str(e), cause=e)

        with archive:
            members = archive.getmembers()
            total = len(members)
            self._post(ExtractEventType.START, total_entries=total)

            last_reported = 0
            for done, member in enumerate(members, start=1):
                self._check_stop()
                try:
                    archive.extract(member, self.dest_dir, filter="data")
                except (OSError, tarfile.TarError) as e:
                    logger.warning(f"Failed to extract {member.name}: {e}")
                    self._post(
                        ExtractEventType.WARNING,
                        message=f"Failed to extract {member.name}: {e}",
                    )
                last_reported = self._report(done, total, last_reported)

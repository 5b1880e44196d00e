"""
Log files written by the servers themselves (error.log, mysqld.err, ...).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from common.exceptions import FilesystemError, ValidationError

logger = logging.getLogger(__name__)

LOG_SUFFIXES = (".log", ".err")
MAX_READ_BYTES = 500 * 1024
TRUNCATED_MARKER = f"... (showing last {MAX_READ_BYTES // 1024}KB) ...\n\n"


def candidate_log_dirs(install_path: Path, exec_path: Optional[Path]) -> List[Path]:
    """Where server logs usually end up, most likely first."""
    dirs = [install_path / "logs", install_path / "log"]
    if exec_path is not None:
        dirs += [exec_path.parent / "logs", exec_path.parent / "log"]
    dirs.append(install_path / "data")
    return dirs


def find_log_dir(install_path: Path, exec_path: Optional[Path]) -> Optional[Path]:
    for directory in candidate_log_dirs(install_path, exec_path):
        if directory.is_dir():
            return directory
    return None


def list_log_files(log_dir: Optional[Path]) -> List[Path]:
    if log_dir is None:
        return []
    return sorted(p for p in log_dir.iterdir() if p.is_file() and p.suffix in LOG_SUFFIXES)


def _checked_name(filename: str) -> str:
    if Path(filename).name != filename or filename in ("", ".", ".."):
        raise ValidationError(f"Invalid filename: {filename}", code="INVALID_FILENAME")
    return filename


def locate_log_file(install_path: Path, exec_path: Optional[Path], filename: str) -> Optional[Path]:
    """First candidate directory holding filename; plain names only."""
    name = _checked_name(filename)
    for directory in candidate_log_dirs(install_path, exec_path):
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def read_tail(path: Path, max_bytes: int = MAX_READ_BYTES) -> str:
    """File content, or its last max_bytes with a marker when larger."""
    try:
        size = path.stat().st_size
        with open(path, "rb") as f:
            if size > max_bytes:
                f.seek(size - max_bytes)
                return TRUNCATED_MARKER + f.read().decode("utf-8", errors="replace")
            return f.read().decode("utf-8", errors="replace")
    except OSError as e:
        raise FilesystemError(str(path), str(e), cause=e)


def truncate(path: Path) -> None:
    try:
        with open(path, "w", encoding="utf-8"):
            pass
    except OSError as e:
        raise FilesystemError(str(path), str(e), cause=e)
    logger.info(f"Cleared log file {path}")

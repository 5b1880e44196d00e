"""
Filesystem helpers for DevStack.

Atomic writes use the write-to-temp-then-rename pattern; removals used during
cleanup are best-effort and report rather than raise.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Iterator, Union

from common.decorators import retry

logger = logging.getLogger(__name__)

# Windows keeps files locked briefly after a process exits
_RETRYABLE_ERRNOS = (errno.EACCES, errno.EBUSY, errno.EPERM, errno.ENOTEMPTY)


def atomic_write_text(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """
    Write text content to file atomically.

    Args:
        path: Destination file path
        content: Text content to write
        mode: File permissions (default 0o644)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory so the rename stays on one filesystem
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, path)

    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_json(
    path: Union[str, Path],
    data: Any,
    indent: int = 2,
    mode: int = 0o644,
) -> None:
    """
    Write JSON data to file atomically.

    Args:
        path: Destination file path
        data: JSON-serializable data
        indent: JSON indentation (default 2)
        mode: File permissions (default 0o644)
    """
    content = json.dumps(data, indent=indent, ensure_ascii=False)
    atomic_write_text(path, content + '\n', mode)


def iter_files(root: Union[str, Path]) -> Iterator[Path]:
    """
    Yield every file below root, depth-first, entries in sorted order.

    A subdirectory is descended into at the point it appears in the listing,
    so the walk order is stable across platforms.
    """
    root = Path(root)
    try:
        entries = sorted(os.scandir(root), key=lambda e: e.name)
    except OSError as e:
        logger.debug(f"Cannot list {root}: {e}")
        return

    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from iter_files(entry.path)
        elif entry.is_file():
            yield Path(entry.path)


def find_by_name(root: Union[str, Path], name: str) -> Iterator[Path]:
    """Yield files below root whose basename equals name (case-insensitive)."""
    wanted = name.lower()
    for path in iter_files(root):
        if path.name.lower() == wanted:
            yield path


def remove_file(path: Union[str, Path, None]) -> bool:
    """Delete a file if present. Failures are logged, never raised."""
    if not path:
        return False
    path = Path(path)
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False


def _is_retryable(exc: OSError) -> bool:
    return isinstance(exc, PermissionError) or exc.errno in _RETRYABLE_ERRNOS


class _RetryableRemoval(Exception):
    def __init__(self, cause: OSError):
        super().__init__(str(cause))
        self.cause = cause


def remove_tree(
    path: Union[str, Path, None],
    max_attempts: int = 1,
    delay: float = 1.0,
) -> bool:
    """
    Recursively delete a directory.

    Args:
        path: Directory to remove (missing is fine)
        max_attempts: Attempts for locked/busy trees
        delay: Seconds between attempts

    Returns:
        True if the directory is gone afterwards.
    """
    if not path:
        return True
    path = Path(path)

    @retry(max_attempts=max_attempts, delay=delay, backoff=1.0, exceptions=(_RetryableRemoval,))
    def _remove():
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as e:
            if _is_retryable(e):
                raise _RetryableRemoval(e)
            raise

    try:
        _remove()
    except _RetryableRemoval as e:
        logger.warning(f"Failed to remove {path}: {e.cause}")
        return False
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
        return False

    return not path.exists()


def to_forward_slashes(path: Union[str, Path]) -> str:
    """Config files for Windows builds of nginx/httpd want forward slashes."""
    return str(path).replace("\\", "/")

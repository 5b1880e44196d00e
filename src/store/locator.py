"""
Locate installed executables inside an extracted archive.

Archives rarely agree on layout (``nginx-1.28.1/nginx.exe``,
``mysql-8.4.0-winx64/bin/mysqld.exe``), so the install root is searched for
the catalog's target path.
"""

import logging
from pathlib import Path
from typing import Optional, Union

from utils.fs_ops import find_by_name

logger = logging.getLogger(__name__)


def normalize_target(target: str) -> str:
    """Lower-case, forward slashes, no leading ./ or /."""
    target = target.replace("\\", "/").strip().lower()
    while target.startswith("./"):
        target = target[2:]
    return target.lstrip("/")


def matches_target(relative_path: str, target: str) -> bool:
    """
    Whether a root-relative path satisfies a target path suffix.

    The path must end with the target and the match must start on a path
    component boundary: ``bin/nvm.exe`` matches ``nvm.exe`` but
    ``author-nvm.exe`` does not.
    """
    path = normalize_target(relative_path)
    wanted = normalize_target(target)
    if not wanted or not path.endswith(wanted):
        return False
    start = len(path) - len(wanted)
    return start == 0 or path[start - 1] == "/"


def find_executable(root: Union[str, Path], target: Optional[str]) -> Optional[Path]:
    """
    Find the first file below root matching target.

    Entries are visited depth-first in sorted order, so the result is the
    same on every platform.

    Args:
        root: Install directory
        target: Catalog target such as "bin/mysqld.exe" or "nginx.exe"

    Returns:
        Absolute path of the match, or None.
    """
    if not target:
        return None

    root = Path(root)
    basename = normalize_target(target).rsplit("/", 1)[-1]

    for candidate in find_by_name(root, basename):
        relative = candidate.relative_to(root).as_posix()
        if matches_target(relative, target):
            logger.debug(f"Located {target} at {candidate}")
            return candidate

    logger.debug(f"{target} not found under {root}")
    return None

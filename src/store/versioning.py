"""
Dotted-numeric version comparison and filename version extraction.
"""

from __future__ import annotations

import functools
import re
from typing import List, Optional, Pattern, Tuple


def _components(version: str) -> List[int]:
    parts = []
    for piece in version.strip().split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            parts.append(0)
    return parts


def compare_versions(a: str, b: str) -> int:
    """
    Compare two dotted version strings.

    Missing trailing components count as 0 and the first differing component
    decides, so "2.0" == "2.0.0" and "1.9.0" < "1.10.0".

    Returns:
        -1, 0 or 1
    """
    parts_a = _components(a)
    parts_b = _components(b)
    width = max(len(parts_a), len(parts_b))

    for i in range(width):
        num_a = parts_a[i] if i < len(parts_a) else 0
        num_b = parts_b[i] if i < len(parts_b) else 0
        if num_a > num_b:
            return 1
        if num_a < num_b:
            return -1
    return 0


version_key = functools.cmp_to_key(compare_versions)


# Per-app filename patterns; ids ending in "*" match by prefix
VERSION_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("nginx", re.compile(r"nginx-(\d+\.\d+\.\d+)", re.IGNORECASE)),
    ("apache", re.compile(r"httpd-(\d+\.\d+\.\d+)", re.IGNORECASE)),
    # Must precede the php prefix
    ("phpmyadmin", re.compile(r"phpMyAdmin-(\d+\.\d+\.\d+)", re.IGNORECASE)),
    ("php*", re.compile(r"php-(\d+\.\d+\.\d+)", re.IGNORECASE)),
    ("redis", re.compile(r"redis-windows-(\d+\.\d+\.\d+)", re.IGNORECASE)),
    ("mysql", re.compile(r"mysql-(\d+\.\d+\.\d+)", re.IGNORECASE)),
    ("mariadb", re.compile(r"mariadb-(\d+\.\d+\.\d+)", re.IGNORECASE)),
    ("postgresql", re.compile(r"postgresql-(\d+\.\d+(?:\.\d+)?)", re.IGNORECASE)),
]

GENERIC_PATTERN = re.compile(r"(\d+\.\d+\.\d+)")


def _pattern_for(app_id: str) -> Pattern[str]:
    for key, pattern in VERSION_PATTERNS:
        if key.endswith("*"):
            if app_id.startswith(key[:-1]):
                return pattern
        elif app_id == key:
            return pattern
    return GENERIC_PATTERN


def extract_version(filename: str, app_id: str) -> Optional[str]:
    """
    Pull the version out of an archive filename.

    Args:
        filename: Archive name, e.g. "nginx-1.28.1.zip"
        app_id: Lower-case app id selecting the pattern

    Returns:
        The version string, or None when nothing matches.
    """
    match = _pattern_for(app_id.lower()).search(filename)
    return match.group(1) if match else None


def short_version(version: str) -> Optional[str]:
    """Major.minor part of a version ("8.2.30" -> "8.2")."""
    match = re.match(r"^(\d+\.\d+)", version or "")
    return match.group(1) if match else None

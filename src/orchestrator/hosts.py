"""
Hosts file editing.

Uninstalling a web server purges the domains of its sites from the system
hosts file. The orchestrator only depends on the HostsEditor protocol.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from utils.fs_ops import atomic_write_text

logger = logging.getLogger(__name__)

if os.name == "nt":
    HOSTS_PATH = Path(os.environ.get("SystemRoot", r"C:\Windows")) / "System32/drivers/etc/hosts"
else:
    HOSTS_PATH = Path("/etc/hosts")


@runtime_checkable
class HostsEditor(Protocol):
    """Anything that can drop domains from name resolution."""

    def remove_domains(self, domains: List[str]) -> bool:
        ...


def strip_domains(content: str, domains: Iterable[str]) -> str:
    """
    Remove domains from hosts file content.

    A line loses only the matching host names; it disappears when none are
    left. Comments and blank lines are kept as they are.
    """
    targets = {d.lower() for d in domains}
    kept = []
    for line in content.splitlines():
        body, sep, comment = line.partition("#")
        fields = body.split()
        if len(fields) < 2 or not targets.intersection(f.lower() for f in fields[1:]):
            kept.append(line)
            continue

        names = [f for f in fields[1:] if f.lower() not in targets]
        if names:
            rebuilt = " ".join([fields[0]] + names)
            kept.append(f"{rebuilt} {sep}{comment}" if sep else rebuilt)

    result = "\n".join(kept)
    return result + "\n" if content.endswith("\n") and kept else result


class HostsFileEditor:
    """Edits a hosts file in place; writing usually needs elevated rights."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else HOSTS_PATH

    def remove_domains(self, domains: List[str]) -> bool:
        if not domains:
            return True

        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.warning(f"Hosts file not found: {self.path}")
            return False
        except OSError as e:
            logger.error(f"Failed to read hosts file: {e}")
            return False

        updated = strip_domains(content, domains)
        if updated == content:
            return True

        try:
            atomic_write_text(self.path, updated)
        except OSError as e:
            logger.error(f"Failed to write hosts file {self.path}: {e}")
            return False

        logger.info(f"Removed {len(domains)} domain(s) from {self.path}")
        return True

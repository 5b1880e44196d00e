"""
OS process helpers built on psutil.

Name-based lookups match on the executable basename, case-insensitively,
and may see instances this supervisor did not start.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Union

import psutil

logger = logging.getLogger(__name__)

# A quoted segment or a run of non-space characters
ARG_RE = re.compile(r'"([^"]+)"|([^\s]+)')


def parse_args(args: str) -> List[str]:
    """
    Split an argument string, keeping quoted segments together.

    >>> parse_args('-c "C:/My Server/conf" -p 80')
    ['-c', 'C:/My Server/conf', '-p', '80']
    """
    if not args:
        return []
    return [quoted or bare.strip('"') for quoted, bare in ARG_RE.findall(args)]


def is_alive(pid: int) -> bool:
    """Zero-signal style probe: does a live process with this pid exist?"""
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def _exe_name(exec_path: Union[str, Path]) -> str:
    return Path(str(exec_path).replace("\\", "/")).name.lower()


def find_processes_by_name(exec_path: Union[str, Path]) -> List[psutil.Process]:
    """All processes whose name equals the executable's basename."""
    wanted = _exe_name(exec_path)
    found = []
    for proc in psutil.process_iter(attrs=["name"]):
        name = (proc.info.get("name") or "").lower()
        if name == wanted:
            found.append(proc)
    return found


def is_running_by_name(exec_path: Union[str, Path]) -> bool:
    return bool(find_processes_by_name(exec_path))


def terminate_processes(procs: List[psutil.Process], timeout: float = 3.0) -> int:
    """
    Terminate, wait, then kill survivors.

    Returns:
        Number of processes that were signalled.
    """
    signalled = []
    for proc in procs:
        try:
            proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot terminate pid {proc.pid}: {e}")

    _, alive = psutil.wait_procs(signalled, timeout=timeout)
    for proc in alive:
        try:
            logger.debug(f"Killing pid {proc.pid}")
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot kill pid {proc.pid}: {e}")
    if alive:
        psutil.wait_procs(alive, timeout=timeout)

    return len(signalled)


def terminate_tree(pid: int, timeout: float = 3.0) -> bool:
    """
    Stop a process and all of its descendants.

    Returns:
        True if the root process existed.
    """
    try:
        root = psutil.Process(pid)
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        return False

    terminate_processes(children + [root], timeout=timeout)
    return True


def kill_by_name(exec_path: Union[str, Path], timeout: float = 3.0) -> int:
    """
    Sweep for instances of an executable and stop them.

    Returns:
        Number of processes found.
    """
    procs = find_processes_by_name(exec_path)
    if procs:
        terminate_processes(procs, timeout=timeout)
        logger.info(f"Force killed {len(procs)} x {_exe_name(exec_path)}")
    return len(procs)

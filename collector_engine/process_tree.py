"""
Process tree traversal over a /proc-style process table.

The table is scanned once per call into a parent -> children index, and
descendants are then collected breadth-first from that index, so deep
trees cost one scan instead of one scan per visited process.
"""

import logging
from collections import deque
from typing import Dict, List, Optional, Set

import psutil

logger = logging.getLogger(__name__)

DEFAULT_PROC_PATH = "/proc"

ChildrenIndex = Dict[int, List[int]]


def read_parent_pid(pid: int) -> Optional[int]:
    """Read a process's parent PID; None when it exited or cannot be read."""
    try:
        return psutil.Process(pid).ppid()
    except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
        return None
    except (OSError, ValueError, IndexError) as e:
        # Truncated or malformed stat entry
        logger.debug(f"Skipping process {pid}: {e}")
        return None


def scan_process_table(proc_path: str = DEFAULT_PROC_PATH) -> Optional[ChildrenIndex]:
    """
    Build a parent PID -> child PIDs index of every process in the table.

    proc_path is handed to psutil as its procfs root, so a host table
    mounted elsewhere can be read. Returns None when the table root itself
    cannot be listed.
    """
    saved_path = psutil.PROCFS_PATH
    psutil.PROCFS_PATH = proc_path
    try:
        try:
            pids = psutil.pids()
        except (OSError, IndexError) as e:
            logger.debug(f"Cannot read process table at {proc_path}: {e}")
            return None

        children: ChildrenIndex = {}
        for pid in pids:
            ppid = read_parent_pid(pid)
            if ppid is None:
                continue
            children.setdefault(ppid, []).append(pid)
        return children
    finally:
        psutil.PROCFS_PATH = saved_path


def collect_descendants(root_pid: int, children: ChildrenIndex) -> Set[int]:
    """Breadth-first closure of root_pid over a children index, root included."""
    visited: Set[int] = {root_pid}
    queue = deque([root_pid])

    while queue:
        current = queue.popleft()
        for child in children.get(current, ()):
            if child not in visited:
                visited.add(child)
                queue.append(child)

    return visited


def discover_descendants(root_pid: int, proc_path: str = DEFAULT_PROC_PATH) -> Set[int]:
    """
    Return root_pid and every PID transitively spawned by it.

    An unreadable process table yields an empty set.
    """
    children = scan_process_table(proc_path)
    if children is None:
        return set()
    return collect_descendants(root_pid, children)

"""
Shared helpers for collector-engine.
"""

import logging
import os
import re
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

HOST_HOSTNAME_FILE = "/host/proc/sys/kernel/hostname"

# One plain path component, e.g. 2025-07-25T10:00:00.123+00:00
VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:+-]*\Z")


def latest_version(versions_dir: Path) -> Optional[str]:
    """
    Return the name of the latest configuration version directory.

    Versions are ISO-8601-like timestamps from the control plane, so the
    lexical maximum of the directory names is taken as the latest. A
    directory whose name is not timestamp-shaped can sort above real
    versions; every caller goes through this function so a stricter
    comparison only needs to change here.
    """
    return latest_directory(versions_dir, name_only=True)


def latest_directory(base_dir: Path, name_only: bool = False) -> Optional[str]:
    """Return the lexically greatest subdirectory of base_dir (path or name)."""
    base_dir = Path(base_dir)
    if not base_dir.is_dir():
        return None

    dirs = sorted(p for p in base_dir.iterdir() if p.is_dir())
    if not dirs:
        return None
    return dirs[-1].name if name_only else str(dirs[-1])


def hostname(host_hostname_file: str = HOST_HOSTNAME_FILE) -> str:
    """
    Resolve the host identity reported to the control plane.

    HOSTNAME from the environment wins, then the host's kernel hostname
    when /proc of the host is mounted (Kubernetes hostPath), then the
    container's own hostname.
    """
    env_hostname = os.getenv("HOSTNAME")
    if env_hostname:
        return env_hostname

    host_file = Path(host_hostname_file)
    if host_file.exists():
        try:
            value = host_file.read_text().strip()
            if value:
                return value
        except OSError as e:
            logger.debug(f"Could not read {host_file}: {e}")

    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def unsafe_filename_reason(filename: Optional[str]) -> Optional[str]:
    """
    Check a manifest destination filename.

    Returns a reason when the name is empty, absolute, contains a parent
    directory reference, or uses backslash separators; None when safe.
    """
    if filename is None or not str(filename).strip():
        return "empty filename"
    if "\\" in filename:
        return "backslash path separator"
    if filename.startswith("/") or os.path.isabs(filename) or (len(filename) > 1 and filename[1] == ":"):
        return "absolute path"
    if ".." in filename:
        return "parent directory reference"
    if "\x00" in filename:
        return "NUL byte"
    return None


def unsafe_version_reason(version: Optional[str]) -> Optional[str]:
    """Check a configuration version before it is used as a directory name."""
    if not version:
        return "empty version"
    if not VERSION_PATTERN.match(version) or ".." in version:
        return "not a plain directory name"
    return None


def is_within(path: Path, directory: Path) -> bool:
    """True when path resolves to a location inside directory."""
    try:
        path.resolve().relative_to(directory.resolve())
        return True
    except ValueError:
        return False


def utc_timestamp(precise: bool = False) -> str:
    """Timestamp used for generated directory names."""
    now = datetime.now(timezone.utc)
    if precise:
        return now.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return now.strftime("%Y-%m-%dT%H:%M:%S")

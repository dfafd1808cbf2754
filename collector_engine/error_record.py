"""
Last-known-failure record.

A single message persisted to ``errors.txt`` in the working directory.
It is overwritten on each failure, removed on the next success, sent with
every ping, and polled by the container health check.
"""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ERROR_FILENAME = "errors.txt"


class ErrorRecord:
    """Reads, writes and clears the error file."""

    def __init__(self, working_dir: str):
        self.path = Path(working_dir) / ERROR_FILENAME

    def read(self) -> Optional[str]:
        """Return the recorded message, or None when nothing is recorded."""
        if not self.path.exists():
            return None
        message = self.path.read_text(encoding="utf-8", errors="replace").strip()
        return message or None

    def write(self, message: str) -> None:
        """Record a failure, replacing any previous one."""
        logger.error(f"Error: {message}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{ERROR_FILENAME}.tmp")
        tmp_path.write_text(message, encoding="utf-8")
        os.replace(tmp_path, self.path)

    def clear(self) -> None:
        """Forget the recorded failure."""
        try:
            self.path.unlink()
            logger.info("Cleared recorded error")
        except FileNotFoundError:
            pass

    def exists(self) -> bool:
        return self.path.exists()

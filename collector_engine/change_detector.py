"""
Content-hash change detection for enrichment files.
"""

import asyncio
import hashlib
import logging
import signal
from pathlib import Path
from typing import Optional

from collector_engine.protocols import ShipperController

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def file_hash(path: Path) -> str:
    """SHA-256 of a file's raw bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def check_for_changes(path: Path) -> Optional[str]:
    """
    Return the content hash of path, or None when it does not exist.

    Stateless: callers compare successive results themselves. Writers
    replace the file by rename, so the hash is always taken over a
    complete file.
    """
    path = Path(path)
    try:
        return file_hash(path)
    except FileNotFoundError:
        return None


class EnrichmentWatcher:
    """Reloads the shipper whenever a watched file's content changes."""

    def __init__(
        self,
        path: str,
        controller: ShipperController,
        interval: float = 15,
    ) -> None:
        self.path = Path(path)
        self.controller = controller
        self.interval = interval
        self.last_hash: Optional[str] = None
        self._stop_event: Optional[asyncio.Event] = None

    def check(self) -> bool:
        """
        Compare the current hash with the last one seen.

        The first observation is only stored. Returns True when the
        shipper was asked to reload.
        """
        new_hash = check_for_changes(self.path)
        if new_hash is None or new_hash == self.last_hash:
            return False

        if self.last_hash is None:
            logger.info("First run, no previous hash - storing hash")
            self.last_hash = new_hash
            return False

        logger.info(f"{self.path} changed, reloading shipper")
        self.last_hash = new_hash
        self.controller.reload_shipper()
        return True

    def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

    async def run(self) -> None:
        logger.info(f"Watching {self.path} every {self.interval}s")
        self._stop_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                pass

        while not self._stop_event.is_set():
            self.check()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

"""
The collector's polling loop.

Every iteration promotes a changed containers enrichment table; every
``ping_every`` iterations the control plane is pinged as well.
"""

import asyncio
import logging
import signal
from typing import Optional

import httpx

from collector_engine.client import CollectorClient
from collector_engine.enrichment_tables import EnrichmentTable
from collector_engine.error_record import ErrorRecord
from collector_engine.exceptions import AuthenticationError
from collector_engine.protocols import ShipperController

logger = logging.getLogger(__name__)


class Updater:
    """Drives the fetch client and the containers table on a fixed interval."""

    def __init__(
        self,
        client: CollectorClient,
        containers_table: EnrichmentTable,
        controller: ShipperController,
        error_record: ErrorRecord,
        sleep_duration: float = 15,
        ping_every: int = 2,
    ) -> None:
        self.client = client
        self.containers_table = containers_table
        self.controller = controller
        self.error_record = error_record
        self.sleep_duration = sleep_duration
        self.ping_every = ping_every
        self.iteration = 1
        self._stop_event: Optional[asyncio.Event] = None

    def update_enrichment_table(self) -> bool:
        """Promote the incoming containers table if it changed and is valid."""
        if not self.containers_table.different():
            return False

        error = self.containers_table.validate()
        if error is not None:
            logger.error(f"Enrichment table validation failed: {error}")
            return False

        self.containers_table.promote()
        return True

    async def ping(self) -> bool:
        """
        Ping once, recording failures instead of raising.

        AuthenticationError is never caught here.
        """
        try:
            return await self.client.ping()
        except AuthenticationError:
            raise
        except httpx.HTTPError as e:
            logger.exception("Ping failed")
            self.error_record.write(f"Network error: {type(e).__name__}: {e}")
        except Exception as e:
            logger.exception("Unexpected error during ping")
            self.error_record.write(f"Unexpected error: {type(e).__name__}: {e}")
        return False

    async def run_iteration(self) -> None:
        table_promoted = self.update_enrichment_table()

        config_changed = False
        if self.iteration % self.ping_every == 0:
            self.iteration = 0
            logger.debug("Starting ping")
            config_changed = await self.ping()

        # promotion of a new configuration already reloaded the shipper
        if table_promoted and not config_changed:
            self.controller.reload_shipper()

        self.iteration += 1

    def stop(self) -> None:
        logger.info("Stopping updater")
        if self._stop_event:
            self._stop_event.set()

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM; an AuthenticationError ends the loop."""
        self._stop_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                pass

        logger.info(
            f"Updater started: sleeping {self.sleep_duration}s, pinging every {self.ping_every} iterations"
        )
        while not self._stop_event.is_set():
            await self.run_iteration()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.sleep_duration)
            except asyncio.TimeoutError:
                continue

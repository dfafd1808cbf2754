"""
CSV enrichment tables with a stage / validate / promote discipline.

Each table has an incoming file, written by a producer, and a target
file read by the shipper. The incoming file is only moved over the
target once its header matches the table's contract.
"""

import csv
import logging
import os
from pathlib import Path
from typing import List, Optional

from collector_engine.change_detector import check_for_changes

logger = logging.getLogger(__name__)


class EnrichmentTable:
    """Base class for enrichment tables."""

    table_name = "Enrichment table"
    headers: List[str] = []

    def __init__(self, target_path: str, incoming_path: str) -> None:
        self.target_path = Path(target_path)
        self.incoming_path = Path(incoming_path)

    def different(self) -> bool:
        """True when an incoming file exists and differs from the target."""
        if not self.incoming_path.parent.is_dir():
            return False
        if not self.incoming_path.exists():
            return False
        return check_for_changes(self.target_path) != check_for_changes(self.incoming_path)

    def validate(self) -> Optional[str]:
        """Return None when the incoming file is valid, otherwise the reason."""
        logger.info(f"Validating {self.table_name} at {self.incoming_path}")

        if not self.incoming_path.exists():
            return self._invalid(f"{self.table_name} not found at {self.incoming_path}")

        if self.incoming_path.stat().st_size == 0:
            return self._invalid(f"{self.table_name} is empty at {self.incoming_path}")

        return self.validate_content()

    def validate_content(self) -> Optional[str]:
        """Parse the whole file and compare the header row with the contract."""
        try:
            with open(self.incoming_path, newline="") as f:
                reader = csv.reader(f, strict=True)
                actual = next(reader, None)
                for _ in reader:
                    pass
        except csv.Error as e:
            return self._invalid(f"{self.table_name} is malformed: {e}")
        except UnicodeDecodeError as e:
            return self._invalid(f"{self.table_name} is not valid UTF-8: {e}")

        if actual != self.headers:
            got = ",".join(actual) if actual else "none"
            return self._invalid(
                f"{self.table_name} has invalid headers. "
                f"Expected: {','.join(self.headers)}, Got: {got}"
            )

        return None

    def promote(self) -> None:
        """Atomically move the incoming file over the target."""
        os.replace(self.incoming_path, self.target_path)
        logger.info(f"Promoted {self.table_name} to {self.target_path}")

    def _invalid(self, message: str) -> str:
        logger.warning(message)
        return message


class ContainersEnrichmentTable(EnrichmentTable):
    """PID to container mapping produced by dockerprobe."""

    table_name = "Containers enrichment table"
    headers = ["pid", "container_name", "container_id", "image_name"]


class DatabasesEnrichmentTable(EnrichmentTable):
    """Database endpoints delivered with the configuration."""

    table_name = "Databases enrichment table"
    headers = ["identifier", "container", "service", "host"]

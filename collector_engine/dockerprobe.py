"""
PID to container mapping for telemetry enrichment.

Produces a CSV file associating process IDs with the container that
(transitively) spawned them:

    pid,container_name,container_id,image_name
    1115,better-stack-collector,59e2ea91d8af,betterstack/collector:latest

The file is shared with the shipper through the enrichment volume and is
used to enrich logs, metrics and traces with container metadata.
"""

import asyncio
import csv
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import docker

from collector_engine.models import ContainerInfo
from collector_engine.process_tree import collect_descendants, scan_process_table
from collector_engine.protocols import DockerClient

logger = logging.getLogger(__name__)

CSV_HEADERS = ["pid", "container_name", "container_id", "image_name"]
SHORT_CONTAINER_ID_LEN = 12
DEFAULT_OUTPUT_PATH = "/enrichment/docker-mappings.incoming.csv"
DEFAULT_INTERVAL = 15  # in line with the default tick rate of the eBPF collector

PidMapping = Dict[str, ContainerInfo]


class DockerSDKClient:
    """DockerClient backed by the local daemon through the docker SDK."""

    def __init__(self, client: Optional[docker.DockerClient] = None) -> None:
        self.client = client or docker.from_env()

    def list_running_containers(self) -> List[Dict[str, Any]]:
        return self.client.api.containers(all=False)

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self.client.api.inspect_container(container_id)


def container_info_from_summary(container: Dict[str, Any]) -> ContainerInfo:
    """Build the identity record from a container list entry."""
    container_id = container.get("Id", "")
    names = container.get("Names") or []
    name = names[0].lstrip("/") if names else container_id[:SHORT_CONTAINER_ID_LEN]
    return ContainerInfo(
        name=name,
        short_id=container_id[:SHORT_CONTAINER_ID_LEN],
        image=container.get("Image", ""),
    )


def write_mapping_csv(mapping: PidMapping, output_path: Path) -> bool:
    """
    Write the mapping atomically, rows sorted by PID numerically.

    On failure the temporary file is removed and the existing output is
    left untouched.
    """
    output_path = Path(output_path)
    tmp_path = output_path.with_name(output_path.name + ".tmp")

    try:
        with open(tmp_path, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(CSV_HEADERS)
            for pid in sorted(mapping, key=int):
                info = mapping[pid]
                writer.writerow([pid, info.name, info.short_id, info.image])

        os.replace(tmp_path, output_path)
        logger.info(f"Updated PID mappings file with {len(mapping)} entries")
        return True
    except Exception as e:
        logger.error(f"Failed to write PID mappings: {e}", exc_info=True)
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        return False


def read_mapping_csv(path: Path) -> List[Dict[str, str]]:
    """Read a mapping file back as a list of row dicts."""
    with open(path, newline="") as f:
        return list(csv.DictReader(f))


class ContainerProcessMapper:
    """Maps every process of every running container to its container."""

    def __init__(
        self,
        docker_client: DockerClient,
        output_path: str = DEFAULT_OUTPUT_PATH,
        interval: int = DEFAULT_INTERVAL,
        proc_path: str = "/proc",
    ) -> None:
        """
        Initialize the mapper.

        Args:
            docker_client: Container runtime API
            output_path: CSV file to (atomically) replace on each tick
            interval: Seconds between updates
            proc_path: Root of the process table
        """
        self.docker_client = docker_client
        self.output_path = Path(output_path)
        self.interval = interval
        self.proc_path = proc_path
        self._stop_event: Optional[asyncio.Event] = None
        self._proc_warning_logged = False

    def _container_roots(self) -> Dict[int, ContainerInfo]:
        """Main PID -> container identity for running containers."""
        roots: Dict[int, ContainerInfo] = {}

        for container in self.docker_client.list_running_containers():
            container_id = container.get("Id", "")
            try:
                inspect = self.docker_client.inspect_container(container_id)
                pid = (inspect.get("State") or {}).get("Pid")
                if not pid or pid <= 0:
                    logger.debug(f"Container {container_id[:SHORT_CONTAINER_ID_LEN]} has no main PID")
                    continue
                roots[int(pid)] = container_info_from_summary(container)
            except Exception as e:
                logger.error(
                    f"Failed to process container {container_id[:SHORT_CONTAINER_ID_LEN]}: {e}"
                )
                continue

        return roots

    def build_mappings(self) -> PidMapping:
        """Snapshot PID -> container identity for all running containers."""
        roots = self._container_roots()
        mapping: PidMapping = {}
        if not roots:
            return mapping

        children = scan_process_table(self.proc_path)
        if children is None:
            if not self._proc_warning_logged:
                logger.warning(f"Process table {self.proc_path} is not readable, mapping is empty")
                self._proc_warning_logged = True
            return mapping

        for root_pid, info in roots.items():
            pids = collect_descendants(root_pid, children)
            for pid in pids:
                mapping[str(pid)] = info
            logger.info(f"Mapped {len(pids)} PIDs to container {info.name}")

        return mapping

    def update_mappings(self) -> Optional[PidMapping]:
        """
        Rebuild the mapping and write it.

        Returns the mapping that was written, or None when the cycle was
        abandoned and the previous file kept.
        """
        try:
            mapping = self.build_mappings()
        except Exception as e:
            logger.error(f"Failed to update mappings: {e}", exc_info=True)
            return None

        if not write_mapping_csv(mapping, self.output_path):
            return None
        return mapping

    def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

    async def run(self) -> None:
        """Update immediately, then every interval until stopped."""
        logger.info("Starting dockerprobe...")
        logger.info(f"Output path: {self.output_path}")
        logger.info(f"Update interval: {self.interval} seconds")

        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._stop_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                pass

        while not self._stop_event.is_set():
            await loop.run_in_executor(None, self.update_mappings)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Graceful shutdown complete")

"""
Configuration fetch client.

Polls the control plane and drives download -> validate -> promote for
new configuration versions. Validation, promotion and certificate
handling are delegated to injected collaborators.
"""

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import aiofiles  # type: ignore
import httpx
from pydantic import ValidationError

from collector_engine.config.settings import CollectorConfig
from collector_engine.enrichment_tables import DatabasesEnrichmentTable
from collector_engine.error_record import ErrorRecord
from collector_engine.exceptions import AuthenticationError, ConfigurationError, PromotionError
from collector_engine.kubernetes_discovery import KubernetesDiscovery
from collector_engine.logging_config import LogContext
from collector_engine.models import ConfigurationManifest, ManifestFile, PingResponse
from collector_engine.protocols import CertificateManager, ConfigValidator, ShipperController
from collector_engine.ssl_certificate_manager import DOMAIN_FILENAME
from collector_engine.utils import (
    hostname,
    is_within,
    latest_version,
    unsafe_filename_reason,
    unsafe_version_reason,
)

logger = logging.getLogger(__name__)

DATABASES_FILENAME = "databases.csv"
UNAUTHORIZED = (401, 403)


def _bool_param(value: bool) -> str:
    return "true" if value else "false"


class CollectorClient:
    """Talks to the control plane on behalf of one collector."""

    def __init__(
        self,
        config: CollectorConfig,
        validator: ConfigValidator,
        cert_manager: CertificateManager,
        error_record: ErrorRecord,
        controller: ShipperController,
        kubernetes_discovery: Optional[KubernetesDiscovery] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        host: Optional[str] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Collector configuration
            validator: Validates and promotes staged versions
            cert_manager: Receives the delivered certificate hostname
            error_record: Last-known-failure record
            controller: Signals the shipper after side-table promotion
            kubernetes_discovery: Discovery run after each ping, if any
            transport: httpx transport override
            sleep: Coroutine used between download attempts
            host: Host identity; resolved from the environment when None

        Raises:
            ConfigurationError: If no collector secret is configured
        """
        if not config.control_plane.collector_secret:
            raise ConfigurationError(
                "COLLECTOR_SECRET is not set. Set it in the environment or configuration file."
            )

        self.config = config
        self.validator = validator
        self.cert_manager = cert_manager
        self.error_record = error_record
        self.controller = controller
        self.kubernetes_discovery = kubernetes_discovery
        self.transport = transport
        self.sleep = sleep
        self.host = host or hostname()

        self.base_url = config.control_plane.base_url
        self.secret = config.control_plane.collector_secret
        self.working_dir = Path(config.paths.working_dir)
        self.versions_dir = self.working_dir / "versions"

    def _http(self) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"timeout": self.config.updater.request_timeout}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        return httpx.AsyncClient(**kwargs)

    async def _post(self, path: str, params: Dict[str, str]) -> httpx.Response:
        """Form-encoded POST to the control plane API. Network errors propagate."""
        async with self._http() as client:
            return await client.post(f"{self.base_url}/api{path}", data=params)

    # ------------------------------------------------------------------
    # Cluster collector role
    # ------------------------------------------------------------------

    async def cluster_collector(self) -> bool:
        """Ask the control plane whether this collector should run cluster-wide collection."""
        if self.config.control_plane.cluster_collector:
            logger.info("CLUSTER_COLLECTOR configured in the ENV, forcing cluster collector mode")
            return True

        response = await self._post(
            "/collector/cluster-collector",
            {"collector_secret": self.secret, "host": self.host},
        )

        if response.status_code in (200, 204):
            return True
        if response.status_code in UNAUTHORIZED:
            raise AuthenticationError("Cluster collector check", response.status_code)
        if response.status_code == 409:
            # another collector holds the role
            return False

        logger.warning(
            f"Unexpected response from cluster-collector endpoint: {response.status_code}"
        )
        return False

    # ------------------------------------------------------------------
    # Ping
    # ------------------------------------------------------------------

    def ping_params(self) -> Dict[str, str]:
        versions = self.config.versions
        params = {
            "collector_secret": self.secret,
            "cluster_collector": _bool_param(self.config.control_plane.cluster_collector),
            "host": self.host,
            "collector_version": versions.collector_version or "",
            "vector_version": versions.vector_version or "",
            "beyla_version": versions.beyla_version or "",
            "cluster_agent_version": versions.cluster_agent_version or "",
        }

        current_version = latest_version(self.versions_dir)
        if current_version:
            params["configuration_version"] = current_version

        error = self.error_record.read()
        if error:
            params["error"] = error

        return params

    async def ping(self) -> bool:
        """
        Report to the control plane and apply whatever it asks for.

        Returns True when a new configuration generation was promoted.
        Network errors propagate; AuthenticationError on 401/403.
        """
        response = await self._post("/collector/ping", self.ping_params())
        changed = await self.process_ping(response.status_code, response.text)

        if self.kubernetes_discovery is not None and self.validator.uses_kubernetes_discovery():
            discovery_changed = await self.kubernetes_discovery.run()
            if discovery_changed and not changed:
                logger.info("Kubernetes discovery changed, rebuilding vector-config")
                try:
                    self.validator.rebuild()
                    changed = True
                except PromotionError as e:
                    self.error_record.write(str(e))

        return changed

    async def process_ping(self, status_code: int, body: str) -> bool:
        if status_code == 204:
            logger.info("No updates available")
            self.error_record.clear()
            return False

        if status_code == 200:
            try:
                ping = PingResponse(**json.loads(body))
            except (ValueError, TypeError, ValidationError) as e:
                self.error_record.write(f"Ping failed: malformed response body: {e}")
                return False

            if ping.new_version_available:
                logger.info(f"New version available: {ping.configuration_version}")
                return await self.get_configuration(ping.configuration_version)

            logger.info(f"No updates available (status: {ping.status})")
            self.error_record.clear()
            return False

        if status_code in UNAUTHORIZED:
            raise AuthenticationError("Ping", status_code)

        self.error_record.write(f"Ping failed: {status_code}. {self._describe_body(body)}")
        return False

    @staticmethod
    def _describe_body(body: str) -> str:
        try:
            parsed = json.loads(body)
        except ValueError:
            return f"Body: {body}"
        if isinstance(parsed, dict) and parsed.get("status"):
            return f"Details: {parsed['status']}"
        return f"Body: {body}"

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_configuration(self, version: str) -> bool:
        response = await self._post(
            "/collector/configuration",
            {"collector_secret": self.secret, "configuration_version": version},
        )
        return await self.process_configuration(version, response.status_code, response.text)

    async def process_configuration(self, version: str, status_code: int, body: str) -> bool:
        """
        Download, validate and promote one configuration version.

        Returns True when the primary configuration was promoted. Every
        failure is recorded in the error record; the next ping starts over.
        """
        if status_code != 200:
            self.error_record.write(
                f"Failed to fetch configuration for version {version}. Response code: {status_code}"
            )
            return False

        if unsafe_version_reason(version):
            self.error_record.write(f"Invalid configuration version '{version}' received")
            return False

        try:
            manifest = ConfigurationManifest(**json.loads(body))
            files = manifest.manifest_files()
        except (ValueError, TypeError, ValidationError) as e:
            self.error_record.write(f"Invalid configuration manifest for version {version}: {e}")
            return False

        version_dir = self.versions_dir / version

        # every name is checked before anything is written
        for file in files:
            if not self._safe_destination(file, version_dir):
                self.error_record.write(
                    f"Invalid filename '{file.name}' received for version {version}"
                )
                return False

        with LogContext(logger, configuration_version=version):
            version_dir.mkdir(parents=True, exist_ok=True)
            for file in files:
                if not await self.download_file(file, version_dir / file.name):
                    self.error_record.write(f"Failed to download {file.name} for version {version}")
                    return False

            try:
                return self._apply_version(version, version_dir)
            finally:
                self.cert_manager.reset_change_flag()

    def _safe_destination(self, file: ManifestFile, version_dir: Path) -> bool:
        reason = unsafe_filename_reason(file.name)
        if reason:
            logger.warning(f"Rejecting manifest filename {file.name!r}: {reason}")
            return False
        if not is_within(version_dir / file.name, version_dir):
            logger.warning(f"Rejecting manifest filename {file.name!r}: outside staging directory")
            return False
        return True

    def _apply_version(self, version: str, version_dir: Path) -> bool:
        domain_file = version_dir / DOMAIN_FILENAME
        if domain_file.exists():
            self.cert_manager.process_ssl_certificate_host(domain_file.read_text())

        if self.cert_manager.should_skip_validation():
            logger.info(
                f"Certificate for new domain not ready, skipping validation of version {version}"
            )
            error = self.promote_databases_table(version_dir, reload=True)
            shutil.rmtree(version_dir, ignore_errors=True)
            if error:
                self.error_record.write(error)
            return False

        output = self.validator.validate(version_dir)
        if output is not None:
            self.error_record.write(f"Validation failed for vector config in {version}\n\n{output}")
            return False

        try:
            self.validator.promote(version_dir)
        except PromotionError as e:
            self.error_record.write(str(e))
            return False

        error = self.promote_databases_table(version_dir, reload=False)
        if error:
            self.error_record.write(error)
        else:
            self.error_record.clear()
        return True

    def promote_databases_table(self, version_dir: Path, reload: bool) -> Optional[str]:
        """
        Validate and promote a co-delivered databases table.

        Returns the validation error, or None when there was nothing to
        do or the table was promoted.
        """
        staged = version_dir / DATABASES_FILENAME
        if not staged.exists():
            return None

        paths = self.config.paths
        table = DatabasesEnrichmentTable(
            str(paths.databases_table), str(paths.databases_table_incoming)
        )
        table.incoming_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(staged, table.incoming_path)

        error = table.validate()
        if error is not None:
            return f"Validation failed for {DATABASES_FILENAME} in {version_dir.name}\n\n{error}"

        table.promote()
        if reload:
            self.controller.reload_shipper()
        return None

    async def download_file(self, file: ManifestFile, destination: Path) -> bool:
        """
        Download one manifest file, retrying transport errors and 5xx.

        The file is written to a temporary name and renamed into place.
        """
        url = f"{self.base_url}{file.path}"
        attempts = self.config.updater.download_retries + 1
        tmp_path = destination.with_name(f".{destination.name}.download")

        for attempt in range(1, attempts + 1):
            try:
                async with self._http() as client:
                    response = await client.get(url, params={"host": self.host})

                if response.status_code == 200:
                    async with aiofiles.open(tmp_path, "wb") as f:
                        await f.write(response.content)
                    os.replace(tmp_path, destination)
                    logger.info(f"Downloaded {file.name}")
                    return True

                logger.warning(
                    f"Failed to download {file.name} from {file.path}: "
                    f"HTTP {response.status_code} (attempt {attempt}/{attempts})"
                )
                if response.status_code < 500:
                    return False
            except httpx.TransportError as e:
                logger.warning(
                    f"Failed to download {file.name} from {file.path}: {e} "
                    f"(attempt {attempt}/{attempts})"
                )
            except OSError as e:
                logger.error(f"Failed to write {destination}: {e}")
                tmp_path.unlink(missing_ok=True)
                return False

            if attempt < attempts:
                await self.sleep(self.config.updater.retry_delay)

        return False

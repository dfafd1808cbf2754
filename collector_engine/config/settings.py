"""
Configuration for collector-engine.

Settings are read from a YAML file and then overridden by environment
variables, which is how the collector container receives most of them.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://telemetry.betterstack.com"


class ControlPlaneConfig(BaseModel):
    """Remote control plane connection."""

    base_url: str = Field(default=DEFAULT_BASE_URL, description="Control plane base URL")
    collector_secret: Optional[str] = Field(
        default=None, description="Pre-shared secret identifying this collector"
    )
    cluster_collector: bool = Field(
        default=False, description="Force cluster collector mode"
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class VersionsConfig(BaseModel):
    """Component versions reported on every ping."""

    collector_version: Optional[str] = None
    vector_version: Optional[str] = None
    beyla_version: Optional[str] = None
    cluster_agent_version: Optional[str] = None


class PathsConfig(BaseModel):
    """Filesystem locations shared between the collector processes."""

    working_dir: str = Field(default="/var/lib/collector-engine")
    enrichment_dir: str = Field(default="/enrichment")
    log_dir: str = Field(default="/var/log/collector-engine")

    @property
    def containers_table(self) -> Path:
        return Path(self.enrichment_dir) / "docker-mappings.csv"

    @property
    def containers_table_incoming(self) -> Path:
        return Path(self.enrichment_dir) / "docker-mappings.incoming.csv"

    @property
    def databases_table(self) -> Path:
        return Path(self.enrichment_dir) / "databases.csv"

    @property
    def databases_table_incoming(self) -> Path:
        return Path(self.enrichment_dir) / "databases.incoming.csv"


class UpdaterConfig(BaseModel):
    """Polling loop settings."""

    sleep_duration: float = Field(default=15, ge=0, description="Seconds between iterations")
    ping_every: int = Field(default=2, ge=1, description="Ping every N iterations")
    download_retries: int = Field(default=2, ge=0, description="Extra attempts per file")
    retry_delay: float = Field(default=2.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)


class DockerprobeConfig(BaseModel):
    """PID to container mapper settings."""

    output_path: Optional[str] = Field(
        default=None, description="Mapping file; defaults to the incoming containers table"
    )
    interval: int = Field(default=15, gt=0, description="Seconds between mapping updates")
    proc_path: str = Field(default="/proc")


class VectorConfigSettings(BaseModel):
    """Shipper validation and promotion settings."""

    binary: str = Field(default="vector")
    retention: int = Field(default=5, ge=1, description="Generations and versions to keep")
    validation_timeout: float = Field(default=120.0, gt=0)
    validation_env: Dict[str, str] = Field(
        default_factory=lambda: {"REGION": "unknown", "AZ": "unknown"}
    )


class KubernetesConfig(BaseModel):
    """Kubernetes scrape target discovery."""

    min_interval: float = Field(default=30, ge=0, description="Minimum seconds between runs")
    keep_count: int = Field(default=5, ge=1)
    service_account_path: str = Field(default="/var/run/secrets/kubernetes.io/serviceaccount")


class SSLConfig(BaseModel):
    """Certificate host tracking."""

    domain_file: Optional[str] = Field(
        default=None, description="Defaults to <working_dir>/ssl_certificate_host.txt"
    )
    cert_dir: str = Field(default="/etc/ssl")


class SupervisorConfig(BaseModel):
    """supervisorctl invocation used to signal managed processes."""

    command: str = Field(default="supervisorctl")
    config: Optional[str] = Field(default=None, description="Passed as -c when set")
    shipper_program: str = Field(default="vector")
    certbot_program: str = Field(default="certbot")


class CollectorConfig(BaseModel):
    """Complete collector-engine configuration."""

    control_plane: ControlPlaneConfig = Field(default_factory=ControlPlaneConfig)
    versions: VersionsConfig = Field(default_factory=VersionsConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    updater: UpdaterConfig = Field(default_factory=UpdaterConfig)
    dockerprobe: DockerprobeConfig = Field(default_factory=DockerprobeConfig)
    vector: VectorConfigSettings = Field(default_factory=VectorConfigSettings)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    ssl: SSLConfig = Field(default_factory=SSLConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)

    @classmethod
    def from_file(cls, path: str, apply_env: bool = True) -> "CollectorConfig":
        """
        Load configuration from a YAML file.

        A missing file yields the defaults. Environment overrides are
        applied afterwards unless apply_env is False.
        """
        config_path = Path(path)
        data = {}
        if config_path.exists():
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
            logger.debug(f"Loaded configuration file {config_path}")
        else:
            logger.info(f"Configuration file {config_path} not found, using defaults")

        config = cls(**data)
        if apply_env:
            config.apply_env_overrides()
        return config

    def save(self, path: str) -> None:
        """Write configuration as YAML."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)

    def apply_env_overrides(self) -> None:
        """Override settings from the container environment."""
        base_url = os.getenv("BASE_URL")
        if base_url:
            self.control_plane.base_url = base_url.rstrip("/")

        secret = os.getenv("COLLECTOR_SECRET")
        if secret:
            self.control_plane.collector_secret = secret

        if os.getenv("CLUSTER_COLLECTOR") is not None:
            self.control_plane.cluster_collector = os.getenv("CLUSTER_COLLECTOR") == "true"

        for field in ("collector_version", "vector_version", "beyla_version", "cluster_agent_version"):
            value = os.getenv(field.upper())
            if value:
                setattr(self.versions, field, value)

        if os.getenv("WORKING_DIR"):
            self.paths.working_dir = os.environ["WORKING_DIR"]
        if os.getenv("ENRICHMENT_DIR"):
            self.paths.enrichment_dir = os.environ["ENRICHMENT_DIR"]

        output_path = os.getenv("DOCKERPROBE_OUTPUT_PATH")
        if output_path:
            self.dockerprobe.output_path = output_path

        interval = os.getenv("DOCKERPROBE_INTERVAL")
        if interval:
            try:
                parsed = int(interval)
                if parsed <= 0:
                    raise ValueError("interval must be positive")
                self.dockerprobe.interval = parsed
            except ValueError as e:
                logger.warning(
                    f"Invalid DOCKERPROBE_INTERVAL {interval!r}, using {self.dockerprobe.interval}: {e}"
                )

    @property
    def mapping_output_path(self) -> Path:
        if self.dockerprobe.output_path:
            return Path(self.dockerprobe.output_path)
        return self.paths.containers_table_incoming

    @property
    def domain_file(self) -> Path:
        if self.ssl.domain_file:
            return Path(self.ssl.domain_file)
        return Path(self.paths.working_dir) / "ssl_certificate_host.txt"

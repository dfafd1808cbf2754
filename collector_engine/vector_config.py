"""
Shipper configuration validation and promotion.

Layout under the working directory:

    versions/<version>/                 staged downloads
    latest-valid-upstream -> versions/<version>
    kubernetes-discovery/<timestamp>/   discovered scrape targets
    vector-config/generations/<ts>/     assembled, validated generations
    vector-config/current  -> generations/<ts>
    vector-config/previous -> generations/<ts>

Generations are immutable once promoted. "current" is only ever changed
by renaming a freshly created symlink over it, so the shipper sees
either the old or the new generation, never a mix.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from collector_engine.exceptions import PromotionError
from collector_engine.logging_config import log_promotion_operation
from collector_engine.protocols import ShipperController
from collector_engine.utils import latest_directory, utc_timestamp

logger = logging.getLogger(__name__)

PRIMARY_CONFIG = "vector.yaml"
CONFIG_SUFFIXES = (".yaml", ".yml")
BLOCKED_DIRECTIVE = "command"
DISCOVERY_MARKER = "kubernetes_discovery_"

MINIMAL_KUBERNETES_DISCOVERY_CONFIG = """\
---
sources:
  kubernetes_discovery_prometheus_scrape_minimal_dummy_config:
    type: file
    include:
      - /dev/null
"""


def _has_key(node: Any, key: str) -> bool:
    if isinstance(node, dict):
        for k, v in node.items():
            if k == key or _has_key(v, key):
                return True
    elif isinstance(node, list):
        return any(_has_key(item, key) for item in node)
    return False


def contains_command_directive(text: str) -> bool:
    """
    True when the configuration carries an exec-style ``command`` directive.

    Checked textually and, when the text parses, as a mapping key at any
    depth of any document.
    """
    if f"{BLOCKED_DIRECTIVE}:" in text:
        return True
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError:
        return False
    return any(_has_key(doc, BLOCKED_DIRECTIVE) for doc in documents)


def config_files(directory: Path) -> List[Path]:
    """YAML files directly inside a directory, sorted by name."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.suffix in CONFIG_SUFFIXES
    )


def swap_symlink(link: Path, target: Path) -> None:
    """Atomically point link at target (relative), replacing any previous link."""
    link = Path(link)
    link.parent.mkdir(parents=True, exist_ok=True)
    relative_target = os.path.relpath(Path(target), link.parent)
    tmp_link = link.with_name(f".{link.name}.{uuid.uuid4().hex}.tmp")
    os.symlink(relative_target, tmp_link)
    try:
        os.replace(tmp_link, link)
    except OSError:
        tmp_link.unlink()
        raise


def resolve_link(link: Path) -> Optional[Path]:
    """Resolved target of a symlink, or None when it is missing or dangling."""
    link = Path(link)
    if not link.is_symlink() or not link.exists():
        return None
    return link.resolve()


class VectorConfig:
    """Validates staged shipper configuration and promotes it to current."""

    def __init__(
        self,
        working_dir: str,
        controller: ShipperController,
        binary: str = "vector",
        retention: int = 5,
        validation_env: Optional[Dict[str, str]] = None,
        validation_timeout: float = 120.0,
    ) -> None:
        """
        Initialize the validator/promoter.

        Args:
            working_dir: Root of the collector's state
            controller: Used to signal the shipper after promotion
            binary: Shipper executable providing the ``validate`` subcommand
            retention: Generations and staged versions to keep
            validation_env: Placeholders for values normally set by the metadata probe
            validation_timeout: Seconds allowed for one validation run
        """
        self.working_dir = Path(working_dir)
        self.controller = controller
        self.binary = binary
        self.retention = retention
        self.validation_env = (
            validation_env if validation_env is not None else {"REGION": "unknown", "AZ": "unknown"}
        )
        self.validation_timeout = validation_timeout

        self.versions_dir = self.working_dir / "versions"
        self.discovery_dir = self.working_dir / "kubernetes-discovery"
        self.upstream_link = self.working_dir / "latest-valid-upstream"
        self.config_dir = self.working_dir / "vector-config"
        self.generations_dir = self.config_dir / "generations"
        self.current_link = self.config_dir / "current"
        self.previous_link = self.config_dir / "previous"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def check_directives(self, files: List[Path]) -> Optional[str]:
        for path in files:
            if contains_command_directive(path.read_text(errors="replace")):
                return f"{path.name} must not contain {BLOCKED_DIRECTIVE}: directives"
        return None

    def run_validator(self, paths: List[Path]) -> Optional[str]:
        """Run ``<binary> validate`` over paths; returns its output on failure."""
        env = {**os.environ, **self.validation_env}
        cmd = [self.binary, "validate", *[str(p) for p in paths]]
        logger.debug(f"Running {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
                timeout=self.validation_timeout,
            )
        except FileNotFoundError:
            return f"{self.binary} executable not found"
        except subprocess.TimeoutExpired:
            return f"{self.binary} validate timed out after {self.validation_timeout}s"

        if result.returncode != 0:
            output = result.stdout.decode(errors="replace")
            return output or f"{self.binary} validate exited with {result.returncode}"
        return None

    def validate(self, staged_dir: Path) -> Optional[str]:
        """
        Validate the configuration files of a staged version.

        The directive blocklist runs first; only then is the shipper's own
        validator run, against a copy of the files plus a minimal
        discovery config so sources named kubernetes_discovery_* resolve.
        """
        staged_dir = Path(staged_dir)
        files = config_files(staged_dir)

        if not (staged_dir / PRIMARY_CONFIG).is_file():
            error = f"{PRIMARY_CONFIG} not found in {staged_dir}"
            log_promotion_operation("validate", False, {"dir": str(staged_dir)}, error)
            return error

        error = self.check_directives(files)
        if error:
            log_promotion_operation("validate", False, {"dir": str(staged_dir)}, error)
            return error

        with tempfile.TemporaryDirectory(prefix="validate-vector-config-") as tmp:
            tmp_dir = Path(tmp)
            copied = []
            for path in files:
                shutil.copy2(path, tmp_dir / path.name)
                copied.append(tmp_dir / path.name)

            discovery = tmp_dir / "kubernetes-discovery"
            discovery.mkdir()
            minimal = discovery / "minimal.yaml"
            minimal.write_text(MINIMAL_KUBERNETES_DISCOVERY_CONFIG)

            error = self.run_validator(copied + [minimal])

        log_promotion_operation("validate", error is None, {"dir": str(staged_dir)}, error)
        return error

    def validate_dir(self, generation: Path) -> Optional[str]:
        """Validate an assembled generation together with its discovery configs."""
        generation = Path(generation)
        paths = config_files(generation) + config_files(generation / "kubernetes-discovery")
        return self.run_validator(paths)

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def latest_valid_upstream(self) -> Optional[Path]:
        return resolve_link(self.upstream_link)

    def current_generation(self) -> Optional[Path]:
        return resolve_link(self.current_link)

    def uses_kubernetes_discovery(self) -> bool:
        upstream = self.latest_valid_upstream()
        if upstream is None:
            return False
        return any(DISCOVERY_MARKER in p.read_text(errors="replace") for p in config_files(upstream))

    def _new_generation_path(self) -> Path:
        base = self.generations_dir / utc_timestamp(precise=True)
        path = base
        suffix = 1
        while path.exists():
            path = base.with_name(f"{base.name}-{suffix}")
            suffix += 1
        return path

    def prepare_generation(self, source_dir: Path) -> Path:
        """
        Assemble a new generation from upstream files and the latest
        discovery directory, then validate it as a whole.

        The generation is removed again if anything fails.
        """
        generation = self._new_generation_path()
        try:
            generation.mkdir(parents=True)
            for path in config_files(source_dir):
                shutil.copy2(path, generation / path.name)

            discovery = latest_directory(self.discovery_dir)
            if discovery:
                shutil.copytree(discovery, generation / "kubernetes-discovery")

            logger.info(f"Prepared vector-config directory: {generation}")
            error = self.validate_dir(generation)
        except OSError as e:
            shutil.rmtree(generation, ignore_errors=True)
            raise PromotionError(f"Error preparing vector-config directory: {e}") from e

        if error is not None:
            shutil.rmtree(generation, ignore_errors=True)
            log_promotion_operation("prepare", False, {"generation": generation.name}, error)
            raise PromotionError(
                f"Validation failed for vector config with kubernetes_discovery\n\n{error}"
            )

        return generation

    def promote_generation(self, generation: Path) -> None:
        """Swap current to generation, reload the shipper and prune."""
        old_current = self.current_generation()
        try:
            swap_symlink(self.current_link, generation)
            if old_current is not None and old_current != generation.resolve():
                swap_symlink(self.previous_link, old_current)
        except OSError as e:
            raise PromotionError(f"Failed to promote {generation.name}: {e}") from e

        log_promotion_operation(
            "promote",
            True,
            {"generation": generation.name, "previous": old_current.name if old_current else None},
        )

        if not self.controller.reload_shipper():
            logger.warning("Shipper reload failed, new configuration is live on disk")

        self.prune_generations()

    def promote(self, staged_dir: Path) -> Path:
        """
        Make a validated staged version the active configuration.

        Returns the promoted generation; raises PromotionError when the
        generation cannot be assembled or fails combined validation.
        """
        staged_dir = Path(staged_dir)
        generation = self.prepare_generation(staged_dir)
        self.promote_generation(generation)

        try:
            swap_symlink(self.upstream_link, staged_dir)
        except OSError as e:
            raise PromotionError(f"Failed to record {staged_dir.name} as latest valid: {e}") from e

        self.prune_versions()
        logger.info(f"Successfully promoted {staged_dir.name} to current")
        return generation

    def rebuild(self) -> Path:
        """Promote a new generation from the latest valid upstream files."""
        upstream = self.latest_valid_upstream()
        if upstream is None:
            raise PromotionError("No latest valid upstream configuration to rebuild from")

        generation = self.prepare_generation(upstream)
        self.promote_generation(generation)
        return generation

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def _prune(self, base_dir: Path, protected: List[Optional[Path]]) -> List[str]:
        if not base_dir.is_dir():
            return []

        dirs = sorted(p for p in base_dir.iterdir() if p.is_dir() and not p.is_symlink())
        keep = set(dirs[-self.retention :])
        protected_paths = {p for p in protected if p is not None}

        removed = []
        for path in dirs:
            if path in keep or path.resolve() in protected_paths:
                continue
            try:
                shutil.rmtree(path)
                removed.append(path.name)
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")

        if removed:
            logger.debug(f"Pruned {len(removed)} old entries from {base_dir}: {removed}")
        return removed

    def prune_generations(self) -> List[str]:
        """Remove generations beyond retention, except current and previous."""
        return self._prune(
            self.generations_dir,
            [self.current_generation(), resolve_link(self.previous_link)],
        )

    def prune_versions(self) -> List[str]:
        """Remove staged versions beyond retention, except the latest valid one."""
        return self._prune(self.versions_dir, [self.latest_valid_upstream()])

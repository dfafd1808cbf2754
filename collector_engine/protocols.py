"""
Protocols defining the collaborators of the fetch client and mapper.

Components receive these capabilities through their constructors, so
tests substitute fakes through normal dependency injection.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class ConfigValidator(Protocol):
    """Gatekeeper between downloaded and live shipper configuration."""

    def validate(self, staged_dir: Path) -> Optional[str]:
        """
        Validate a staged configuration version.

        Promises:
        - Rejects blocklisted directives before running the shipper's validator
        - Returns None when valid, otherwise the error message
        - Never modifies the staged directory
        """
        ...

    def promote(self, staged_dir: Path) -> Path:
        """
        Make a validated staged version the active configuration.

        Promises:
        - "current" is swapped atomically
        - Signals the shipper to reload (best-effort)
        - Raises PromotionError when the generation cannot be built
        """
        ...

    def rebuild(self) -> Path:
        """Assemble and promote a new generation from the latest valid upstream files."""
        ...

    def uses_kubernetes_discovery(self) -> bool:
        """True when the latest valid upstream config consumes discovered targets."""
        ...


@runtime_checkable
class CertificateManager(Protocol):
    """Tracks the TLS hostname delivered with configuration."""

    def process_ssl_certificate_host(self, domain: str) -> bool:
        """Store the domain; returns True when it changed."""
        ...

    def should_skip_validation(self) -> bool:
        """True when a just-changed domain has no certificate yet."""
        ...

    def reset_change_flag(self) -> None:
        """Forget that the domain changed this cycle."""
        ...


@runtime_checkable
class DockerClient(Protocol):
    """The subset of the container runtime API used by the process mapper."""

    def list_running_containers(self) -> List[Dict[str, Any]]:
        """Return summaries ({Id, Names, Image, ...}) of running containers only."""
        ...

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        """Return the full inspect document for a container."""
        ...


@runtime_checkable
class ShipperController(Protocol):
    """Signals processes managed by the supervisor."""

    def reload_shipper(self) -> bool:
        """Ask the shipper to reload its configuration. Never raises."""
        ...

"""
Tracking of the TLS hostname delivered with configuration.

The hostname is written to a well-known file read by the certificate
runner. When it changes, configuration that references the new
certificate cannot pass validation until the certificate exists, so
validation is skipped for that cycle.
"""

import logging
from pathlib import Path
from typing import Optional

from collector_engine.supervisor import SupervisorControl

logger = logging.getLogger(__name__)

DOMAIN_FILENAME = "ssl_certificate_host.txt"


class SSLCertificateManager:
    """Stores the certificate hostname and reports when validation must wait."""

    def __init__(
        self,
        domain_file: str,
        cert_dir: str = "/etc/ssl",
        supervisor: Optional[SupervisorControl] = None,
    ) -> None:
        self.domain_file = Path(domain_file)
        self.cert_dir = Path(cert_dir)
        self.supervisor = supervisor
        self.previous_domain: Optional[str] = None
        self.domain_just_changed = False

    def read_current_domain(self) -> str:
        try:
            return self.domain_file.read_text().strip()
        except FileNotFoundError:
            return ""
        except OSError as e:
            logger.error(f"Error reading SSL certificate host file: {e}")
            return ""

    def process_ssl_certificate_host(self, domain: str) -> bool:
        """Store the delivered hostname; returns True when it changed."""
        domain = (domain or "").strip()
        current = self.read_current_domain()

        if current == domain:
            self.domain_just_changed = False
            return False

        self.domain_file.parent.mkdir(parents=True, exist_ok=True)
        self.domain_file.write_text(domain)
        logger.info(f"Updated SSL certificate host: {domain or '(empty)'}")

        self.previous_domain = current
        self.domain_just_changed = True

        if domain and self.supervisor is not None:
            if not self.supervisor.restart_certbot():
                logger.warning("Failed to restart certbot")

        return True

    def certificate_exists(self, domain: Optional[str] = None) -> bool:
        domain = domain if domain is not None else self.read_current_domain()
        if not domain:
            return False
        return (self.cert_dir / f"{domain}.pem").exists() and (
            self.cert_dir / f"{domain}.key"
        ).exists()

    def should_skip_validation(self) -> bool:
        if not self.domain_just_changed:
            return False

        domain = self.read_current_domain()
        if not domain:
            return False

        return not self.certificate_exists(domain)

    def reset_change_flag(self) -> None:
        self.domain_just_changed = False

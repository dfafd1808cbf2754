"""
Signalling of supervisor-managed processes.

All calls are best-effort: failures are logged and reported as False,
never raised, because the files they announce are already in place.
"""

import logging
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)

SUPERVISORCTL_TIMEOUT = 30


class SupervisorControl:
    """Thin wrapper over supervisorctl."""

    def __init__(
        self,
        command: str = "supervisorctl",
        config: Optional[str] = None,
        shipper_program: str = "vector",
        certbot_program: str = "certbot",
    ) -> None:
        self.command = command
        self.config = config
        self.shipper_program = shipper_program
        self.certbot_program = certbot_program

    def _base_command(self) -> List[str]:
        cmd = [self.command]
        if self.config:
            cmd += ["-c", self.config]
        return cmd

    def _run(self, *args: str) -> bool:
        cmd = self._base_command() + list(args)
        try:
            result = subprocess.run(cmd, capture_output=True, timeout=SUPERVISORCTL_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"{' '.join(cmd)} failed: {e}")
            return False

        if result.returncode != 0:
            logger.warning(
                f"{' '.join(cmd)} exited with {result.returncode}: "
                f"{result.stderr.decode(errors='replace').strip()}"
            )
            return False
        return True

    def reload_shipper(self) -> bool:
        """Send HUP to the shipper so it re-reads its configuration."""
        logger.info(f"Reloading {self.shipper_program}...")
        return self._run("signal", "HUP", self.shipper_program)

    def restart_certbot(self) -> bool:
        logger.info("Restarting certbot to handle domain change...")
        ok = self._run("restart", self.certbot_program)
        if ok:
            logger.info("Certbot restarted successfully")
        return ok

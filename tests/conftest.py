"""
Shared fixtures for collector-engine tests.
"""

from pathlib import Path
from typing import Dict, List, Optional

import psutil
import pytest
from unittest.mock import Mock, patch

from collector_engine.config.settings import CollectorConfig
from collector_engine.error_record import ErrorRecord


def stat_line(pid: int, ppid: int) -> bytes:
    """A full-width /proc/<pid>/stat line; every field after ppid is zero."""
    return b"%d (proc %d) S %d " % (pid, pid, ppid) + b" ".join([b"0"] * 48) + b"\n"


def _write_proc_table(proc_dir: Path, parents: Dict[int, int]) -> Path:
    proc_dir.mkdir(parents=True, exist_ok=True)
    (proc_dir / "stat").write_text("cpu  0 0 0 0 0 0 0 0 0 0\nbtime 1753437600\n")
    for pid, ppid in parents.items():
        (proc_dir / str(pid)).mkdir()
        (proc_dir / str(pid) / "stat").write_bytes(stat_line(pid, ppid))
    return proc_dir


class FakeController:
    """ShipperController that records reloads."""

    def __init__(self, result: bool = True):
        self.result = result
        self.reloads = 0
        self.certbot_restarts = 0

    def reload_shipper(self) -> bool:
        self.reloads += 1
        return self.result

    def restart_certbot(self) -> bool:
        self.certbot_restarts += 1
        return self.result


class FakeValidator:
    """ConfigValidator that promotes by recording the staged directory."""

    def __init__(self, error: Optional[str] = None, uses_discovery: bool = False):
        self.error = error
        self.uses_discovery = uses_discovery
        self.validated: List[Path] = []
        self.promoted: List[Path] = []
        self.rebuilds = 0
        self.promote_error: Optional[Exception] = None
        self.rebuild_error: Optional[Exception] = None

    def validate(self, staged_dir: Path) -> Optional[str]:
        self.validated.append(Path(staged_dir))
        return self.error

    def promote(self, staged_dir: Path) -> Path:
        if self.promote_error:
            raise self.promote_error
        self.promoted.append(Path(staged_dir))
        return Path(staged_dir)

    def rebuild(self) -> Path:
        if self.rebuild_error:
            raise self.rebuild_error
        self.rebuilds += 1
        return Path("rebuilt")

    def uses_kubernetes_discovery(self) -> bool:
        return self.uses_discovery


class FakeCertManager:
    """CertificateManager with a configurable skip decision."""

    def __init__(self, skip: bool = False):
        self.skip = skip
        self.domains: List[str] = []
        self.resets = 0

    def process_ssl_certificate_host(self, domain: str) -> bool:
        self.domains.append(domain)
        return True

    def should_skip_validation(self) -> bool:
        return self.skip

    def reset_change_flag(self) -> None:
        self.resets += 1


@pytest.fixture
def collector_config(tmp_path):
    """Configuration rooted in a temporary directory."""
    config = CollectorConfig()
    config.control_plane.base_url = "https://control.example.com"
    config.control_plane.collector_secret = "test-secret"
    config.paths.working_dir = str(tmp_path / "work")
    config.paths.enrichment_dir = str(tmp_path / "enrichment")
    config.paths.log_dir = str(tmp_path / "logs")
    config.updater.retry_delay = 0
    config.versions.collector_version = "1.2.3"
    config.versions.vector_version = "0.47.0"
    Path(config.paths.working_dir).mkdir(parents=True)
    Path(config.paths.enrichment_dir).mkdir(parents=True)
    return config


@pytest.fixture
def error_record(collector_config):
    return ErrorRecord(collector_config.paths.working_dir)


@pytest.fixture
def fake_controller():
    return FakeController()


@pytest.fixture
def fake_validator():
    return FakeValidator()


@pytest.fixture
def fake_cert_manager():
    return FakeCertManager()


@pytest.fixture
def proc_table(tmp_path, monkeypatch):
    """Factory building a fake /proc with one <pid>/stat file per pid -> ppid entry."""

    def build(parents: Dict[int, int]) -> Path:
        proc = _write_proc_table(tmp_path / "proc", parents)
        monkeypatch.setattr(psutil, "PROCFS_PATH", str(proc))
        return proc

    return build


@pytest.fixture
def mock_docker_client():
    """Mock Docker client for tests."""
    with patch("docker.from_env") as mock_docker:
        client = Mock()
        mock_docker.return_value = client
        yield client

"""
Tests for the command line entry point.
"""

import json
import logging
import sys
from unittest.mock import AsyncMock, Mock, patch

import pytest

from collector_engine.__main__ import build_client, main
from collector_engine.config import CollectorConfig
from collector_engine.exceptions import AuthenticationError
from collector_engine.logging_config import (
    PROMOTION_LOGGER,
    LogContext,
    StructuredFormatter,
    log_promotion_operation,
    setup_logging,
)


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    monkeypatch.delenv("COLLECTOR_SECRET", raising=False)
    monkeypatch.setenv("WORKING_DIR", str(tmp_path / "work"))
    with patch("collector_engine.__main__.setup_logging"):
        yield


def run_cli(*args):
    with patch.object(sys, "argv", ["collector-engine", *args]):
        return main()


class TestConfigCommands:
    def test_generate_and_validate(self, tmp_path, capsys):
        path = tmp_path / "config.yml"

        assert run_cli("--config", str(path), "--generate-config") == 0
        assert path.exists()
        assert run_cli("--config", str(path), "--validate-config") == 0
        assert "Configuration valid" in capsys.readouterr().out

    def test_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "config.yml"
        path.write_text("updater:\n  ping_every: 0\n")

        assert run_cli("--config", str(path), "--validate-config") == 1
        assert "Configuration invalid" in capsys.readouterr().out

    def test_no_command_prints_help(self, tmp_path):
        assert run_cli("--config", str(tmp_path / "c.yml")) == 2


class TestCommands:
    def test_updater_without_secret_fails(self, tmp_path):
        assert run_cli("--config", str(tmp_path / "c.yml"), "updater") == 1

    @pytest.mark.parametrize("result,code", [(True, 0), (False, 1)])
    def test_cluster_collector_exit_codes(self, tmp_path, result, code):
        client = Mock()
        client.cluster_collector = AsyncMock(return_value=result)

        with patch("collector_engine.__main__.build_client", return_value=client):
            assert run_cli("--config", str(tmp_path / "c.yml"), "cluster-collector") == code

    def test_cluster_collector_error(self, tmp_path):
        client = Mock()
        client.cluster_collector = AsyncMock(side_effect=OSError("unreachable"))

        with patch("collector_engine.__main__.build_client", return_value=client):
            assert run_cli("--config", str(tmp_path / "c.yml"), "cluster-collector") == 2

    def test_cluster_collector_unauthorized(self, tmp_path):
        client = Mock()
        client.cluster_collector = AsyncMock(side_effect=AuthenticationError("Cluster collector check", 401))

        with patch("collector_engine.__main__.build_client", return_value=client):
            assert run_cli("--config", str(tmp_path / "c.yml"), "cluster-collector") == 1

    def test_updater_authentication_error_exits(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COLLECTOR_SECRET", "secret")

        with patch(
            "collector_engine.__main__.run_updater",
            side_effect=AuthenticationError("Ping", 403),
        ):
            assert run_cli("--config", str(tmp_path / "c.yml"), "updater") == 1

    def test_build_client_wires_collaborators(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COLLECTOR_SECRET", "secret")
        config = CollectorConfig.from_file(str(tmp_path / "c.yml"))

        client = build_client(config)

        assert client.secret == "secret"
        assert client.kubernetes_discovery is not None
        assert client.validator.working_dir == tmp_path / "work"


class TestLogging:
    def test_setup_logging_creates_files(self, tmp_path):
        log_dir = tmp_path / "logs"
        root = logging.getLogger()
        saved = root.handlers[:]
        try:
            setup_logging(log_dir=str(log_dir), log_name="updater")
            logging.getLogger("collector_engine.test").error("boom")
            log_promotion_operation("promote", True, {"generation": "g1"})
            for handler in root.handlers + logging.getLogger(PROMOTION_LOGGER).handlers:
                handler.flush()

            assert "boom" in (log_dir / "updater.log").read_text()
            assert "boom" in (log_dir / "error.log").read_text()
            assert "Config promote: SUCCESS" in (log_dir / "promotions.log").read_text()
        finally:
            promotion_logger = logging.getLogger(PROMOTION_LOGGER)
            for handler in promotion_logger.handlers[:]:
                handler.close()
                promotion_logger.removeHandler(handler)
            promotion_logger.propagate = True
            for handler in root.handlers[:]:
                handler.close()
            root.handlers[:] = saved

    def test_structured_formatter_carries_configuration_version(self):
        logger = logging.getLogger("collector_engine.test.structured")
        with LogContext(logger, configuration_version="2025-07-25T10:00:00"):
            record = logger.makeRecord(logger.name, logging.INFO, __file__, 1, "fetched", (), None)

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["message"] == "fetched"
        assert entry["configuration_version"] == "2025-07-25T10:00:00"
        assert "container_id" not in entry

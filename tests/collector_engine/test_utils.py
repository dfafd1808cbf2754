"""
Tests for shared helpers, models and the error record.
"""

from unittest.mock import patch

import pytest

from collector_engine.error_record import ErrorRecord
from collector_engine.models import ConfigurationManifest, ManifestFile, PingResponse
from collector_engine.utils import (
    hostname,
    is_within,
    latest_version,
    unsafe_filename_reason,
    unsafe_version_reason,
)


class TestLatestVersion:
    def test_lexical_maximum(self, tmp_path):
        for name in ("2025-01-02T00:00:00", "2025-01-10T00:00:00", "2024-12-31T23:59:59"):
            (tmp_path / name).mkdir()
        (tmp_path / "2099-not-a-dir").write_text("")

        assert latest_version(tmp_path) == "2025-01-10T00:00:00"

    def test_missing_or_empty(self, tmp_path):
        assert latest_version(tmp_path / "missing") is None
        assert latest_version(tmp_path) is None


class TestUnsafeFilename:
    @pytest.mark.parametrize(
        "name", ["../../etc/passwd", "/etc/passwd", "", "   ", None, "a\\b.yaml", "C:evil", "a\x00b"]
    )
    def test_rejected(self, name):
        assert unsafe_filename_reason(name) is not None

    @pytest.mark.parametrize("name", ["vector.yaml", "databases.csv", "ssl_certificate_host.txt"])
    def test_accepted(self, name):
        assert unsafe_filename_reason(name) is None

    def test_is_within(self, tmp_path):
        assert is_within(tmp_path / "a" / "b", tmp_path)
        assert not is_within(tmp_path / ".." / "x", tmp_path)


class TestUnsafeVersion:
    @pytest.mark.parametrize("version", [".", "..", "", None, "2025/01", "../x", ".hidden", "a b", "2025..01"])
    def test_rejected(self, version):
        assert unsafe_version_reason(version) is not None

    @pytest.mark.parametrize(
        "version", ["2025-07-25T12:00:00", "2025-07-25T12:00:00.123+00:00", "2025-07-25T12:00:00Z", "v1"]
    )
    def test_accepted(self, version):
        assert unsafe_version_reason(version) is None


class TestHostname:
    def test_env_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOSTNAME", "from-env")

        assert hostname(str(tmp_path / "hostname")) == "from-env"

    def test_host_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("HOSTNAME", raising=False)
        host_file = tmp_path / "hostname"
        host_file.write_text("node-1\n")

        assert hostname(str(host_file)) == "node-1"

    def test_socket_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("HOSTNAME", raising=False)

        with patch("collector_engine.utils.socket.gethostname", return_value="container"):
            assert hostname(str(tmp_path / "missing")) == "container"


class TestModels:
    def test_ping_response(self):
        assert PingResponse(status="new_version_available", configuration_version="v1").new_version_available
        assert not PingResponse(status="new_version_available").new_version_available
        assert not PingResponse(status="ok", configuration_version="v1").new_version_available

    def test_manifest_entries(self):
        manifest = ConfigurationManifest(
            files=[
                {"path": "/files/1", "name": "vector.yaml"},
                "/files/download?file=databases.csv&v=2",
                "/files/no-name",
            ]
        )

        assert manifest.manifest_files() == [
            ManifestFile(path="/files/1", name="vector.yaml"),
            ManifestFile(path="/files/download?file=databases.csv&v=2", name="databases.csv"),
            ManifestFile(path="/files/no-name", name=None),
        ]


class TestErrorRecord:
    def test_write_read_clear(self, tmp_path):
        record = ErrorRecord(str(tmp_path))
        assert record.read() is None

        record.write("first")
        record.write("second")

        assert record.read() == "second"
        assert (tmp_path / "errors.txt").read_text() == "second"

        record.clear()

        assert not record.exists()
        record.clear()

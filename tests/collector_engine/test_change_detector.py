"""
Tests for content-hash change detection and the enrichment watcher.
"""

import asyncio

import pytest

from collector_engine.change_detector import EnrichmentWatcher, check_for_changes


class TestCheckForChanges:
    """Test check_for_changes."""

    def test_missing_file_returns_none(self, tmp_path):
        assert check_for_changes(tmp_path / "missing.csv") is None

    def test_created_file_returns_hash(self, tmp_path):
        path = tmp_path / "table.csv"
        assert check_for_changes(path) is None

        path.write_text("pid,container_name\n")

        assert check_for_changes(path) is not None

    def test_same_content_same_hash(self, tmp_path):
        a = tmp_path / "a.csv"
        b = tmp_path / "b.csv"
        a.write_bytes(b"1,web\n")
        b.write_bytes(b"1,web\n")

        assert check_for_changes(a) == check_for_changes(a)
        assert check_for_changes(a) == check_for_changes(b)

    def test_different_content_different_hash(self, tmp_path):
        path = tmp_path / "table.csv"
        path.write_bytes(b"1,web\n")
        first = check_for_changes(path)

        path.write_bytes(b"1,db\n")

        assert check_for_changes(path) != first


class TestEnrichmentWatcher:
    """Test the hash-driven reload loop."""

    def test_first_observation_only_stores_hash(self, tmp_path, fake_controller):
        path = tmp_path / "docker-mappings.csv"
        path.write_text("a")
        watcher = EnrichmentWatcher(str(path), fake_controller)

        assert watcher.check() is False
        assert fake_controller.reloads == 0
        assert watcher.last_hash is not None

    def test_reloads_on_change(self, tmp_path, fake_controller):
        path = tmp_path / "docker-mappings.csv"
        path.write_text("a")
        watcher = EnrichmentWatcher(str(path), fake_controller)
        watcher.check()

        path.write_text("b")

        assert watcher.check() is True
        assert watcher.check() is False
        assert fake_controller.reloads == 1

    def test_missing_file_is_not_a_change(self, tmp_path, fake_controller):
        watcher = EnrichmentWatcher(str(tmp_path / "missing.csv"), fake_controller)

        assert watcher.check() is False
        assert watcher.last_hash is None

    @pytest.mark.asyncio
    async def test_run_stops_on_request(self, tmp_path, fake_controller):
        path = tmp_path / "docker-mappings.csv"
        path.write_text("a")
        watcher = EnrichmentWatcher(str(path), fake_controller, interval=0.01)

        task = asyncio.create_task(watcher.run())
        await asyncio.sleep(0.05)
        watcher.stop()
        await asyncio.wait_for(task, timeout=1)

        assert watcher.last_hash is not None

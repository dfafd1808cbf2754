"""
Tests for the updater polling loop.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from collector_engine.enrichment_tables import ContainersEnrichmentTable
from collector_engine.exceptions import AuthenticationError
from collector_engine.updater import Updater

HEADER = "pid,container_name,container_id,image_name\n"


@pytest.fixture
def containers_table(tmp_path):
    return ContainersEnrichmentTable(
        str(tmp_path / "docker-mappings.csv"), str(tmp_path / "docker-mappings.incoming.csv")
    )


@pytest.fixture
def client():
    client = Mock()
    client.ping = AsyncMock(return_value=False)
    return client


@pytest.fixture
def updater(client, containers_table, fake_controller, error_record):
    return Updater(client, containers_table, fake_controller, error_record, sleep_duration=0.01)


class TestRunIteration:
    """Test a single loop iteration."""

    @pytest.mark.asyncio
    async def test_pings_every_second_iteration(self, updater, client):
        for _ in range(4):
            await updater.run_iteration()

        assert client.ping.await_count == 2

    @pytest.mark.asyncio
    async def test_changed_table_is_promoted_and_reloaded(
        self, updater, containers_table, fake_controller
    ):
        containers_table.incoming_path.write_text(HEADER + "1,web,59e2ea91d8af,nginx\n")

        await updater.run_iteration()

        assert containers_table.target_path.exists()
        assert not containers_table.incoming_path.exists()
        assert fake_controller.reloads == 1

    @pytest.mark.asyncio
    async def test_invalid_table_is_not_promoted(self, updater, containers_table, fake_controller):
        containers_table.incoming_path.write_text("wrong,header\n")

        await updater.run_iteration()

        assert not containers_table.target_path.exists()
        assert fake_controller.reloads == 0

    @pytest.mark.asyncio
    async def test_no_second_reload_after_config_promotion(
        self, updater, client, containers_table, fake_controller
    ):
        client.ping.return_value = True
        updater.iteration = 2
        containers_table.incoming_path.write_text(HEADER)

        await updater.run_iteration()

        assert containers_table.target_path.exists()
        assert fake_controller.reloads == 0

    @pytest.mark.asyncio
    async def test_network_error_is_recorded(self, updater, client, error_record):
        client.ping.side_effect = httpx.ConnectError("connection refused")
        updater.iteration = 2

        await updater.run_iteration()

        assert error_record.read().startswith("Network error: ConnectError")

    @pytest.mark.asyncio
    async def test_authentication_error_propagates(self, updater, client):
        client.ping.side_effect = AuthenticationError("Ping", 401)
        updater.iteration = 2

        with pytest.raises(AuthenticationError):
            await updater.run_iteration()


class TestRun:
    """Test the loop lifecycle."""

    @pytest.mark.asyncio
    async def test_stop_ends_loop(self, updater, client):
        task = asyncio.create_task(updater.run())
        await asyncio.sleep(0.05)
        updater.stop()
        await asyncio.wait_for(task, timeout=1)

        assert client.ping.await_count >= 1

    @pytest.mark.asyncio
    async def test_authentication_error_ends_loop(self, updater, client):
        client.ping.side_effect = AuthenticationError("Ping", 403)

        with pytest.raises(AuthenticationError):
            await asyncio.wait_for(updater.run(), timeout=1)

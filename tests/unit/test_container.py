from unittest.mock import MagicMock

import httpx
import pytest

from l1beat.core.config import IngestConfig
from l1beat.di.container import Container
from l1beat.models.schemas import DataType
from l1beat.observability.metrics_adapter import NoopMetricsAdapter


@pytest.fixture(autouse=True)
def _no_env_file(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def collection():
    coll = MagicMock()
    coll.find_one.return_value = None
    coll.update_many.return_value.modified_count = 1
    return coll


@pytest.fixture
def container(collection, clock, sleep):
    database = MagicMock()
    database.__getitem__.return_value = collection
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    )
    return Container(
        config=IngestConfig(enable_metrics=False),
        http_client=http_client,
        database=database,
        clock=clock,
        sleep=sleep,
    )


def test_container_wires_from_config(container):
    assert isinstance(container.provide_metrics(), NoopMetricsAdapter)
    assert container.describe() == {
        "glacier_api_base": "https://glacier-api.avax.network/v1",
        "mongo_db": "l1beat",
        "daily_chunks": 6,
        "weekly_days": 7,
        "metrics_enabled": False,
    }


def test_maintenance_operations(container, collection):
    assert container.fix_stale_on_startup() == 1
    assert collection.update_many.call_args.args[0] == {"state": "in_progress"}
    assert container.repair_weekly_state() is False
    assert container.get_latest_snapshot(DataType.DAILY) is None


@pytest.mark.asyncio
async def test_close_leaves_injected_clients_open(container):
    await container.close()
    await container.close()

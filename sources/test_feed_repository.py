from unittest.mock import Mock

import pytest

from app_logger import log_buffer
from conftest import MAC, OTHER_MAC
from feed_repository import FeedRepository
from models import DataKind, Record
from sensor_store import SensorStore
from store_errors import StorageWriteFailed, StoreError


@pytest.fixture
def mock_store():
    store = Mock(spec=SensorStore)
    store.connected = False
    store.config.storage_path = "/tmp/sensors.db"
    return store


def test_history_is_bounded():
    repo = FeedRepository(history_size=3)
    counts = [repo.save_sensor(MAC, {"mac": MAC, "rssi": -i}) for i in range(5)]
    assert counts == [1, 2, 3, 3, 3]
    assert [r["rssi"] for r in repo.recent(MAC, "sensor")] == [-4, -3, -2]


def test_nothing_is_persisted_while_storage_is_disabled(mock_store):
    repo = FeedRepository(mock_store)
    repo.save_battery(MAC, {"percentage": 50})
    mock_store.store.assert_not_called()


def test_enable_storage_initializes_once(mock_store):
    repo = FeedRepository(mock_store)
    repo.enable_storage()
    mock_store.initialize.assert_called_once_with()
    assert repo.storage_enabled

    mock_store.connected = True
    repo.disable_storage()
    repo.enable_storage()
    mock_store.initialize.assert_called_once_with()


def test_enable_storage_without_backend():
    with pytest.raises(StoreError):
        FeedRepository().enable_storage()


def test_events_are_forwarded_to_the_store(mock_store):
    repo = FeedRepository(mock_store)
    repo.enable_storage()

    repo.save_sensor(MAC, {"mac": MAC, "rssi": -40})
    repo.save_battery(MAC, {"mac": MAC, "percentage": 15})
    repo.save_position(OTHER_MAC, MAC, 1.5, {"macAnt": OTHER_MAC, "macTag": MAC})
    repo.save_environment({"temperature": 21})

    calls = mock_store.store.call_args_list
    assert calls[0].args == (DataKind.SENSOR, MAC, {"mac": MAC, "rssi": -40})
    assert calls[1].args[:2] == (DataKind.BATTERY, MAC)
    assert calls[2].args[:2] == (DataKind.POSITION, MAC)
    assert calls[2].kwargs == {"peer_key": OTHER_MAC, "distance": 1.5}
    assert calls[3].args == (DataKind.ENVIRONMENT, None, {"temperature": 21})


def test_store_failure_is_logged_and_reported(mock_store):
    mock_store.store.side_effect = StorageWriteFailed("disk full", operation="store")
    repo = FeedRepository(mock_store)
    repo.enable_storage()

    # the live view still updates
    assert repo.save_sensor(MAC, {"rssi": -1}) == 1
    mock_store.notify_error.assert_called_once()
    assert "disk full" in mock_store.notify_error.call_args.args[0]
    assert any("Failed to store sensor data" in line for line in log_buffer)


def test_recent_reads_from_the_store_when_enabled(mock_store, clock):
    record = Record(kind=DataKind.BATTERY, key=MAC, timestamp=clock(),
                    battery_percentage=42, raw_payload={"percentage": 42}, record_id=7)
    mock_store.recent.return_value = [record]
    repo = FeedRepository(mock_store)
    repo.enable_storage()

    rows = repo.recent(MAC, "battery", 5)
    mock_store.recent.assert_called_once_with(MAC, DataKind.BATTERY, 5)
    assert rows == [record.to_dict()]


def test_recent_from_memory():
    repo = FeedRepository()
    repo.save_battery(MAC, {"percentage": 80})
    repo.save_position(OTHER_MAC, MAC, 2.0, {})
    repo.save_environment({"temperature": 19})

    assert repo.recent(MAC, "battery")[0]["percentage"] == 80
    assert repo.recent(MAC, "position") == [
        dict(repo.positions[MAC][OTHER_MAC], peer_mac=OTHER_MAC)]
    assert repo.recent(None, "environment")[0]["temperature"] == 19
    assert repo.recent("unknown") == []


def test_summary():
    repo = FeedRepository()
    for rssi in (-40, -60, "n/a"):
        repo.save_sensor(MAC, {"rssi": rssi})
    repo.save_battery(MAC, {"percentage": 12})
    repo.save_position(OTHER_MAC, MAC, 3.5, {})

    summary = repo.summary()
    assert summary["sensors"][MAC] == {"readings": 3, "avg_rssi": -50}
    assert summary["batteries"][MAC]["percentage"] == 12
    assert summary["batteries"][MAC]["minutes_ago"] < 1
    assert summary["positions"] == {MAC: {OTHER_MAC: 3.5}}
    assert summary["environment"] is None


def test_repository_with_a_real_store(store):
    repo = FeedRepository(store)
    repo.enable_storage()
    repo.save_battery(MAC, {"mac": MAC, "percentage": 15})
    assert [r["battery_percentage"] for r in repo.recent(MAC, "battery")] == [15]

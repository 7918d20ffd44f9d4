import io
import json
from unittest.mock import Mock

import pytest
import requests

from conftest import MAC, OTHER_MAC
from command_shell import HELP_TEXT, QUERY_HELP, StorageShell
from feed_repository import FeedRepository


@pytest.fixture
def repo(store):
    store.close()               # the shell's "storage enable" reopens it
    return FeedRepository(store)


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def shell(repo, out):
    return StorageShell(repo, stdout=out)


def run(shell, out, line):
    out.seek(0)
    out.truncate()
    stop = shell.onecmd(line)
    return stop, out.getvalue()


def test_help_and_aliases(shell, out):
    assert run(shell, out, "help") == (False, HELP_TEXT + "\n")
    assert run(shell, out, "H")[1] == HELP_TEXT + "\n"
    assert run(shell, out, "help query")[1] == QUERY_HELP + "\n"
    assert run(shell, out, "q")[1] == QUERY_HELP + "\n"


def test_unknown_and_empty_commands(shell, out):
    _, text = run(shell, out, "frobnicate now")
    assert "Unknown command: frobnicate now" in text
    assert run(shell, out, "   ") == (False, "")


def test_exit_commands(shell, out):
    assert run(shell, out, "exit")[0] is True
    assert run(shell, out, "quit")[0] is True
    assert run(shell, out, "EOF")[0] is True


def test_storage_commands_need_storage(shell, out):
    for line in ("query " + MAC, "queryall", "stats", "cleanup 1", "export x.json"):
        stop, text = run(shell, out, line)
        assert stop is False
        assert "storage not enabled" in text


def test_storage_enable_status_disable(shell, out, repo):
    assert "Storage not enabled" in run(shell, out, "ss")[1]
    assert "Storage enabled" in run(shell, out, "se")[1]
    assert repo.storage_enabled

    repo.save_battery(MAC, {"mac": MAC, "percentage": 15})
    text = run(shell, out, "storage status")[1]
    assert "Tables: 1" in text
    assert "Total records: 1" in text
    assert f"{MAC}: 1 records" in text

    assert "Storage disabled" in run(shell, out, "sd")[1]
    assert not repo.storage_enabled


def test_query_battery_scenario(shell, out, repo):
    run(shell, out, "se")
    repo.save_battery(MAC, {"mac": MAC, "percentage": 15})
    repo.save_sensor(MAC, {"mac": MAC, "rssi": 0})

    text = run(shell, out, f"query {MAC} battery")[1]
    assert f"Found 1 records for {MAC} (battery):" in text
    assert "Battery: 15%" in text

    text = run(shell, out, f"QUERY {MAC.lower()} sensor 5")[1]
    assert "RSSI: 0" in text

    assert "No data found for 00:00:00:00:00:01" in run(
        shell, out, "query 00:00:00:00:00:01")[1]


def test_query_argument_errors(shell, out):
    run(shell, out, "se")
    assert "Error: unknown data type 'weather'" in run(shell, out, f"query {MAC} weather")[1]
    assert "Error: limit must be an integer" in run(shell, out, f"query {MAC} all ten")[1]
    assert "Error:" in run(shell, out, "query bad;key")[1]


def test_queryall_and_recent(shell, out, repo):
    run(shell, out, "se")
    repo.save_sensor(MAC, {"rssi": -40})
    repo.save_environment({"temperature": 21, "humidity": 40})

    text = run(shell, out, "queryall")[1]
    assert "Found 2 records across all devices:" in text
    assert "Humidity: 40.0%" in text

    text = run(shell, out, f"recent {MAC} sensor 1")[1]
    assert "'rssi': -40" in text


def test_stats(shell, out, repo):
    run(shell, out, "se")
    assert "No tables yet" in run(shell, out, "stats")[1]
    repo.save_sensor(MAC, {"rssi": -40})
    repo.save_battery(MAC, {"percentage": 70})

    text = run(shell, out, "stats")[1]
    assert MAC in text and "2 rows" in text and "[battery,sensor]" in text

    text = run(shell, out, f"stats {MAC}")[1]
    assert "Total rows: 2" in text
    assert "Data types: 2" in text

    assert "Error: no table for device" in run(shell, out, f"stats {OTHER_MAC}")[1]


def test_cleanup(shell, out, repo, clock):
    run(shell, out, "se")
    repo.save_sensor(MAC, {"rssi": -40})
    repo.save_sensor(OTHER_MAC, {"rssi": -41})
    clock.advance(days=3)

    assert "Cleaned up 1 old records" in run(shell, out, f"c 2 {MAC}")[1]
    assert "Cleaned up 1 old records" in run(shell, out, "cleanup 2")[1]
    assert "Cleaned up 0 old records" in run(shell, out, "cleanup")[1]


def test_export_and_drop(shell, out, repo, tmp_path):
    run(shell, out, "se")
    repo.save_battery(MAC, {"percentage": 15})
    repo.save_sensor(OTHER_MAC, {"rssi": -1})
    target = tmp_path / "battery.json"

    text = run(shell, out, f"export {target} {MAC} battery")[1]
    assert f"Exported 1 records to {target}" in text
    assert json.loads(target.read_text())["record_count"] == 1

    text = run(shell, out, f"export {tmp_path / 'all.json'} all")[1]
    assert "Exported 2 records" in text

    assert "Dropped table for" in run(shell, out, f"drop {MAC}")[1]
    assert "Error: no table for device" in run(shell, out, f"drop {MAC}")[1]


def test_plot(shell, out, repo, tmp_path, clock):
    run(shell, out, "se")
    for percentage in (90, 80, 70):
        repo.save_battery(MAC, {"percentage": percentage})
        clock.advance(minutes=5)
    target = tmp_path / "history.png"
    assert "Plot written to" in run(shell, out, f"plot {MAC} {target}")[1]
    assert target.stat().st_size > 0

    assert "Error: no numeric data" in run(shell, out, f"plot {OTHER_MAC} {target}")[1]


def test_plot_into_missing_directory_keeps_the_shell_running(shell, out, repo, tmp_path):
    run(shell, out, "se")
    repo.save_battery(MAC, {"percentage": 90})
    target = tmp_path / "missing" / "dir" / "x.png"

    stop, text = run(shell, out, f"plot {MAC} {target}")
    assert stop is False
    assert "Error: cannot write plot to" in text
    assert not target.exists()


def test_environment_word_in_per_device_commands(shell, out, repo, clock, tmp_path):
    run(shell, out, "se")
    repo.save_environment({"temperature": 21.5, "humidity": 40})
    clock.advance(minutes=5)
    repo.save_environment({"temperature": 22.0, "humidity": 41})
    repo.save_sensor(MAC, {"rssi": -40})

    text = run(shell, out, "query environment")[1]
    assert "Found 2 records for environment (all):" in text
    assert "Humidity: 40.0%" in text

    text = run(shell, out, "stats environment")[1]
    assert "(ENVIRONMENT_DATA)" in text
    assert "Total rows: 2" in text

    target = tmp_path / "env.png"
    assert "Plot written to" in run(shell, out, f"plot environment {target}")[1]
    assert target.exists()

    clock.advance(days=2)
    assert "Cleaned up 2 old records" in run(shell, out, "cleanup 1 environment")[1]
    assert "No data found for environment" in run(shell, out, "query environment")[1]
    assert "Total rows: 1" in run(shell, out, f"stats {MAC}")[1]


def test_recent_environment_from_the_live_view(shell, out, repo):
    repo.save_environment({"temperature": 19, "humidity": 50})
    assert "'temperature': 19" in run(shell, out, "recent environment")[1]


def test_logs(shell, out, repo):
    run(shell, out, "se")
    text = run(shell, out, "logs 50")[1]
    assert "Storage enabled" in text
    assert len(run(shell, out, "logs 1")[1].splitlines()) == 1


def test_analyze(repo, out):
    health = Mock(return_value={"uptime": 600, "clients": 3})
    shell = StorageShell(repo, health_check=health, stdout=out)
    repo.save_sensor(MAC, {"rssi": -40})
    repo.save_sensor(MAC, {"rssi": -50})
    repo.save_battery(MAC, {"percentage": 42})
    repo.save_position(OTHER_MAC, MAC, 1.25, {})
    repo.save_environment({"temperature": 20, "humidity": 55})

    text = run(shell, out, "a")[1]
    assert f"{MAC}: 2 readings, Avg RSSI: -45.0" in text
    assert f"{MAC}: 42%" in text
    assert f"- ANT {OTHER_MAC}: distance 1.25" in text
    assert "Humidity: 55%" in text
    assert "Storage not enabled" in text
    assert "Uptime: 10.0 minutes" in text
    assert "Connected clients: 3" in text


def test_analyze_survives_health_failure(repo, out):
    health = Mock(side_effect=requests.ConnectionError("refused"))
    shell = StorageShell(repo, health_check=health, stdout=out)
    text = run(shell, out, "analyze")[1]
    assert "Failed to fetch server health: refused" in text
    assert text.rstrip().endswith("=====================")

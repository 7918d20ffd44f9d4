import asyncio
import json
from unittest.mock import Mock

import pytest
import requests
from websockets.exceptions import WebSocketException

import feed_client
from app_logger import log_buffer
from conftest import MAC
from controller import FeedController
from feed_client import SUBSCRIBE_MESSAGE, FeedClient, fetch_health


class FakeSocket:
    """Replays queued frames, then blocks (or fails) like an idle connection."""

    def __init__(self, frames, fail_with=None):
        self.frames = list(frames)
        self.fail_with = fail_with
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True
        return False

    async def send(self, text):
        self.sent.append(json.loads(text))

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        if self.fail_with is not None:
            raise self.fail_with
        await asyncio.Event().wait()

    async def close(self):
        self.closed = True


@pytest.fixture
def controller():
    return Mock(spec=FeedController)


@pytest.fixture
def client(controller):
    return FeedClient("ws://node:8080", controller, reconnect_interval=0.01)


def run_until_stopped(client, settle=0.1):
    async def scenario():
        task = asyncio.ensure_future(client.run())
        await asyncio.sleep(settle)
        client.stop()
        await asyncio.wait_for(task, timeout=2)
    asyncio.run(scenario())


# ----------------------------------------------------------------------
# Frame decoding
# ----------------------------------------------------------------------
def test_handle_raw_dispatches_objects(client, controller):
    client.handle_raw('{"type": "sensorData", "data": {"mac": "%s"}}' % MAC)
    client.handle_raw(b'{"type": "environmentData", "data": {}}')
    assert [c.args[0]["type"] for c in controller.handle_message.call_args_list] == [
        "sensorData", "environmentData"]


@pytest.mark.parametrize("frame", ["not json", "[1, 2, 3]", "42"])
def test_handle_raw_skips_bad_frames(client, controller, frame):
    client.handle_raw(frame)
    controller.handle_message.assert_not_called()
    assert "Error processing message" in log_buffer[-1]


def test_handler_failure_does_not_escape(client, controller):
    controller.handle_message.side_effect = RuntimeError("bug")
    client.handle_raw('{"type": "batteryData", "data": {}}')
    assert any("Error handling batteryData message" in line for line in log_buffer)


# ----------------------------------------------------------------------
# Connection loop
# ----------------------------------------------------------------------
def test_subscribes_and_dispatches(monkeypatch, client, controller):
    frames = [json.dumps({"type": "sensorData", "data": {"mac": MAC, "rssi": -50}}),
              json.dumps({"type": "batteryData", "data": {"mac": MAC, "percentage": 9}})]
    socket = FakeSocket(frames)
    monkeypatch.setattr(feed_client.websockets, "connect", lambda url: socket)

    run_until_stopped(client)

    assert socket.sent == [SUBSCRIBE_MESSAGE]
    assert controller.handle_message.call_count == 2
    assert socket.closed
    assert not client.connected


def test_reconnects_after_connection_errors(monkeypatch, client):
    attempts = []

    def refusing_connect(url):
        attempts.append(url)
        raise OSError("connection refused")

    monkeypatch.setattr(feed_client.websockets, "connect", refusing_connect)
    run_until_stopped(client)

    assert len(attempts) >= 2
    assert set(attempts) == {"ws://node:8080"}


def test_reconnects_after_dropped_socket(monkeypatch, client, controller):
    sockets = []

    def connect(url):
        sockets.append(FakeSocket(['{"type": "connection", "message": "hi"}'],
                                  fail_with=WebSocketException("closed")))
        return sockets[-1]

    monkeypatch.setattr(feed_client.websockets, "connect", connect)
    run_until_stopped(client)

    assert len(sockets) >= 2
    assert controller.handle_message.call_count >= 2


def test_stop_during_backoff(monkeypatch, controller):
    client = FeedClient("ws://node:8080", controller, reconnect_interval=60)
    monkeypatch.setattr(feed_client.websockets, "connect",
                        Mock(side_effect=OSError("down")))
    run_until_stopped(client, settle=0.05)
    feed_client.websockets.connect.assert_called_once_with("ws://node:8080")


# ----------------------------------------------------------------------
# Health check
# ----------------------------------------------------------------------
def test_fetch_health(monkeypatch):
    response = Mock()
    response.json.return_value = {"uptime": 3600, "clients": 2}
    get = Mock(return_value=response)
    monkeypatch.setattr(feed_client.requests, "get", get)

    assert fetch_health("http://api:3000/") == {"uptime": 3600, "clients": 2}
    get.assert_called_once_with("http://api:3000/health", timeout=5.0)
    response.raise_for_status.assert_called_once_with()


def test_fetch_health_propagates_http_errors(monkeypatch):
    response = Mock()
    response.raise_for_status.side_effect = requests.HTTPError("503")
    monkeypatch.setattr(feed_client.requests, "get", Mock(return_value=response))
    with pytest.raises(requests.HTTPError):
        fetch_health("http://api:3000")

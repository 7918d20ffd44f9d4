#!/usr/bin/env python3
"""feed_client.py
Sensor feed client using websockets.
Connects to the node's WebSocket, subscribes to every data stream and hands
each decoded message to the ``FeedController``.  When the connection drops
it waits ``reconnect_interval`` seconds and connects again, until ``stop()``.

Also holds the small REST call used by the ``analyze`` command to read the
server's health endpoint.
"""
import asyncio
import json
from typing import Any, Dict, Optional

import requests
import websockets
from websockets.exceptions import WebSocketException

from app_logger import logger
from controller import FeedController

SUBSCRIBE_MESSAGE = {"type": "subscribe", "subscriptions": ["all"]}
HEALTH_TIMEOUT_S = 5.0


class FeedClient:
    """
    Parameters
    ----------
    ws_url : str
        WebSocket URL of the sensor node, e.g. ``ws://localhost:8080``.
    controller : FeedController
        Receives every decoded message.
    reconnect_interval : float, optional
        Seconds to wait before reconnecting.  Defaults to 5.
    """

    def __init__(self, ws_url: str, controller: FeedController,
                 reconnect_interval: float = 5.0):
        self.ws_url = ws_url
        self.controller = controller
        self.reconnect_interval = reconnect_interval
        self.connected = False
        self._stopping: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # 1. Decode one frame
    # ------------------------------------------------------------------
    def handle_raw(self, raw: Any) -> None:
        """Decode one WebSocket frame and dispatch it; bad frames are logged and skipped."""
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except ValueError as exc:
            logger.error("Error processing message: %s", exc)
            return
        if not isinstance(message, dict):
            logger.error("Error processing message: expected an object, got %s",
                         type(message).__name__)
            return
        try:
            self.controller.handle_message(message)
        except Exception:
            logger.exception("Error handling %s message", message.get("type"))

    # ------------------------------------------------------------------
    # 2. Connection loop
    # ------------------------------------------------------------------
    async def run(self) -> None:
        self._stopping = asyncio.Event()
        while not self._stopping.is_set():
            logger.info("Connecting to WebSocket %s ...", self.ws_url)
            try:
                async with websockets.connect(self.ws_url) as ws:
                    self.connected = True
                    logger.info("Connected to sensor node WebSocket")
                    await ws.send(json.dumps(SUBSCRIBE_MESSAGE))
                    await self._receive(ws)
            except asyncio.CancelledError:
                raise
            except (OSError, WebSocketException) as exc:
                logger.error("WebSocket error: %s", exc)
            finally:
                self.connected = False

            if self._stopping.is_set():
                break
            logger.warning("Disconnected from WebSocket, reconnecting in %.0fs...",
                           self.reconnect_interval)
            try:
                await asyncio.wait_for(self._stopping.wait(), self.reconnect_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Feed client stopped")

    async def _receive(self, ws) -> None:
        stop_wait = asyncio.ensure_future(self._stopping.wait())
        try:
            while True:
                recv = asyncio.ensure_future(ws.recv())
                done, _ = await asyncio.wait({recv, stop_wait},
                                             return_when=asyncio.FIRST_COMPLETED)
                if stop_wait in done:
                    recv.cancel()
                    await ws.close()
                    return
                self.handle_raw(recv.result())
        finally:
            stop_wait.cancel()

    def stop(self) -> None:
        """Ask ``run()`` to return; call from the loop thread (see ``main.py``)."""
        if self._stopping is not None:
            self._stopping.set()


# ----------------------------------------------------------------------
# REST health check
# ----------------------------------------------------------------------
def fetch_health(api_url: str, timeout: float = HEALTH_TIMEOUT_S) -> Dict[str, Any]:
    """
    GET ``<api_url>/health`` and return the decoded JSON
    (``uptime`` in seconds, ``clients`` connected).  ``requests`` errors
    propagate to the caller.
    """
    response = requests.get(f"{api_url.rstrip('/')}/health", timeout=timeout)
    response.raise_for_status()
    return response.json()

# controller.py
"""
Routes every decoded feed message to the repository and writes the
one‑line summary the operator sees in the log view.
"""

from typing import Dict, Any

from feed_repository import FeedRepository

from app_logger import logger

LOW_BATTERY_THRESHOLD = 20      # percent


class FeedController:
    def __init__(self, repo: FeedRepository):
        self.repo = repo
        self._handlers = {
            "sensorData": self.handle_sensor,
            "batteryData": self.handle_battery,
            "antData": self.handle_position,
            "environmentData": self.handle_environment,
        }

    def handle_message(self, message: Dict[str, Any]) -> None:
        """Dispatch one message of the feed by its ``type``; unknown types are ignored."""
        msg_type = message.get("type")
        if msg_type == "connection":
            logger.info("Server info received: %s", message.get("message"))
            return
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.debug("Ignoring message of type %r", msg_type)
            return
        data = message.get("data")
        if not isinstance(data, dict):
            logger.warning("Dropping %s message without a data object", msg_type)
            return
        handler(data)

    def handle_sensor(self, data: Dict[str, Any]) -> None:
        mac = data.get("mac")
        if not mac:
            logger.warning("Dropping sensor data without mac: %s", data)
            return
        readings = self.repo.save_sensor(mac, data)
        logger.info("[Sensor %s] RSSI: %s, Total readings: %d", mac, data.get("rssi"), readings)

    def handle_battery(self, data: Dict[str, Any]) -> None:
        mac = data.get("mac")
        if not mac:
            logger.warning("Dropping battery data without mac: %s", data)
            return
        percentage = data.get("percentage")
        self.repo.save_battery(mac, data)
        logger.info("[Battery %s] Level: %s%%", mac, percentage)

        if isinstance(percentage, (int, float)) and percentage < LOW_BATTERY_THRESHOLD:
            logger.warning("LOW BATTERY WARNING for %s: %s%%", mac, percentage)

    def handle_position(self, data: Dict[str, Any]) -> None:
        mac_ant = data.get("macAnt")
        mac_tag = data.get("macTag")
        if not mac_ant or not mac_tag:
            logger.warning("Dropping ANT data without macAnt/macTag: %s", data)
            return
        distance = data.get("distance")
        self.repo.save_position(mac_ant, mac_tag, distance, data)
        logger.info("[Position] Animal %s detected by ANT %s at distance %s",
                    mac_tag, mac_ant, distance)

    def handle_environment(self, data: Dict[str, Any]) -> None:
        self.repo.save_environment(data)
        logger.info("[Environment] Temperature: %s°C, Humidity: %s%%",
                    data.get("temperature"), data.get("humidity"))

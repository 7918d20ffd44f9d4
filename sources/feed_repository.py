# feed_repository.py
"""
Higher‑level service that the controller depends on.
It knows *what* to keep, not *how* to store it: a small bounded live view of
the feed in memory, and – when storage is enabled – every event forwarded to
the SQLite store.
"""

import threading
from collections import deque
from datetime import datetime, timezone
from statistics import mean
from typing import Any, Deque, Dict, List, Optional

from app_logger import logger
from models import DataKind, Record
from sensor_store import SensorStore
from store_errors import StoreError

HISTORY_SIZE = 100          # readings kept in memory per sensor
RSSI_WINDOW = 10            # readings averaged by summary()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FeedRepository:
    """
    Public API used by the controller (and the shell) to record and read
    feed data.
    """

    def __init__(self, store: Optional[SensorStore] = None,
                 history_size: int = HISTORY_SIZE):
        self.store = store
        self.history_size = history_size
        self.storage_enabled = False
        self._lock = threading.Lock()
        self.sensors: Dict[str, Deque[Dict[str, Any]]] = {}
        self.last_battery: Dict[str, Dict[str, Any]] = {}
        self.positions: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.environment: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Storage gate
    # ------------------------------------------------------------------
    def enable_storage(self) -> None:
        """Initialise the store on first use and start persisting events."""
        if self.store is None:
            raise StoreError("no storage backend configured", operation="enable_storage")
        if not self.store.connected:
            self.store.initialize()
        self.storage_enabled = True
        logger.info("Storage enabled (%s)", self.store.config.storage_path)

    def disable_storage(self) -> None:
        self.storage_enabled = False
        logger.info("Storage disabled")

    def _persist(self, kind: DataKind, key: Optional[str], payload: Dict[str, Any],
                 **kwargs: Any) -> Optional[Record]:
        if not self.storage_enabled or self.store is None:
            return None
        try:
            return self.store.store(kind, key, payload, **kwargs)
        except (StoreError, ValueError) as exc:
            # nobody awaits the ingest path: log it and tell the observers
            message = f"Failed to store {kind.value} data for {key or 'environment'}: {exc}"
            logger.error(message)
            self.store.notify_error(message)
            return None

    # ------------------------------------------------------------------
    # Public entry points – called by the controller per decoded message
    # ------------------------------------------------------------------
    def save_sensor(self, mac: str, data: Dict[str, Any]) -> int:
        """Record a sensor reading; returns the number of readings held for ``mac``."""
        with self._lock:
            history = self.sensors.get(mac)
            if history is None:
                history = deque(maxlen=self.history_size)
                self.sensors[mac] = history
            history.append(dict(data, received_at=_now()))
            count = len(history)
        self._persist(DataKind.SENSOR, mac, data)
        return count

    def save_battery(self, mac: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self.last_battery[mac] = {
                "percentage": data.get("percentage"),
                "timestamp": data.get("timestamp"),
                "last_update": _now(),
            }
        self._persist(DataKind.BATTERY, mac, data)

    def save_position(self, mac_ant: str, mac_tag: str, distance: Any,
                      data: Dict[str, Any]) -> None:
        with self._lock:
            self.positions.setdefault(mac_tag, {})[mac_ant] = {
                "distance": distance,
                "timestamp": data.get("timestamp"),
                "last_update": _now(),
            }
        self._persist(DataKind.POSITION, mac_tag, data, peer_key=mac_ant, distance=distance)

    def save_environment(self, data: Dict[str, Any]) -> None:
        with self._lock:
            self.environment = dict(data, last_update=_now())
        self._persist(DataKind.ENVIRONMENT, None, data)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def recent(self, key: Optional[str], kind: Optional[DataKind] = None,
               n: int = 10) -> List[Dict[str, Any]]:
        """
        Latest ``n`` events for ``key``, newest first.  Served by the store
        when storage is enabled, otherwise from the in‑memory live view.
        """
        kind = DataKind.parse(kind)
        if self.storage_enabled and self.store is not None:
            return [r.to_dict() for r in self.store.recent(key, kind, n)]

        with self._lock:
            if kind in (None, DataKind.SENSOR) and key in self.sensors:
                return list(reversed(self.sensors[key]))[:n]
            if kind in (None, DataKind.BATTERY) and key in self.last_battery:
                return [dict(self.last_battery[key])]
            if kind in (None, DataKind.POSITION) and key in self.positions:
                return [dict(v, peer_mac=ant) for ant, v in self.positions[key].items()][:n]
            if (kind in (None, DataKind.ENVIRONMENT) and SensorStore.is_environment_key(key)
                    and self.environment):
                return [dict(self.environment)]
        return []

    def summary(self) -> Dict[str, Any]:
        """Snapshot of the live view used by the ``analyze`` command."""
        now = _now()
        with self._lock:
            sensors = {}
            for mac, history in self.sensors.items():
                window = [r["rssi"] for r in list(history)[-RSSI_WINDOW:]
                          if isinstance(r.get("rssi"), (int, float))]
                sensors[mac] = {
                    "readings": len(history),
                    "avg_rssi": mean(window) if window else None,
                }
            batteries = {
                mac: {
                    "percentage": b["percentage"],
                    "minutes_ago": (now - b["last_update"]).total_seconds() / 60.0,
                }
                for mac, b in self.last_battery.items()
            }
            positions = {
                tag: {ant: p["distance"] for ant, p in ants.items()}
                for tag, ants in self.positions.items()
            }
            environment = dict(self.environment) if self.environment else None
        return {
            "sensors": sensors,
            "batteries": batteries,
            "positions": positions,
            "environment": environment,
        }

# models.py
"""
Dataclasses that map to the rows of the per‑device SQLite tables and the
metadata table, plus the store configuration.
They are deliberately small – only the fields the feed actually delivers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union


class DataKind(Enum):
    """Category of a stored record."""
    SENSOR = "sensor"
    BATTERY = "battery"
    POSITION = "position"
    ENVIRONMENT = "environment"

    @classmethod
    def parse(cls, value: Union["DataKind", str, None]) -> Optional["DataKind"]:
        """
        Accept an enum member, its value in any case, or the feed's legacy
        ``ant`` name for position data.  ``None``, ``""`` and ``"all"`` mean
        "no kind filter" and return ``None``.
        """
        if value is None or isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text in ("", "all"):
            return None
        if text == "ant":
            return cls.POSITION
        try:
            return cls(text)
        except ValueError:
            raise ValueError(
                f"unknown data type {value!r} (expected one of: "
                f"{', '.join(k.value for k in cls)}, all)"
            ) from None


@dataclass
class StoreConfig:
    """Recognised options of the SQLite store."""
    storage_path: str = "./data/sensor_feed.db"
    max_table_size: int = 10000             # advisory row cap, never enforced
    retention_days: int = 30                # default cleanup cutoff
    auto_create_tables: bool = True         # False → unknown keys raise TableNotFound
    logging_enabled: bool = True            # diagnostic output only


@dataclass
class Record:
    """One persisted event – one row of a device table or of the environment table."""
    kind: DataKind
    key: Optional[str]                      # device address, None for environment rows
    timestamp: datetime
    rssi: Optional[int] = None
    temperature: Optional[float] = None
    battery_percentage: Optional[int] = None  # 0–100
    peer_key: Optional[str] = None          # anchor / reader address (position rows)
    distance: Optional[float] = None
    weight: Optional[float] = None
    humidity: Optional[float] = None        # environment rows only
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    record_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON‑ready mapping used by the export path."""
        return {
            "id": self.record_id,
            "data_type": self.kind.value,
            "mac_address": self.key,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "rssi": self.rssi,
            "temperature": self.temperature,
            "battery_percentage": self.battery_percentage,
            "peer_mac": self.peer_key,
            "distance": self.distance,
            "weight": self.weight,
            "humidity": self.humidity,
            "raw_data": self.raw_payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class MetadataEntry:
    """Cached bookkeeping row for one table."""
    table_name: str
    key: str
    row_count: int = 0
    data_types: FrozenSet[DataKind] = frozenset()
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None


@dataclass
class TableStats:
    """Live aggregate computed from one device table."""
    key: str
    table_name: str
    total_rows: int
    data_types: int                         # distinct kinds present
    first_entry: Optional[datetime] = None
    last_entry: Optional[datetime] = None

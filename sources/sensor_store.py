#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
File: sensor_store.py
Description:
    Low‑level DAO (Data‑Access‑Object)
    A wrapper around an embedded SQLite database that keeps one table per
    device address, plus one shared table for environment readings and a
    metadata table that tracks every data table.

    Key features:
        • Lazy table creation on first write for a device (with indexes)
        • Metadata bookkeeping (row count, data types seen, timestamps)
          committed in the same transaction as the write or delete
        • Per‑device and cross‑table queries, newest first
        • Retention cleanup with calendar‑day cutoffs
        • Atomic JSON / CSV export
        • One connection guarded by a re‑entrant lock, so it can be shared
          by the feed thread and the command shell
        • Parameterised SQL; table names only ever come from ``MacHelper``
"""
import json
import logging
import os
import sqlite3
import tempfile
import threading
from contextlib import contextmanager, suppress
from dataclasses import fields, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import (Any, Callable, Dict, Iterable, Iterator, List, Mapping,
                    Optional, Set, Union)

import pandas as pd

from app_logger import get_logger
from mac_helper import ENVIRONMENT_TABLE, METADATA_TABLE, MacHelper
from models import DataKind, MetadataEntry, Record, StoreConfig, TableStats
from store_errors import (ExportWriteFailed, NotConnected, StorageWriteFailed,
                          TableNotFound)
from store_observer import StoreObserver
from timing_decorator import timed

TimeBound = Union[datetime, str, None]

ENVIRONMENT_KEY = "environment"     # metadata key of the shared environment table
EXPORT_LIMIT = 10000                # "everything" for the export path
DEFAULT_QUERY_LIMIT = 100
DEFAULT_QUERY_ALL_LIMIT = 1000

EXPORT_COLUMNS = [
    "id", "data_type", "mac_address", "timestamp", "rssi", "temperature",
    "battery_percentage", "peer_mac", "distance", "weight", "humidity",
    "raw_data", "created_at",
]

_DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------
_METADATA_DDL = f"""
    CREATE TABLE IF NOT EXISTS {METADATA_TABLE} (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        table_name   TEXT    UNIQUE NOT NULL,
        mac_address  TEXT    NOT NULL,
        created_at   TEXT    NOT NULL,
        last_updated TEXT    NOT NULL,
        row_count    INTEGER NOT NULL DEFAULT 0,
        data_types   TEXT    NOT NULL DEFAULT '[]'
    )
"""

_DEVICE_COLUMNS = """
        id                 INTEGER PRIMARY KEY AUTOINCREMENT,
        data_type          TEXT    NOT NULL,
        mac_address        TEXT    NOT NULL,
        timestamp          TEXT    NOT NULL,
        rssi               INTEGER,
        temperature        REAL,
        battery_percentage INTEGER,
        peer_mac           TEXT,
        distance           REAL,
        weight             REAL,
        raw_data           TEXT    NOT NULL,
        created_at         TEXT    NOT NULL
"""

_ENVIRONMENT_COLUMNS = """
        id                 INTEGER PRIMARY KEY AUTOINCREMENT,
        data_type          TEXT    NOT NULL,
        timestamp          TEXT    NOT NULL,
        temperature        REAL,
        humidity           REAL,
        raw_data           TEXT    NOT NULL,
        created_at         TEXT    NOT NULL
"""

_INDEXED_COLUMNS = ("timestamp", "data_type", "created_at")

# ----------------------------------------------------------------------
# Payload field extraction
# ----------------------------------------------------------------------
# Accepted spellings per kind, first match wins.  Missing fields stay None.
FIELD_ALIASES: Dict[DataKind, Dict[str, tuple]] = {
    DataKind.SENSOR: {
        "rssi": ("rssi", "RSSI"),
        "temperature": ("temperature", "Temperature", "T"),
        "weight": ("weight", "Weight"),
    },
    DataKind.BATTERY: {
        "battery_percentage": ("percentage", "battery_percentage",
                               "batteryPercentage", "Percentage"),
    },
    DataKind.POSITION: {
        "peer_key": ("macAnt", "ant_mac", "peerKey", "peer_mac"),
        "distance": ("distance", "Distance"),
    },
    DataKind.ENVIRONMENT: {
        "temperature": ("temperature", "Temperature", "T"),
        "humidity": ("humidity", "Humidity", "H"),
    },
}

_FIELD_TYPES: Dict[str, type] = {
    "rssi": int,
    "battery_percentage": int,
    "temperature": float,
    "distance": float,
    "weight": float,
    "humidity": float,
    "peer_key": str,
}


def _coerce(value: Any, to: type) -> Any:
    """Convert ``value`` to the column type; anything unusable becomes None."""
    if value is None or isinstance(value, bool):
        return None
    if to is str:
        text = str(value).strip()
        return text or None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:          # NaN
        return None
    if to is int:
        try:
            return int(round(number))
        except OverflowError:
            return None
    return number


def extract_fields(kind: DataKind, payload: Mapping[str, Any],
                   peer_key: Optional[str] = None,
                   distance: Any = None) -> Dict[str, Any]:
    """
    Pull the typed columns for ``kind`` out of ``payload``.

    Presence is checked with ``in`` so legitimate zero readings survive;
    explicit ``peer_key`` / ``distance`` arguments win over the payload.
    """
    extracted: Dict[str, Any] = {}
    for column, aliases in FIELD_ALIASES[kind].items():
        value = None
        for alias in aliases:
            if alias in payload and payload[alias] is not None:
                value = payload[alias]
                break
        extracted[column] = _coerce(value, _FIELD_TYPES[column])
    if kind is DataKind.POSITION:
        if peer_key is not None:
            extracted["peer_key"] = _coerce(peer_key, str)
        if distance is not None:
            extracted["distance"] = _coerce(distance, float)
    return extracted


# ----------------------------------------------------------------------
# Time helpers – all stored times are UTC text in one fixed format so that
# string comparison in SQL is chronological comparison.
# ----------------------------------------------------------------------
def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Union[datetime, str]) -> datetime:
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db_time(value: Union[datetime, str]) -> str:
    return _as_utc(value).strftime(_DB_TIME_FORMAT)


def _from_db_time(text: Optional[str]) -> Optional[datetime]:
    if text is None:
        return None
    return datetime.strptime(text, _DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def calendar_cutoff(now: datetime, days: int) -> datetime:
    """
    Same local wall‑clock time ``days`` calendar days before ``now``, in UTC.
    Across a DST change this differs from ``now - days * 24h``.
    """
    if days == 0:
        return now.astimezone(timezone.utc)
    local_wall = now.astimezone().replace(tzinfo=None) - timedelta(days=days)
    return local_wall.astimezone().astimezone(timezone.utc)


class _StoreLog(logging.LoggerAdapter):
    """Drops records while the store's ``logging_enabled`` option is off."""

    def __init__(self, store: "SensorStore"):
        super().__init__(get_logger("store"), {})
        self._store = store

    def isEnabledFor(self, level: int) -> bool:
        return self._store.config.logging_enabled and super().isEnabledFor(level)


# ----------------------------------------------------------------------
# Core wrapper
# ----------------------------------------------------------------------
class SensorStore:
    """Dynamic per‑device table store on top of one SQLite connection."""

    def __init__(self, config: Optional[StoreConfig] = None,
                 observers: Iterable[StoreObserver] = (),
                 clock: Callable[[], datetime] = _utcnow):
        self._config = config or StoreConfig()
        self._observers: List[StoreObserver] = list(observers)
        self._clock = clock
        self._lock = threading.RLock()
        self._known_tables: Set[str] = set()
        self.conn: Optional[sqlite3.Connection] = None
        self.log = _StoreLog(self)

    # --------------------------------------------------------------
    # Configuration
    # --------------------------------------------------------------
    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def connected(self) -> bool:
        return self.conn is not None

    def update_config(self, **changes: Any) -> StoreConfig:
        allowed = {f.name for f in fields(StoreConfig)}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"unknown store option(s): {', '.join(sorted(unknown))}")
        new_path = changes.get("storage_path", self._config.storage_path)
        if self.connected and new_path != self._config.storage_path:
            raise ValueError("storage_path cannot change while the store is open")
        self._config = replace(self._config, **changes)
        self.log.info("Configuration updated: %s", ", ".join(sorted(changes)))
        return self._config

    # --------------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------------
    def initialize(self) -> None:
        """Open the database, create the metadata table, load known tables."""
        with self._lock:
            if self.conn is not None:
                self.log.warning("Database already initialized")
                return

            path = self._config.storage_path
            if path != ":memory:":
                self._prepare_location(Path(path))

            conn = None
            try:
                conn = sqlite3.connect(path, check_same_thread=False,
                                       isolation_level=None)
                conn.row_factory = sqlite3.Row
                if path != ":memory:":
                    conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(_METADATA_DDL)
                known = {
                    row["table_name"]
                    for row in conn.execute(f"SELECT table_name FROM {METADATA_TABLE}")
                }
            except sqlite3.Error as exc:
                if conn is not None:
                    conn.close()
                raise StorageWriteFailed(
                    f"cannot open database {path}", operation="initialize", cause=exc
                ) from exc

            self.conn = conn
            self._known_tables = known
            self.log.info("SQLite database initialized: %s", path)
            self.log.info("Max table size: %d, retention: %d days, known tables: %d",
                          self._config.max_table_size, self._config.retention_days,
                          len(known))

    def _prepare_location(self, db_path: Path) -> None:
        db_dir = db_path.parent
        if not db_dir.exists():
            try:
                db_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageWriteFailed(
                    f"cannot create storage directory {db_dir}",
                    operation="initialize", cause=exc,
                ) from exc
            self.log.info("Created database directory: %s", db_dir)
        if not os.access(db_dir, os.W_OK) or (
            db_path.exists() and not os.access(db_path, os.W_OK)
        ):
            raise StorageWriteFailed(
                f"storage location {db_path} is not writable", operation="initialize"
            )

    def close(self) -> None:
        """Release the connection.  Safe to call repeatedly or before initialize()."""
        with self._lock:
            if self.conn is None:
                return
            try:
                self.conn.close()
            finally:
                self.conn = None
                self._known_tables = set()
            self.log.info("Database connection closed")

    def _require_connection(self, operation: str) -> sqlite3.Connection:
        if self.conn is None:
            raise NotConnected("database not connected", operation=operation)
        return self.conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    # --------------------------------------------------------------
    # Table resolution
    # --------------------------------------------------------------
    @staticmethod
    def table_name_for(key: str) -> str:
        return MacHelper.table_name_for(key)

    @staticmethod
    def is_environment_key(key: Optional[str]) -> bool:
        """``None`` and the reserved word ``environment`` name the shared environment table."""
        return key is None or (isinstance(key, str)
                               and key.strip().lower() == ENVIRONMENT_KEY)

    def _resolve_table(self, key: Optional[str]) -> str:
        if self.is_environment_key(key):
            return ENVIRONMENT_TABLE
        return MacHelper.table_name_for(key)

    def ensure_table(self, key: str) -> str:
        """Return the table for ``key``, creating it (and its metadata) if needed."""
        if self.is_environment_key(key):
            raise ValueError(f"{key!r} is reserved for environment data")
        table_name = MacHelper.table_name_for(key)
        with self._lock:
            self._require_connection("ensure_table")
            if table_name in self._known_tables:
                return table_name
            if not self._config.auto_create_tables:
                raise TableNotFound("no table for device and auto-create is off",
                                    operation="ensure_table", key=key)
            self._create_table(table_name, key, _DEVICE_COLUMNS)
        return table_name

    def _ensure_environment_table(self) -> str:
        if ENVIRONMENT_TABLE not in self._known_tables:
            self._create_table(ENVIRONMENT_TABLE, ENVIRONMENT_KEY, _ENVIRONMENT_COLUMNS)
        return ENVIRONMENT_TABLE

    def _create_table(self, table_name: str, key: str, columns: str) -> None:
        quoted = MacHelper.quote_identifier(table_name)
        now = _to_db_time(self._clock())
        try:
            with self._transaction() as conn:
                conn.execute(f"CREATE TABLE IF NOT EXISTS {quoted} ({columns})")
                for column in _INDEXED_COLUMNS:
                    index = MacHelper.quote_identifier(f"idx_{table_name}_{column}")
                    conn.execute(f"CREATE INDEX IF NOT EXISTS {index} ON {quoted}({column})")
                conn.execute(
                    f"""
                    INSERT OR IGNORE INTO {METADATA_TABLE}
                        (table_name, mac_address, created_at, last_updated)
                    VALUES (?, ?, ?, ?)
                    """,
                    (table_name, key, now, now),
                )
        except sqlite3.Error as exc:
            raise StorageWriteFailed(f"cannot create table {table_name}",
                                     operation="create_table", key=key, cause=exc) from exc
        self._known_tables.add(table_name)
        self.log.info("Created table %s for %s", table_name, key)

    def _metadata_table_names(self) -> List[str]:
        cur = self.conn.execute(
            f"SELECT table_name FROM {METADATA_TABLE} ORDER BY table_name"
        )
        return [row["table_name"] for row in cur]

    def _refresh_metadata(self, table_name: str, kind: Optional[DataKind] = None) -> int:
        """Recount rows and merge ``kind`` into the data‑types set.  Runs inside a transaction."""
        conn = self.conn
        row = conn.execute(
            f"SELECT data_types FROM {METADATA_TABLE} WHERE table_name = ?",
            (table_name,),
        ).fetchone()
        if row is None:
            raise StorageWriteFailed(f"metadata row missing for {table_name}",
                                     operation="update_metadata")
        data_types = json.loads(row["data_types"] or "[]")
        if kind is not None and kind.value not in data_types:
            data_types.append(kind.value)
        quoted = MacHelper.quote_identifier(table_name)
        count = conn.execute(f"SELECT COUNT(*) FROM {quoted}").fetchone()[0]
        conn.execute(
            f"""
            UPDATE {METADATA_TABLE}
            SET row_count = ?, data_types = ?, last_updated = ?
            WHERE table_name = ?
            """,
            (count, json.dumps(data_types), _to_db_time(self._clock()), table_name),
        )
        return count

    # --------------------------------------------------------------
    # Write path
    # --------------------------------------------------------------
    def store(self, kind: Union[DataKind, str], key: Optional[str],
              payload: Mapping[str, Any], peer_key: Optional[str] = None,
              distance: Any = None, timestamp: TimeBound = None) -> Record:
        """
        Persist one event and return it as a :class:`Record`.

        Environment data always goes to the shared table and ``key`` is
        ignored.  Raises ``NotConnected``, ``TableNotFound`` (auto‑create off)
        or ``StorageWriteFailed``; nothing is retried here.
        """
        kind = DataKind.parse(kind)
        if kind is None:
            raise ValueError("a concrete data type is required to store a record")
        if not isinstance(payload, Mapping):
            raise ValueError(f"payload must be a mapping, got {type(payload).__name__}")
        if kind is DataKind.ENVIRONMENT:
            key = None
        elif key is None:
            raise ValueError(f"{kind.value} records need a device key")

        extracted = extract_fields(kind, payload, peer_key, distance)
        raw_data = json.dumps(payload, default=str)

        with self._lock:
            self._require_connection("store")
            if kind is DataKind.ENVIRONMENT:
                table_name = self._ensure_environment_table()
            else:
                table_name = self.ensure_table(key)
            created_at = self._clock()
            ts = created_at if timestamp is None else _as_utc(timestamp)
            quoted = MacHelper.quote_identifier(table_name)

            try:
                with self._transaction() as conn:
                    if kind is DataKind.ENVIRONMENT:
                        cur = conn.execute(
                            f"""
                            INSERT INTO {quoted}
                                (data_type, timestamp, temperature, humidity,
                                 raw_data, created_at)
                            VALUES (?, ?, ?, ?, ?, ?)
                            """,
                            (kind.value, _to_db_time(ts), extracted["temperature"],
                             extracted["humidity"], raw_data, _to_db_time(created_at)),
                        )
                    else:
                        cur = conn.execute(
                            f"""
                            INSERT INTO {quoted}
                                (data_type, mac_address, timestamp, rssi, temperature,
                                 battery_percentage, peer_mac, distance, weight,
                                 raw_data, created_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            (
                                kind.value,
                                key,
                                _to_db_time(ts),
                                extracted.get("rssi"),
                                extracted.get("temperature"),
                                extracted.get("battery_percentage"),
                                extracted.get("peer_key"),
                                extracted.get("distance"),
                                extracted.get("weight"),
                                raw_data,
                                _to_db_time(created_at),
                            ),
                        )
                    record_id = cur.lastrowid
                    row_count = self._refresh_metadata(table_name, kind)
            except sqlite3.Error as exc:
                raise StorageWriteFailed(f"cannot store {kind.value} data",
                                         operation="store", key=key, cause=exc) from exc

        if row_count == self._config.max_table_size + 1:
            self.log.warning("Table %s exceeds advisory max size (%d rows)",
                             table_name, self._config.max_table_size)
        self.log.debug("Stored %s data for %s", kind.value, key or ENVIRONMENT_KEY)

        record = Record(
            kind=kind,
            key=key,
            timestamp=_from_db_time(_to_db_time(ts)),
            raw_payload=json.loads(raw_data),
            created_at=_from_db_time(_to_db_time(created_at)),
            record_id=record_id,
            **extracted,
        )
        self._notify_stored(kind, key)
        return record

    # --------------------------------------------------------------
    # Notifications
    # --------------------------------------------------------------
    def _notify_stored(self, kind: DataKind, key: Optional[str]) -> None:
        for observer in self._observers:
            try:
                observer.on_stored(kind, key)
            except Exception:
                self.log.exception("Observer %r failed on data-stored notification", observer)

    def notify_error(self, message: str) -> None:
        """Report a failure that has no awaiting caller to every observer."""
        for observer in self._observers:
            try:
                observer.on_error(message)
            except Exception:
                self.log.exception("Observer %r failed on error notification", observer)

    # --------------------------------------------------------------
    # Helper: Row → Record
    # --------------------------------------------------------------
    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        columns = row.keys()

        def col(name: str) -> Any:
            return row[name] if name in columns else None

        return Record(
            kind=DataKind(row["data_type"]),
            key=col("mac_address"),
            timestamp=_from_db_time(row["timestamp"]),
            rssi=col("rssi"),
            temperature=col("temperature"),
            battery_percentage=col("battery_percentage"),
            peer_key=col("peer_mac"),
            distance=col("distance"),
            weight=col("weight"),
            humidity=col("humidity"),
            raw_payload=json.loads(row["raw_data"]),
            created_at=_from_db_time(row["created_at"]),
            record_id=row["id"],
        )

    # --------------------------------------------------------------
    # Query path
    # --------------------------------------------------------------
    @staticmethod
    def _check_limit(limit: int) -> int:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValueError(f"limit must be a positive integer, got {limit!r}")
        return limit

    def _select(self, table_name: str, kind: Optional[DataKind],
                start_time: TimeBound, end_time: TimeBound, limit: int) -> List[Record]:
        clauses: List[str] = []
        params: List[Any] = []
        if kind is not None:
            clauses.append("data_type = ?")
            params.append(kind.value)
        if start_time is not None:
            clauses.append("timestamp >= ?")
            params.append(_to_db_time(start_time))
        if end_time is not None:
            clauses.append("timestamp <= ?")
            params.append(_to_db_time(end_time))
        where = " AND ".join(clauses) or "1 = 1"
        params.append(limit)
        cur = self.conn.execute(
            f"SELECT * FROM {MacHelper.quote_identifier(table_name)} "
            f"WHERE {where} ORDER BY timestamp DESC, id DESC LIMIT ?",
            params,
        )
        return [self._row_to_record(r) for r in cur]

    def query(self, key: Optional[str], kind: Union[DataKind, str, None] = None,
              start_time: TimeBound = None, end_time: TimeBound = None,
              limit: int = DEFAULT_QUERY_LIMIT) -> List[Record]:
        """
        Records of one device (``None`` or ``"environment"`` → environment table), newest first.
        A device without a table yields an empty list.
        """
        kind = DataKind.parse(kind)
        self._check_limit(limit)
        table_name = self._resolve_table(key)
        with self._lock:
            self._require_connection("query")
            if table_name not in self._known_tables:
                return []
            results = self._select(table_name, kind, start_time, end_time, limit)
        self.log.debug("Queried %d records for %s", len(results), key or ENVIRONMENT_KEY)
        return results

    @timed("SensorStore.query_all", slow_ms=500)
    def query_all(self, kind: Union[DataKind, str, None] = None,
                  start_time: TimeBound = None, end_time: TimeBound = None,
                  limit: int = DEFAULT_QUERY_ALL_LIMIT) -> List[Record]:
        """Records across every table, globally newest first, at most ``limit``."""
        kind = DataKind.parse(kind)
        self._check_limit(limit)
        results: List[Record] = []
        with self._lock:
            self._require_connection("query_all")
            for table_name in self._metadata_table_names():
                results.extend(self._select(table_name, kind, start_time, end_time, limit))
        results.sort(key=lambda r: r.timestamp, reverse=True)
        del results[limit:]
        self.log.debug("Queried %d records across all tables", len(results))
        return results

    def recent(self, key: Optional[str], kind: Union[DataKind, str, None] = None,
               n: int = 10) -> List[Record]:
        return self.query(key, kind=kind, limit=n)

    # --------------------------------------------------------------
    # Retention & drop
    # --------------------------------------------------------------
    @timed("SensorStore.cleanup", slow_ms=1000)
    def cleanup(self, key: Optional[str] = None,
                older_than_days: Optional[int] = None) -> int:
        """
        Delete rows whose ``created_at`` is before the cutoff, for one device
        or for every table.  Returns the number of deleted rows.
        """
        days = self._config.retention_days if older_than_days is None else older_than_days
        if days < 0:
            raise ValueError(f"older_than_days must be >= 0, got {days}")

        with self._lock:
            self._require_connection("cleanup")
            cutoff = _to_db_time(calendar_cutoff(self._clock(), days))
            if key is not None:
                table_name = self._resolve_table(key)
                if table_name not in self._known_tables:
                    raise TableNotFound("no table for device", operation="cleanup", key=key)
                tables = [table_name]
            else:
                tables = self._metadata_table_names()

            total_deleted = 0
            for table_name in tables:
                quoted = MacHelper.quote_identifier(table_name)
                try:
                    with self._transaction() as conn:
                        cur = conn.execute(
                            f"DELETE FROM {quoted} WHERE created_at < ?", (cutoff,)
                        )
                        deleted = cur.rowcount
                        self._refresh_metadata(table_name)
                except sqlite3.Error as exc:
                    raise StorageWriteFailed(f"cannot clean up {table_name}",
                                             operation="cleanup", key=key,
                                             cause=exc) from exc
                total_deleted += deleted

        self.log.info("Cleaned up %d records older than %d day(s) (%s)",
                      total_deleted, days, key or "all tables")
        return total_deleted

    def drop_table(self, key: str) -> None:
        """Drop the table of ``key`` and its metadata row."""
        table_name = self._resolve_table(key)
        with self._lock:
            self._require_connection("drop_table")
            if table_name not in self._known_tables:
                raise TableNotFound("no table for device", operation="drop_table", key=key)
            try:
                with self._transaction() as conn:
                    conn.execute(f"DROP TABLE IF EXISTS {MacHelper.quote_identifier(table_name)}")
                    conn.execute(f"DELETE FROM {METADATA_TABLE} WHERE table_name = ?",
                                 (table_name,))
            except sqlite3.Error as exc:
                raise StorageWriteFailed(f"cannot drop {table_name}", operation="drop_table",
                                         key=key, cause=exc) from exc
            self._known_tables.discard(table_name)
        self.log.info("Dropped table for %s", key)

    # --------------------------------------------------------------
    # Statistics
    # --------------------------------------------------------------
    def stats(self, key: Optional[str] = None) -> Union[TableStats, List[MetadataEntry]]:
        """
        ``stats(key)`` – live aggregate scanned from that device's table
        (``"environment"`` → the shared environment table).
        ``stats()`` – the cached metadata of every table, no rescans.
        """
        with self._lock:
            conn = self._require_connection("stats")
            if key is not None:
                table_name = self._resolve_table(key)
                if table_name not in self._known_tables:
                    raise TableNotFound("no table for device", operation="stats", key=key)
                row = conn.execute(
                    f"""
                    SELECT COUNT(*)                  AS total_rows,
                           COUNT(DISTINCT data_type) AS data_types,
                           MIN(timestamp)            AS first_entry,
                           MAX(timestamp)            AS last_entry
                    FROM {MacHelper.quote_identifier(table_name)}
                    """
                ).fetchone()
                return TableStats(
                    key=key,
                    table_name=table_name,
                    total_rows=row["total_rows"],
                    data_types=row["data_types"],
                    first_entry=_from_db_time(row["first_entry"]),
                    last_entry=_from_db_time(row["last_entry"]),
                )

            cur = conn.execute(
                f"SELECT * FROM {METADATA_TABLE} ORDER BY last_updated DESC, id DESC"
            )
            return [
                MetadataEntry(
                    table_name=r["table_name"],
                    key=r["mac_address"],
                    row_count=r["row_count"],
                    data_types=frozenset(DataKind(k) for k in json.loads(r["data_types"])),
                    created_at=_from_db_time(r["created_at"]),
                    last_updated=_from_db_time(r["last_updated"]),
                )
                for r in cur
            ]

    # --------------------------------------------------------------
    # Export
    # --------------------------------------------------------------
    @timed("SensorStore.export_to", slow_ms=2000)
    def export_to(self, destination: Union[str, Path], key: Optional[str] = None,
                  kind: Union[DataKind, str, None] = None,
                  start_time: TimeBound = None, end_time: TimeBound = None) -> Dict[str, Any]:
        """
        Write every matching record to ``destination`` (JSON, or CSV when the
        file name ends in ``.csv``).  The file is written next to the target
        and moved into place, so a failure never leaves a partial export.
        """
        kind = DataKind.parse(kind)
        if key is not None:
            records = self.query(key, kind, start_time, end_time, limit=EXPORT_LIMIT)
        else:
            records = self.query_all(kind, start_time, end_time, limit=EXPORT_LIMIT)
        if len(records) == EXPORT_LIMIT:
            self.log.warning("Export reached the %d record limit; older matching records "
                             "are not included", EXPORT_LIMIT)

        options: Dict[str, Any] = {}
        if key is not None:
            options["mac"] = key
        if kind is not None:
            options["data_type"] = kind.value
        if start_time is not None:
            options["start_time"] = _as_utc(start_time).isoformat()
        if end_time is not None:
            options["end_time"] = _as_utc(end_time).isoformat()

        document = {
            "export_timestamp": self._clock().isoformat(),
            "export_options": options,
            "record_count": len(records),
            "data": [r.to_dict() for r in records],
        }

        path = Path(destination)
        try:
            self._write_atomically(path, document)
        except OSError as exc:
            raise ExportWriteFailed(f"cannot write export to {path}", operation="export",
                                    key=key, cause=exc) from exc
        self.log.info("Exported %d records to %s", len(records), path)
        return document

    @staticmethod
    def _write_atomically(path: Path, document: Dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp",
                                        dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as fh:
                if path.suffix.lower() == ".csv":
                    rows = [dict(r, raw_data=json.dumps(r["raw_data"]))
                            for r in document["data"]]
                    frame = pd.DataFrame(rows, columns=EXPORT_COLUMNS)
                    frame.to_csv(fh, index=False)
                else:
                    json.dump(document, fh, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp_name)
            raise

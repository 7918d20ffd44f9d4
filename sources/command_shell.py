# command_shell.py
"""
Line‑oriented command shell over the feed repository and the SQLite store.
The shell owns stdout; everything else in the program logs to the memory
buffer / log file, which the ``logs`` command prints on demand.
"""

import cmd
from typing import Any, Callable, Dict, List, Optional

import requests

from app_logger import log_buffer, logger
from feed_repository import FeedRepository
from history_plot import render_history
from models import DataKind, Record
from sensor_store import SensorStore
from store_errors import StoreError

DEFAULT_QUERY_LIMIT = 10
DEFAULT_LOG_LINES = 20

HELP_TEXT = """
=== Available Commands ===
help, h                      - Show this help
storage enable, se           - Enable SQLite storage
storage disable, sd          - Disable SQLite storage
storage status, ss           - Show storage status
query, q                     - Show query help
query <mac> [type] [limit]   - Query stored data of one device
queryall [type] [limit]      - Query stored data across all devices
recent <mac> [type] [n]      - Latest events (store or live view)
stats [mac]                  - Table statistics (live for one device)
cleanup, c [days] [mac]      - Delete records older than N days
export <file> [mac] [type]   - Export records to JSON (or .csv)
drop <mac>                   - Drop the table of one device
plot <mac> <file> [type]     - Plot a device's history to PNG
analyze, a                   - Run data analysis
logs [n]                     - Show the last n log lines
exit, quit                   - Exit

<mac> may also be "environment" for the shared environment table
==========================
"""

QUERY_HELP = """
=== Query Commands ===
query <mac> [type] [limit]

Parameters:
  mac     - MAC address of the device, or "environment" (required)
  type    - Data type filter (optional):
            sensor      - Sensor readings
            battery     - Battery updates
            position    - ANT positioning data (alias: ant)
            environment - Environmental data
            all         - All data types (default)
  limit   - Maximum number of records (default: 10)

Examples:
  query AA:BB:CC:DD:EE:FF
  query AA:BB:CC:DD:EE:FF sensor 20
  query AA:BB:CC:DD:EE:FF battery 5
  query environment
======================
"""


def format_record(index: int, record: Record) -> List[str]:
    """Printable lines for one record; absent fields are skipped, zeros are not."""
    lines = [f"{index}. {record.kind.value} - {record.timestamp.isoformat()}"
             + (f" [{record.key}]" if record.key else "")]
    if record.rssi is not None:
        lines.append(f"   RSSI: {record.rssi}")
    if record.temperature is not None:
        lines.append(f"   Temperature: {record.temperature}°C")
    if record.humidity is not None:
        lines.append(f"   Humidity: {record.humidity}%")
    if record.battery_percentage is not None:
        lines.append(f"   Battery: {record.battery_percentage}%")
    if record.peer_key:
        lines.append(f"   ANT: {record.peer_key}")
    if record.distance is not None:
        lines.append(f"   Distance: {record.distance}")
    if record.weight is not None:
        lines.append(f"   Weight: {record.weight}")
    return lines


def _parse_int(text: str, name: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {text!r}") from None


class StorageShell(cmd.Cmd):
    intro = "Sensor feed client. Type 'help' for commands or Ctrl+D to exit.\n"
    prompt = "sensors> "

    ALIASES = {
        "h": "help",
        "se": "storage enable",
        "sd": "storage disable",
        "ss": "storage status",
        "q": "query",
        "c": "cleanup",
        "a": "analyze",
        "quit": "exit",
        "eof": "EOF",
    }

    def __init__(self, repo: FeedRepository,
                 health_check: Optional[Callable[[], Dict[str, Any]]] = None,
                 stdin=None, stdout=None):
        super().__init__(stdin=stdin, stdout=stdout)
        self.repo = repo
        self.health_check = health_check

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def _print(self, text: str = "") -> None:
        self.stdout.write(text + "\n")

    def _store(self) -> SensorStore:
        if not self.repo.storage_enabled or self.repo.store is None:
            raise StoreError("storage not enabled (use 'storage enable')")
        return self.repo.store

    def _normalize(self, line: str) -> str:
        """Lower‑case the command word and expand short aliases; arguments keep their case."""
        parts = line.strip().split(maxsplit=1)
        if not parts:
            return ""
        command = parts[0].lower()
        rest = parts[1] if len(parts) > 1 else ""
        command = self.ALIASES.get(command, command)
        return f"{command} {rest}".strip()

    def onecmd(self, line: str) -> bool:
        try:
            return super().onecmd(self._normalize(line))
        except (StoreError, ValueError) as exc:
            self._print(f"Error: {exc}")
            logger.error("Command %r failed: %s", line, exc)
            return False

    def emptyline(self) -> bool:
        return False

    def default(self, line: str) -> bool:
        self._print(f"Unknown command: {line}")
        self._print('Type "help" for available commands')
        return False

    # ------------------------------------------------------------------
    # Help / exit
    # ------------------------------------------------------------------
    def do_help(self, arg: str) -> bool:
        if arg.strip() in ("query", "q"):
            self._print(QUERY_HELP)
        else:
            self._print(HELP_TEXT)
        return False

    def do_exit(self, arg: str) -> bool:
        self._print("Exiting...")
        return True

    def do_EOF(self, arg: str) -> bool:
        self._print()
        return True

    # ------------------------------------------------------------------
    # Storage management
    # ------------------------------------------------------------------
    def do_storage(self, arg: str) -> bool:
        action = arg.strip().lower()
        if action == "enable":
            self.repo.enable_storage()
            self._print("✓ Storage enabled")
        elif action == "disable":
            self.repo.disable_storage()
            self._print("⚠ Storage disabled")
        elif action == "status":
            for line in self.storage_status_lines(verbose=True):
                self._print(line)
        else:
            self._print("Usage: storage enable|disable|status")
        return False

    def storage_status_lines(self, verbose: bool = False) -> List[str]:
        store = self.repo.store
        if not self.repo.storage_enabled or store is None or not store.connected:
            return ["⚠ Storage not enabled"]
        entries = store.stats()
        lines = [
            "✓ Storage Status:",
            f"  Database: {store.config.storage_path}",
            f"  Enabled: {self.repo.storage_enabled}",
            f"  Tables: {len(entries)}",
        ]
        if entries:
            lines.append(f"  Total records: {sum(e.row_count for e in entries)}")
            if verbose:
                lines.append("")
                lines.append("  Tables:")
                lines.extend(f"    {e.key}: {e.row_count} records" for e in entries)
        return lines

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def do_query(self, arg: str) -> bool:
        parts = arg.split()
        if not parts:
            self._print(QUERY_HELP)
            return False
        mac = parts[0]
        kind = DataKind.parse(parts[1]) if len(parts) > 1 else None
        limit = _parse_int(parts[2], "limit") if len(parts) > 2 else DEFAULT_QUERY_LIMIT
        label = kind.value if kind else "all"

        records = self._store().query(mac, kind=kind, limit=limit)
        if not records:
            self._print(f"No data found for {mac} ({label})")
            return False
        self._print(f"Found {len(records)} records for {mac} ({label}):")
        self._print_records(records)
        return False

    def do_queryall(self, arg: str) -> bool:
        parts = arg.split()
        kind = DataKind.parse(parts[0]) if parts else None
        limit = _parse_int(parts[1], "limit") if len(parts) > 1 else DEFAULT_QUERY_LIMIT
        records = self._store().query_all(kind=kind, limit=limit)
        if not records:
            self._print("No data found")
            return False
        self._print(f"Found {len(records)} records across all devices:")
        self._print_records(records)
        return False

    def do_recent(self, arg: str) -> bool:
        parts = arg.split()
        if not parts:
            self._print("Usage: recent <mac> [type] [n]")
            return False
        kind = DataKind.parse(parts[1]) if len(parts) > 1 else None
        n = _parse_int(parts[2], "n") if len(parts) > 2 else DEFAULT_QUERY_LIMIT
        events = self.repo.recent(parts[0], kind, n)
        if not events:
            self._print(f"No recent data for {parts[0]}")
        for event in events:
            self._print(f"  {event}")
        return False

    def _print_records(self, records: List[Record]) -> None:
        for index, record in enumerate(records, start=1):
            self._print()
            for line in format_record(index, record):
                self._print(line)

    def do_stats(self, arg: str) -> bool:
        mac = arg.strip()
        store = self._store()
        if mac:
            s = store.stats(mac)
            self._print(f"Statistics for {s.key} ({s.table_name}):")
            self._print(f"  Total rows: {s.total_rows}")
            self._print(f"  Data types: {s.data_types}")
            self._print(f"  First entry: {s.first_entry}")
            self._print(f"  Last entry: {s.last_entry}")
            return False
        entries = store.stats()
        if not entries:
            self._print("No tables yet")
        for e in entries:
            kinds = ",".join(sorted(k.value for k in e.data_types)) or "-"
            self._print(f"  {e.key:<20} {e.row_count:>8} rows  [{kinds}]  "
                        f"updated {e.last_updated}")
        return False

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def do_cleanup(self, arg: str) -> bool:
        parts = arg.split()
        days = _parse_int(parts[0], "days") if parts else None
        mac = parts[1] if len(parts) > 1 else None
        deleted = self._store().cleanup(mac, days)
        self._print(f"✓ Cleaned up {deleted} old records")
        return False

    def do_export(self, arg: str) -> bool:
        parts = arg.split()
        if not parts:
            self._print("Usage: export <file> [mac] [type]")
            return False
        mac = parts[1] if len(parts) > 1 and parts[1].lower() != "all" else None
        kind = DataKind.parse(parts[2]) if len(parts) > 2 else None
        document = self._store().export_to(parts[0], key=mac, kind=kind)
        self._print(f"✓ Exported {document['record_count']} records to {parts[0]}")
        return False

    def do_drop(self, arg: str) -> bool:
        mac = arg.strip()
        if not mac:
            self._print("Usage: drop <mac>")
            return False
        self._store().drop_table(mac)
        self._print(f"✓ Dropped table for {mac}")
        return False

    def do_plot(self, arg: str) -> bool:
        parts = arg.split()
        if len(parts) < 2:
            self._print("Usage: plot <mac> <file> [type]")
            return False
        kind = DataKind.parse(parts[2]) if len(parts) > 2 else None
        path = render_history(self._store(), parts[0], parts[1], kind=kind)
        self._print(f"✓ Plot written to {path}")
        return False

    def do_logs(self, arg: str) -> bool:
        n = _parse_int(arg.strip(), "n") if arg.strip() else DEFAULT_LOG_LINES
        for line in list(log_buffer)[-n:]:
            self._print(line)
        return False

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------
    def do_analyze(self, arg: str) -> bool:
        for line in self.analysis_lines():
            self._print(line)
        return False

    def analysis_lines(self) -> List[str]:
        summary = self.repo.summary()
        lines = ["=== Data Analysis ===", "", "Active Sensors:"]
        for mac, s in summary["sensors"].items():
            avg = f"{s['avg_rssi']:.1f}" if s["avg_rssi"] is not None else "n/a"
            lines.append(f"  {mac}: {s['readings']} readings, Avg RSSI: {avg}")

        lines += ["", "Battery Status:"]
        for mac, b in summary["batteries"].items():
            lines.append(f"  {mac}: {b['percentage']}% ({b['minutes_ago']:.1f} min ago)")

        lines += ["", "Animal Positions:"]
        for tag, ants in summary["positions"].items():
            lines.append(f"  {tag}:")
            lines.extend(f"    - ANT {ant}: distance {d}" for ant, d in ants.items())

        env = summary["environment"]
        if env:
            lines += ["", "Environment:",
                      f"  Temperature: {env.get('temperature')}°C",
                      f"  Humidity: {env.get('humidity')}%"]

        lines += ["", "Storage:"]
        try:
            lines += [f"  {l.strip()}" for l in self.storage_status_lines()]
        except StoreError as exc:
            lines.append(f"  Error: {exc}")

        if self.health_check is not None:
            try:
                health = self.health_check()
                lines += ["", "Server Health:",
                          f"  Uptime: {float(health.get('uptime', 0)) / 60:.1f} minutes",
                          f"  Connected clients: {health.get('clients')}"]
            except (requests.RequestException, ValueError) as exc:
                logger.warning("Failed to fetch server health: %s", exc)
                lines += ["", f"Failed to fetch server health: {exc}"]
        lines.append("=====================")
        return lines

"""
History plot – renders the stored history of one device to a PNG file.

Features
--------
* Reads the records from the SQLite store (newest ``limit`` rows).
* Builds a pandas DataFrame indexed by timestamp.
* Draws one seaborn line panel per metric that actually has data
  (battery %, temperature, RSSI, distance, weight, humidity).
* Uses the non‑interactive Agg backend so it works from the command shell.
"""

from pathlib import Path
from typing import Iterable, List, Optional, Union

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from app_logger import logger
from models import DataKind, Record
from sensor_store import SensorStore
from store_errors import ExportWriteFailed

# column → axis label, in panel order
METRICS = {
    "battery_percentage": "Battery (%)",
    "temperature": "Temperature (°C)",
    "rssi": "RSSI (dBm)",
    "distance": "Distance",
    "weight": "Weight",
    "humidity": "Humidity (%)",
}


def records_to_frame(records: Iterable[Record]) -> pd.DataFrame:
    """One row per record, oldest first, with a naive‑UTC ``timestamp`` column."""
    rows = [
        {
            "timestamp": r.timestamp,
            "data_type": r.kind.value,
            "peer_mac": r.peer_key,
            **{column: getattr(r, column) for column in METRICS},
        }
        for r in records
    ]
    df = pd.DataFrame(rows, columns=["timestamp", "data_type", "peer_mac", *METRICS])
    if df.empty:
        return df
    # naive UTC plots cleanly on every matplotlib version
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True).dt.tz_localize(None)
    for column in METRICS:
        df[column] = pd.to_numeric(df[column], errors="coerce")
    return df.sort_values("timestamp").reset_index(drop=True)


def render_history(store: SensorStore, key: Optional[str], output_path: Union[str, Path],
                   kind: Union[DataKind, str, None] = None, limit: int = 1000) -> Path:
    """
    Plot the history of ``key`` (``None`` → environment) into ``output_path``.
    Raises ``ValueError`` when there is nothing to plot and
    ``ExportWriteFailed`` when the image cannot be written.
    """
    df = records_to_frame(store.query(key, kind=kind, limit=limit))
    metrics: List[str] = [c for c in METRICS if not df.empty and df[c].notna().any()]
    if not metrics:
        raise ValueError(f"no numeric data stored for {key or 'environment'}")

    sns.set_style("whitegrid")
    fig, axes = plt.subplots(len(metrics), 1, figsize=(12, 3 * len(metrics)),
                             sharex=True, squeeze=False)
    try:
        for ax, column in zip(axes[:, 0], metrics):
            data = df[df[column].notna()]
            hue = "peer_mac" if column == "distance" and data["peer_mac"].notna().any() else None
            sns.lineplot(data=data, x="timestamp", y=column, hue=hue, marker="o", ax=ax)
            ax.set_ylabel(METRICS[column])
            ax.set_xlabel("")
        axes[-1, 0].set_xlabel("Time (UTC)")
        fig.suptitle(f"History of {key or 'environment'} ({len(df)} records)")
        fig.tight_layout()
        path = Path(output_path)
        try:
            fig.savefig(path)
        except OSError as exc:
            raise ExportWriteFailed(f"cannot write plot to {path}", operation="plot",
                                    key=key, cause=exc) from exc
    finally:
        plt.close(fig)

    logger.info("Rendered %d records of %s to %s", len(df), key or "environment", path)
    return path

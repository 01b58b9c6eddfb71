"""Thread-safe DataFrame store and completion-callback recorder for meter data.

This module provides:
- DataStore: Thread-safe in-memory DataFrame with export capabilities
- DataRecorder: Completion callback for PowerMeter.async_init() that appends
  every successful measurement to a DataStore
"""

import logging
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Callable, Optional

import pandas as pd

from data_store.schemas import MEASUREMENT_COLUMNS, SCHEMA, measurement_to_row
from pf9802_lib.errors import PF9802Error
from pf9802_lib.models import Measurement

logger = logging.getLogger(__name__)


class DataStore:
    """Thread-safe in-memory DataFrame store for meter measurements.

    Maintains a pandas DataFrame with normalized schema (timestamp plus the
    five measurement fields). Oldest rows are trimmed beyond max_rows.
    """

    def __init__(self, max_rows: int = 100000) -> None:
        """Initialize empty DataFrame store.

        Args:
            max_rows: Maximum rows to keep in memory. Older rows are trimmed after appends.
        """
        if max_rows <= 0:
            raise ValueError(f"max_rows must be positive, got {max_rows}")

        self._lock = RLock()
        self._df = self._empty()
        self._max_rows = max_rows

    def append(self, measurement: Measurement, ts: Optional[datetime] = None) -> None:
        """Append one measurement.

        Args:
            measurement: Decoded meter reading
            ts: Completion time, defaults to now (UTC)
        """
        row = measurement_to_row(measurement, ts)

        with self._lock:
            new_df = pd.DataFrame([row], columns=list(SCHEMA.keys()))
            if self._df.empty:
                self._df = new_df
            else:
                self._df = pd.concat([self._df, new_df], ignore_index=True)

            if len(self._df) > self._max_rows:
                excess = len(self._df) - self._max_rows
                self._df = self._df.iloc[excess:].reset_index(drop=True)
                logger.debug(f"Trimmed {excess} oldest rows, now {len(self._df)} rows")

    def get_dataframe(self) -> pd.DataFrame:
        """Get copy of entire DataFrame.

        Returns:
            Copy of internal DataFrame
        """
        with self._lock:
            return self._df.copy()

    def get_latest(self) -> Optional[dict]:
        """Get the most recent measurement row as a dictionary.

        Returns:
            Dictionary of latest row, or None if DataFrame is empty
        """
        with self._lock:
            if self._df.empty:
                return None
            return self._df.iloc[-1].to_dict()

    def get_stats(self) -> dict:
        """Get summary statistics about stored data.

        Returns:
            Dictionary with keys:
                - row_count: Total number of measurements
                - start_time: ISO timestamp of first measurement (or None)
                - end_time: ISO timestamp of last measurement (or None)
                - duration_s: Time span of data in seconds (or 0)
                - est_sample_rate_hz: Estimated exchange rate (or 0)
                - fields: {field: {"mean", "min", "max"}} per measurement field
        """
        with self._lock:
            if self._df.empty:
                return {
                    "row_count": 0,
                    "start_time": None,
                    "end_time": None,
                    "duration_s": 0.0,
                    "est_sample_rate_hz": 0.0,
                    "fields": {},
                }

            timestamps = pd.to_datetime(self._df["timestamp"], format="ISO8601", utc=True)
            start = timestamps.iloc[0]
            end = timestamps.iloc[-1]
            duration_s = (end - start).total_seconds()

            rate_hz = 0.0
            if duration_s > 0 and len(self._df) > 1:
                rate_hz = (len(self._df) - 1) / duration_s

            values = self._df[MEASUREMENT_COLUMNS].astype(float)
            fields = {
                name: {
                    "mean": float(values[name].mean()),
                    "min": float(values[name].min()),
                    "max": float(values[name].max()),
                }
                for name in MEASUREMENT_COLUMNS
            }

            return {
                "row_count": len(self._df),
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
                "duration_s": duration_s,
                "est_sample_rate_hz": rate_hz,
                "fields": fields,
            }

    def export_csv(self, path: Optional[str] = None) -> str:
        """Export DataFrame to CSV file.

        Args:
            path: Output file path. If None, generates timestamped filename.

        Returns:
            Absolute path to exported file
        """
        with self._lock:
            if path is None:
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                path = f"pf9802_data_{timestamp}.csv"

            self._df.to_csv(path, index=False)
            abs_path = str(Path(path).resolve())
            logger.info(f"Exported {len(self._df)} rows to CSV: {abs_path}")
            return abs_path

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._df = self._empty()
            logger.debug("DataStore cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._df)

    @staticmethod
    def _empty() -> pd.DataFrame:
        return pd.DataFrame(columns=list(SCHEMA.keys()))


class DataRecorder:
    """Completion callback that records measurements into a DataStore.

    Pass an instance to PowerMeter.async_init(). Errors are counted and
    forwarded to on_error; recording stops the meter after max_samples
    successful exchanges if a limit is given.
    """

    def __init__(
        self,
        store: DataStore,
        max_samples: Optional[int] = None,
        on_error: Optional[Callable[[object, PF9802Error], None]] = None,
    ) -> None:
        """Initialize recorder.

        Args:
            store: DataStore to append measurements to
            max_samples: Stop the meter after this many measurements (None = no limit)
            on_error: Called as on_error(meter, error) for every reported error
        """
        self._store = store
        self._max_samples = max_samples
        self._on_error = on_error
        self.samples = 0
        self.errors = 0

    def __call__(self, meter, measurement: Optional[Measurement], error: Optional[PF9802Error]) -> None:
        if error is not None:
            self.errors += 1
            logger.warning(f"Recorder got error ({error.kind.name}): {error}")
            if self._on_error is not None:
                self._on_error(meter, error)
            return

        assert measurement is not None
        self._store.append(measurement)
        self.samples += 1

        if self._max_samples is not None and self.samples >= self._max_samples:
            logger.info(f"Recorded {self.samples} measurements, stopping meter")
            meter.async_stop()

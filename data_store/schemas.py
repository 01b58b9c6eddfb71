"""Schema normalization for PF9802 measurements to DataFrame format."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pf9802_lib import protocol
from pf9802_lib.models import Measurement

# DataFrame schema: column names and their dtypes
SCHEMA = {
    "timestamp": str,  # UTC ISO 8601 format
    "voltage": float,
    "current": float,
    "power_factor": float,
    "frequency": float,
    "power": float,
}

MEASUREMENT_COLUMNS = list(protocol.FIELD_NAMES)


def measurement_to_row(measurement: Measurement, ts: Optional[datetime] = None) -> Dict[str, Any]:
    """Convert a Measurement to a DataFrame row dictionary.

    Args:
        measurement: Decoded meter reading
        ts: Time the reading completed. Naive datetimes are taken as UTC.
            Defaults to now.

    Returns:
        Dictionary with all SCHEMA keys, ready for DataFrame append
    """
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    else:
        ts = ts.astimezone(timezone.utc)

    row: Dict[str, Any] = {"timestamp": ts.isoformat()}
    row.update(measurement.as_dict())
    return row

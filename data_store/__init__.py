"""DataFrame recording layer for PF9802 measurements."""

from data_store.schemas import SCHEMA, measurement_to_row
from data_store.store import DataRecorder, DataStore

__all__ = ["SCHEMA", "measurement_to_row", "DataStore", "DataRecorder"]

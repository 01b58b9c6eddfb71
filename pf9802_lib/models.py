"""Data models for PF9802 power meter library."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict


class ExchangeState(Enum):
    """States of the non-blocking request/response machine."""

    IDLE = "idle"
    AWAITING_WRITE_READY = "awaiting_write_ready"
    AWAITING_RESPONSE_BYTE = "awaiting_response_byte"
    AWAITING_PAYLOAD = "awaiting_payload"


class ErrorKind(Enum):
    """Failure category of an exchange, shared by blocking and async paths."""

    RESPONSE = 1
    TRUNCATED = 2
    IO = 3


@dataclass(frozen=True)
class Measurement:
    """One decoded set of readings from the meter.

    Attributes:
        voltage: RMS voltage in volts.
        current: RMS current in amperes.
        power_factor: Power factor (dimensionless).
        frequency: Line frequency in Hz.
        power: Active power in watts.
    """

    voltage: float
    current: float
    power_factor: float
    frequency: float
    power: float

    def as_dict(self) -> Dict[str, float]:
        """Return fields as a dict in wire order."""
        return asdict(self)

"""
pf9802_lib - Python driver for the PF9802 single-phase power meter.

Supports the meter's fixed 2400 baud binary request/response protocol, both
as a blocking call and as a non-blocking state machine driven by a reactor.
"""

from pf9802_lib.errors import (
    PF9802Error,
    SerialIOError,
    TruncatedStream,
    UnexpectedResponse,
)
from pf9802_lib.meter import PowerMeter
from pf9802_lib.models import ErrorKind, ExchangeState, Measurement
from pf9802_lib.reactor import EVENT_READ, EVENT_WRITE, AsyncioReactor, SelectorReactor

__version__ = "0.1.0"

__all__ = [
    "PowerMeter",
    "Measurement",
    "ExchangeState",
    "ErrorKind",
    "SelectorReactor",
    "AsyncioReactor",
    "EVENT_READ",
    "EVENT_WRITE",
    "PF9802Error",
    "UnexpectedResponse",
    "TruncatedStream",
    "SerialIOError",
]

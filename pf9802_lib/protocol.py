"""Wire protocol constants for the PF9802 power meter.

The meter speaks a single command: the host sends one request byte, the
meter answers with one response byte followed by a fixed payload of five
big-endian IEEE-754 single precision floats. There is no checksum, no
length prefix and no framing beyond the fixed sizes.
"""

from typing import Final, Tuple

# ============================================================================
# Markers
# ============================================================================

REQUEST_MARKER: Final[int] = 0x05  # Sent by host to request one reading
RESPONSE_MARKER: Final[int] = 0xFA  # First byte of every meter reply

REQUEST: Final[bytes] = bytes([REQUEST_MARKER])

# ============================================================================
# Payload Layout
# ============================================================================

FIELD_SIZE: Final[int] = 4
FIELD_COUNT: Final[int] = 5
PAYLOAD_SIZE: Final[int] = FIELD_SIZE * FIELD_COUNT

# Order on the wire
FIELD_NAMES: Final[Tuple[str, ...]] = (
    "voltage",
    "current",
    "power_factor",
    "frequency",
    "power",
)

# ============================================================================
# Serial Line Settings
# ============================================================================

# Fixed by the meter firmware, not configurable on the device
BAUD_RATE: Final[int] = 2400
BYTESIZE: Final[int] = 8
PARITY: Final[str] = "N"  # serial.PARITY_NONE
STOPBITS: Final[int] = 1

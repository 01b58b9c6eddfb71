"""Pure functions for decoding and encoding the meter's measurement payload."""

import logging
import struct
from typing import Tuple

from pf9802_lib import protocol
from pf9802_lib.models import Measurement

logger = logging.getLogger(__name__)

# Five big-endian unsigned 32-bit words
_WIRE_WORDS = struct.Struct(f">{protocol.FIELD_COUNT}I")
_HOST_WORD = struct.Struct("=I")
_HOST_FLOAT = struct.Struct("=f")


def word_to_float(word: int) -> float:
    """Reinterpret the bits of an unsigned 32-bit word as an IEEE-754 float.

    Args:
        word: Unsigned integer in host order (0 <= word < 2**32)

    Returns:
        Float whose single precision bit pattern equals word
    """
    return _HOST_FLOAT.unpack(_HOST_WORD.pack(word))[0]


def float_to_word(value: float) -> int:
    """Inverse of word_to_float."""
    return _HOST_WORD.unpack(_HOST_FLOAT.pack(value))[0]


def decode_words(payload: bytes) -> Tuple[int, ...]:
    """Split a payload into its five words, converted from big-endian.

    Args:
        payload: Exactly PAYLOAD_SIZE bytes from the meter

    Returns:
        Tuple of five unsigned integers in wire order

    Raises:
        ValueError: If payload is not exactly PAYLOAD_SIZE bytes
    """
    if len(payload) != protocol.PAYLOAD_SIZE:
        raise ValueError(
            f"Payload must be {protocol.PAYLOAD_SIZE} bytes, got {len(payload)}"
        )
    return _WIRE_WORDS.unpack(bytes(payload))


def decode_payload(payload: bytes) -> Measurement:
    """Decode a 20-byte payload into a Measurement.

    Every 20-byte input decodes to some Measurement. Values are not range
    checked and no unit conversion is applied.

    Args:
        payload: Raw payload bytes as read after the response marker

    Returns:
        Measurement with fields in wire order

    Raises:
        ValueError: If payload is not exactly PAYLOAD_SIZE bytes
    """
    values = [word_to_float(word) for word in decode_words(payload)]
    measurement = Measurement(*values)
    logger.debug(f"Decoded payload {bytes(payload).hex()} -> {measurement}")
    return measurement


def encode_measurement(measurement: Measurement) -> bytes:
    """Encode a Measurement into the meter's 20-byte wire format.

    Used by the fake meter and tests; the host never sends a payload.
    """
    words = [float_to_word(getattr(measurement, name)) for name in protocol.FIELD_NAMES]
    return _WIRE_WORDS.pack(*words)

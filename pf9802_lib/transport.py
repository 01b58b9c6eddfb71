"""Serial transport layer and partial-I/O primitives for PF9802 communication.

read_n() and write_n() are the only functions that interpret platform
error codes. Everything above them sees a full transfer, a short transfer
(possibly zero bytes) or a SerialIOError.
"""

import logging
import os
import termios
from typing import NamedTuple, Protocol, Union

from pf9802_lib import protocol
from pf9802_lib.errors import SerialIOError

logger = logging.getLogger(__name__)

Buffer = Union[bytearray, memoryview]


class RawPort(Protocol):
    """Protocol for a byte-oriented descriptor (allows test doubles).

    read() and write() follow os.read()/os.write() semantics: they raise
    BlockingIOError when a non-blocking descriptor is not ready,
    InterruptedError when a signal arrived, and read() returns b"" at
    end-of-stream.
    """

    def fileno(self) -> int:
        """Return the OS-level descriptor."""
        ...

    def read(self, size: int) -> bytes:
        """Read up to size bytes."""
        ...

    def write(self, data: bytes) -> int:
        """Write bytes, returning how many were accepted."""
        ...

    def set_blocking(self, blocking: bool) -> None:
        """Switch the descriptor between blocking and non-blocking mode."""
        ...

    def flush_io(self) -> None:
        """Discard pending input and untransmitted output."""
        ...

    def close(self) -> None:
        """Close the descriptor."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if descriptor is open."""
        ...


class ReadResult(NamedTuple):
    """Outcome of a bounded read.

    Attributes:
        count: Bytes transferred by this call (0 <= count <= requested).
        eof: True if the peer closed the stream. False for a short count
             means the descriptor would block: retry on the next readable
             notification.
    """

    count: int
    eof: bool


def read_n(port: RawPort, buf: Buffer, n: int, offset: int = 0) -> ReadResult:
    """Read up to n bytes into buf[offset:offset + n].

    Keeps reading until n bytes arrived, the descriptor would block, or
    the stream ended. Signal interruptions are retried.

    Args:
        port: Descriptor to read from
        buf: Writable buffer receiving the bytes
        n: Number of bytes wanted
        offset: Position in buf where the first byte goes

    Returns:
        ReadResult with the number of bytes stored and the end-of-stream flag

    Raises:
        ValueError: If buf cannot hold n bytes at offset
        SerialIOError: If the underlying read fails
    """
    if offset < 0 or n < 0 or offset + n > len(buf):
        raise ValueError(f"Cannot read {n} bytes at offset {offset} into {len(buf)}-byte buffer")

    view = memoryview(buf)
    total = 0
    eof = False

    while total < n:
        try:
            chunk = port.read(n - total)
        except InterruptedError:
            continue
        except BlockingIOError:
            break
        except OSError as e:
            raise SerialIOError(f"Failed to read from port: {e}", errno=e.errno) from e

        if not chunk:
            eof = True
            break

        start = offset + total
        view[start : start + len(chunk)] = chunk
        total += len(chunk)

    logger.debug(f"read_n: {total}/{n} bytes, eof={eof}")
    return ReadResult(total, eof)


def write_n(port: RawPort, data: bytes) -> int:
    """Write all of data, retrying on signal interruption.

    Args:
        port: Descriptor to write to
        data: Bytes to send

    Returns:
        len(data), always

    Raises:
        SerialIOError: If a write fails, would block, or makes no progress
    """
    view = memoryview(data)
    sent = 0

    while sent < len(view):
        try:
            written = port.write(view[sent:])
        except InterruptedError:
            continue
        except OSError as e:
            raise SerialIOError(f"Failed to write to port: {e}", errno=e.errno) from e

        if not written:
            raise SerialIOError(f"Write made no progress after {sent}/{len(view)} bytes")
        sent += written

    logger.debug(f"write_n: sent {sent} bytes: {bytes(data)!r}")
    return sent


class FdPort:
    """RawPort over a plain OS descriptor (tty, pipe or socket)."""

    def __init__(self, fd: int) -> None:
        """Initialize with an already open descriptor.

        Args:
            fd: Open descriptor. Ownership passes to this object.
        """
        self._fd = fd
        self._closed = False

    def fileno(self) -> int:
        if self._closed:
            raise SerialIOError("Port is not open")
        return self._fd

    def read(self, size: int) -> bytes:
        return os.read(self.fileno(), size)

    def write(self, data: bytes) -> int:
        return os.write(self.fileno(), data)

    def set_blocking(self, blocking: bool) -> None:
        os.set_blocking(self.fileno(), blocking)

    def flush_io(self) -> None:
        """Discard pending input and output.

        A tty is flushed with TCIOFLUSH. Other descriptors have nothing
        to discard on the output side, so pending input is drained.
        """
        fd = self.fileno()
        if os.isatty(fd):
            try:
                termios.tcflush(fd, termios.TCIOFLUSH)
            except termios.error as e:
                raise SerialIOError(f"Failed to flush port: {e}", errno=e.args[0]) from e
            logger.debug("Flushed tty input and output")
            return

        was_blocking = os.get_blocking(fd)
        os.set_blocking(fd, False)
        drained = 0
        try:
            while True:
                try:
                    chunk = os.read(fd, 4096)
                except (BlockingIOError, InterruptedError):
                    break
                if not chunk:
                    break
                drained += len(chunk)
        finally:
            os.set_blocking(fd, was_blocking)
        logger.debug(f"Drained {drained} stale input bytes")

    def close(self) -> None:
        if not self._closed:
            os.close(self._fd)
            self._closed = True

    @property
    def is_open(self) -> bool:
        return not self._closed


class SerialPort(FdPort):
    """RawPort over a pyserial port configured for the PF9802.

    Reads and writes bypass pyserial's timeout loops and go straight to the
    descriptor, so would-block and end-of-stream stay distinguishable.
    POSIX only: pyserial exposes no descriptor on Windows.
    """

    def __init__(self, serial_port) -> None:
        """Wrap an open serial.Serial instance."""
        super().__init__(serial_port.fileno())
        self._serial = serial_port

    @classmethod
    def open(cls, path: str, baud: int = protocol.BAUD_RATE) -> "SerialPort":
        """Open and configure a real serial port (requires pyserial).

        The line is set to 8 data bits, no parity, one stop bit, no flow
        control, raw mode.

        Args:
            path: Serial device name (e.g., "/dev/ttyUSB0")
            baud: Baud rate. Default matches the meter's fixed 2400 baud.

        Returns:
            SerialPort instance in blocking mode

        Raises:
            SerialIOError: If port cannot be opened
        """
        try:
            import serial  # type: ignore
        except ImportError as e:
            raise SerialIOError("pyserial not installed. Run: pip install pyserial") from e

        try:
            ser = serial.Serial(
                port=path,
                baudrate=baud,
                bytesize=protocol.BYTESIZE,
                parity=protocol.PARITY,
                stopbits=protocol.STOPBITS,
                timeout=None,
                rtscts=False,
                dsrdtr=False,
                xonxoff=False,
            )
        except (OSError, ValueError) as e:
            raise SerialIOError(
                f"Failed to open {path} at {baud} baud: {e}",
                errno=getattr(e, "errno", None),
            ) from e

        port = cls(ser)
        # pyserial opens with O_NONBLOCK; start out blocking
        port.set_blocking(True)
        logger.info(f"Opened serial port {path} at {baud} baud")
        return port

    def flush_io(self) -> None:
        try:
            self._serial.reset_input_buffer()
            self._serial.reset_output_buffer()
        except OSError as e:
            raise SerialIOError(f"Failed to flush port: {e}", errno=e.errno) from e
        logger.debug("Flushed serial input and output")

    def close(self) -> None:
        if self._serial.is_open:
            self._serial.close()
            logger.info("Closed serial port")
        self._closed = True

    @property
    def is_open(self) -> bool:
        return self._serial.is_open

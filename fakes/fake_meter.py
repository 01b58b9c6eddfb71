"""Fake descriptor that simulates a PF9802 power meter on a serial line.

Reads are served from a script of chunks and events so tests can control
exactly how a reply is split across readiness notifications. Optionally the
fake answers every request marker on its own, like the real meter does.
"""

import errno
import logging
from collections import deque
from typing import Deque, Iterable, List, Optional, Union

from pf9802_lib import parsing, protocol
from pf9802_lib.models import Measurement

logger = logging.getLogger(__name__)


class _Event:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


WOULD_BLOCK = _Event("WOULD_BLOCK")  # read()/write() raise BlockingIOError once
INTERRUPT = _Event("INTERRUPT")  # read()/write() raise InterruptedError once
EOF = _Event("EOF")  # read() returns b"" (sticky: the stream stays closed)

ReadStep = Union[bytes, _Event, OSError]
WriteStep = Union[int, _Event, OSError]

DEFAULT_MEASUREMENT = Measurement(
    voltage=230.0, current=1.5, power_factor=0.9375, frequency=50.0, power=323.4375
)


class FakeMeterPort:
    """Deterministic RawPort double for PowerMeter tests.

    Read script entries:
    - bytes: served to read(); a chunk longer than requested is split
    - WOULD_BLOCK / INTERRUPT: raise BlockingIOError / InterruptedError
    - EOF: end-of-stream, every later read returns b""
    - OSError instance: raised from read()

    When the script runs dry, read() raises BlockingIOError (nothing ready),
    or returns b"" after EOF was reached.

    Write script entries (consumed one per write() call, default accepts all):
    - int: accept at most that many bytes (0 means no progress)
    - WOULD_BLOCK / INTERRUPT / OSError: raised from write()
    """

    def __init__(
        self,
        auto_reply: Optional[Measurement] = None,
        marker: int = protocol.RESPONSE_MARKER,
        reply_chunks: Optional[List[int]] = None,
        fd: int = 1000,
    ) -> None:
        """Initialize fake meter.

        Args:
            auto_reply: If set, every request marker written queues a reply
                        carrying this measurement
            marker: Response marker byte used by auto replies
            reply_chunks: Split auto replies into chunks of these sizes with a
                          WOULD_BLOCK between chunks. None sends it in one piece.
            fd: Value returned by fileno()
        """
        self.auto_reply = auto_reply
        self.marker = marker
        self.reply_chunks = reply_chunks
        self._fd = fd

        self.read_script: Deque[ReadStep] = deque()
        self.write_script: Deque[WriteStep] = deque()
        self.written = bytearray()

        self.is_open = True
        self.blocking = True
        self.flush_count = 0
        self.read_calls = 0
        self._eof = False

    # ========================================================================
    # Script Helpers
    # ========================================================================

    def queue_read(self, *steps: ReadStep) -> None:
        """Append steps to the read script."""
        self.read_script.extend(steps)

    def queue_write(self, *steps: WriteStep) -> None:
        """Append steps to the write script."""
        self.write_script.extend(steps)

    def queue_reply(
        self,
        measurement: Measurement = DEFAULT_MEASUREMENT,
        marker: Optional[int] = None,
        chunks: Optional[Iterable[int]] = None,
    ) -> bytes:
        """Queue one complete meter reply (marker + payload).

        Args:
            measurement: Values to encode in the payload
            marker: Response marker byte, defaults to self.marker
            chunks: Chunk sizes, a WOULD_BLOCK is placed between chunks

        Returns:
            The raw reply bytes
        """
        reply = bytes([self.marker if marker is None else marker])
        reply += parsing.encode_measurement(measurement)
        self.queue_read(*split_reply(reply, chunks))
        return reply

    # ========================================================================
    # RawPort Interface
    # ========================================================================

    def fileno(self) -> int:
        self._check_open()
        return self._fd

    def read(self, size: int) -> bytes:
        self._check_open()
        self.read_calls += 1

        if self._eof:
            return b""
        if not self.read_script:
            raise BlockingIOError(errno.EAGAIN, "Resource temporarily unavailable")

        step = self.read_script.popleft()
        if step is EOF:
            self._eof = True
            return b""
        if step is WOULD_BLOCK:
            raise BlockingIOError(errno.EAGAIN, "Resource temporarily unavailable")
        if step is INTERRUPT:
            raise InterruptedError(errno.EINTR, "Interrupted system call")
        if isinstance(step, OSError):
            raise step

        chunk = bytes(step)
        if len(chunk) > size:
            self.read_script.appendleft(chunk[size:])
            chunk = chunk[:size]
        logger.debug(f"FakeMeterPort sending: {chunk!r}")
        return chunk

    def write(self, data: bytes) -> int:
        self._check_open()
        data = bytes(data)
        accepted = len(data)

        if self.write_script:
            step = self.write_script.popleft()
            if step is WOULD_BLOCK:
                raise BlockingIOError(errno.EAGAIN, "Resource temporarily unavailable")
            if step is INTERRUPT:
                raise InterruptedError(errno.EINTR, "Interrupted system call")
            if isinstance(step, OSError):
                raise step
            accepted = min(accepted, int(step))

        self.written.extend(data[:accepted])
        logger.debug(f"FakeMeterPort received: {data[:accepted]!r}")

        if self.auto_reply is not None:
            for byte in data[:accepted]:
                if byte == protocol.REQUEST_MARKER:
                    self.queue_reply(self.auto_reply, chunks=self.reply_chunks)
        return accepted

    def set_blocking(self, blocking: bool) -> None:
        self._check_open()
        self.blocking = blocking

    def flush_io(self) -> None:
        """Discard pending (scripted) input."""
        self._check_open()
        self.flush_count += 1
        self.read_script.clear()

    def close(self) -> None:
        self.is_open = False
        logger.debug("FakeMeterPort closed")

    def _check_open(self) -> None:
        if not self.is_open:
            raise OSError(errno.EBADF, "Bad file descriptor")


class RecordingReactor:
    """Reactor double that records interest changes and fires on demand.

    calls holds ("register" | "modify", events) and ("unregister", None)
    tuples in call order.
    """

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.fileobj = None
        self.events: Optional[int] = None
        self.handler = None

    def register(self, fileobj, events, handler) -> None:
        if self.handler is not None:
            raise KeyError(f"{fileobj!r} is already registered")
        self.calls.append(("register", events))
        self.fileobj, self.events, self.handler = fileobj, events, handler

    def modify(self, fileobj, events, handler) -> None:
        if self.handler is None:
            raise KeyError(f"{fileobj!r} is not registered")
        self.calls.append(("modify", events))
        self.events, self.handler = events, handler

    def unregister(self, fileobj) -> None:
        if self.handler is None:
            raise KeyError(f"{fileobj!r} is not registered")
        self.calls.append(("unregister", None))
        self.fileobj, self.events, self.handler = None, None, None

    @property
    def registered(self) -> bool:
        return self.handler is not None

    def interest_changes(self) -> List[tuple]:
        """Calls that registered or switched interest."""
        return [call for call in self.calls if call[0] in ("register", "modify")]

    def fire(self, events: Optional[int] = None) -> None:
        """Deliver one notification for the current interest."""
        if self.handler is None:
            raise RuntimeError("Nothing registered")
        self.handler(self.events if events is None else events)


def split_reply(reply: bytes, chunks: Optional[Iterable[int]] = None) -> List[ReadStep]:
    """Split reply bytes into read steps separated by WOULD_BLOCK.

    Args:
        reply: Bytes to split
        chunks: Chunk sizes; any remainder forms a final chunk

    Returns:
        List of read steps
    """
    if not chunks:
        return [reply]

    steps: List[ReadStep] = []
    pos = 0
    for size in chunks:
        if pos >= len(reply):
            break
        if steps:
            steps.append(WOULD_BLOCK)
        steps.append(reply[pos : pos + size])
        pos += size
    if pos < len(reply):
        steps.append(WOULD_BLOCK)
        steps.append(reply[pos:])
    return steps

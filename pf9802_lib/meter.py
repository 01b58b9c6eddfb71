"""PF9802 connection handle: blocking exchange and non-blocking state machine."""

import logging
from typing import Callable, Optional

from pf9802_lib import parsing, protocol
from pf9802_lib.errors import (
    PF9802Error,
    SerialIOError,
    TruncatedStream,
    UnexpectedResponse,
)
from pf9802_lib.models import ExchangeState, Measurement
from pf9802_lib.reactor import EVENT_READ, EVENT_WRITE, Reactor
from pf9802_lib.transport import RawPort, SerialPort, read_n, write_n

logger = logging.getLogger(__name__)

# callback(meter, measurement, error): exactly one of measurement/error is None
CompletionCallback = Callable[
    ["PowerMeter", Optional[Measurement], Optional[PF9802Error]], None
]


class PowerMeter:
    """Connection to one PF9802 power meter.

    Supports two ways of reading the meter, which must not be mixed while
    the async machine is running:

    - get(): one blocking request/response exchange.
    - async_init() + async_start(): a repeating exchange driven by
      readiness notifications from a host reactor. The completion callback
      is invoked once per exchange until async_stop() is called or an
      error is reported.

    Not thread-safe. All calls, including handle_event(), must come from
    the thread running the reactor.
    """

    def __init__(self, port: RawPort) -> None:
        """Initialize meter on an already open descriptor.

        Args:
            port: Object implementing RawPort protocol
                  (e.g., SerialPort or a fake for testing)
        """
        self._port = port
        self._state = ExchangeState.IDLE
        self._payload = bytearray(protocol.PAYLOAD_SIZE)
        self._cursor = 0

        self._callback: Optional[CompletionCallback] = None
        self._reactor: Optional[Reactor] = None
        self._registered = False

    # ========================================================================
    # Connection Management
    # ========================================================================

    @classmethod
    def open(cls, path: str, baud: int = protocol.BAUD_RATE) -> "PowerMeter":
        """Open the serial device a meter is attached to.

        Args:
            path: Serial device name (e.g., "/dev/ttyUSB0")
            baud: Baud rate. Default is the meter's fixed rate.

        Returns:
            PowerMeter in IDLE state

        Raises:
            SerialIOError: If the device cannot be opened
        """
        return cls(SerialPort.open(path, baud))

    def close(self) -> None:
        """Stop any running exchange and release the descriptor."""
        if not self._port.is_open:
            return
        try:
            self.async_stop()
        finally:
            self._port.close()
        logger.info("Power meter connection closed")

    def __enter__(self) -> "PowerMeter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def port(self) -> RawPort:
        return self._port

    @property
    def state(self) -> ExchangeState:
        return self._state

    @property
    def cursor(self) -> int:
        """Payload bytes collected so far in the current exchange."""
        return self._cursor

    @property
    def is_running(self) -> bool:
        return self._state != ExchangeState.IDLE

    # ========================================================================
    # Blocking Exchange
    # ========================================================================

    def get(self) -> Measurement:
        """Perform one blocking request/response exchange.

        Sends the request marker, checks the response marker and reads the
        full payload. Nothing is retried: after a failure the stream position
        is unknown and the caller should flush before trying again.

        Returns:
            Decoded Measurement

        Raises:
            RuntimeError: If the async machine is running
            UnexpectedResponse: If the meter answered with the wrong marker
            TruncatedStream: If the stream ended before the reply was complete
            SerialIOError: If a read or write failed
        """
        if self._state != ExchangeState.IDLE:
            raise RuntimeError(
                f"Cannot run blocking exchange in state {self._state.value}. "
                "Call async_stop() first."
            )

        self._port.set_blocking(True)
        write_n(self._port, protocol.REQUEST)

        marker = bytearray(1)
        result = read_n(self._port, marker, 1)
        if result.count != 1:
            raise TruncatedStream(expected=1, received=result.count)
        if marker[0] != protocol.RESPONSE_MARKER:
            raise UnexpectedResponse(marker[0])

        payload = bytearray(protocol.PAYLOAD_SIZE)
        result = read_n(self._port, payload, protocol.PAYLOAD_SIZE)
        if result.count != protocol.PAYLOAD_SIZE:
            raise TruncatedStream(expected=protocol.PAYLOAD_SIZE, received=result.count)

        return parsing.decode_payload(payload)

    # ========================================================================
    # Non-blocking State Machine
    # ========================================================================

    def async_init(self, callback: CompletionCallback, reactor: Reactor) -> None:
        """Attach the completion callback and the reactor to register with.

        Any context the callback needs should be captured by the callback
        itself (closure, bound method or functools.partial).

        Args:
            callback: Called as callback(meter, measurement, error) after
                      every exchange. On success error is None; on failure
                      measurement is None.
            reactor: Host event loop implementing the Reactor protocol

        Raises:
            RuntimeError: If the machine is running
        """
        if self.is_running:
            raise RuntimeError("Cannot re-initialize while the exchange loop is running")

        self._callback = callback
        self._reactor = reactor
        self._state = ExchangeState.IDLE
        self._cursor = 0

    def async_start(self) -> None:
        """Begin the repeating exchange.

        Discards stale input, resets the payload cursor, switches the
        descriptor to non-blocking mode and waits for writability.

        Raises:
            RuntimeError: If async_init() was not called or already running
        """
        if self._callback is None or self._reactor is None:
            raise RuntimeError("async_init() must be called before async_start()")
        if self.is_running:
            raise RuntimeError(f"Exchange loop already running (state: {self._state.value})")

        self._port.flush_io()
        self._cursor = 0
        self._port.set_blocking(False)
        self._state = ExchangeState.AWAITING_WRITE_READY
        self._set_interest(EVENT_WRITE)
        logger.info("Exchange loop started")

    def async_stop(self) -> None:
        """Halt the exchange loop and discard unread input.

        Idempotent. Safe to call from inside the completion callback: the
        machine will not re-arm afterwards. A failed flush is logged and
        otherwise ignored, since the descriptor may already be dead.
        """
        was_running = self.is_running
        self._halt()
        if self._port.is_open:
            try:
                self._port.flush_io()
            except SerialIOError as e:
                logger.warning(f"Failed to flush port on stop: {e}")
        if was_running:
            logger.info("Exchange loop stopped")

    def handle_event(self, events: int) -> None:
        """Notification entry point, called by the reactor.

        Args:
            events: Ready event mask (EVENT_READ and/or EVENT_WRITE)
        """
        handler = {
            ExchangeState.AWAITING_WRITE_READY: self._on_write_ready,
            ExchangeState.AWAITING_RESPONSE_BYTE: self._on_response_byte,
            ExchangeState.AWAITING_PAYLOAD: self._on_payload,
        }.get(self._state)

        if handler is None:
            logger.debug(f"Ignoring event mask {events} in state {self._state.value}")
            return
        handler(events)

    def _on_write_ready(self, events: int) -> None:
        try:
            write_n(self._port, protocol.REQUEST)
        except SerialIOError as e:
            self._fail(e)
            return

        self._set_interest(EVENT_READ)
        self._state = ExchangeState.AWAITING_RESPONSE_BYTE
        logger.debug("Request sent, awaiting response marker")

    def _on_response_byte(self, events: int) -> None:
        marker = bytearray(1)
        try:
            result = read_n(self._port, marker, 1)
        except SerialIOError as e:
            self._fail(e)
            return

        if result.count == 0:
            if result.eof:
                self._fail(TruncatedStream(expected=1, received=0))
            return

        if marker[0] != protocol.RESPONSE_MARKER:
            self._fail(UnexpectedResponse(marker[0]))
            return

        self._state = ExchangeState.AWAITING_PAYLOAD
        # Payload bytes may already be buffered behind the marker
        self._on_payload(events)

    def _on_payload(self, events: int) -> None:
        remaining = protocol.PAYLOAD_SIZE - self._cursor
        try:
            result = read_n(self._port, self._payload, remaining, offset=self._cursor)
        except SerialIOError as e:
            self._fail(e)
            return

        self._cursor += result.count
        if self._cursor < protocol.PAYLOAD_SIZE:
            if result.eof:
                self._fail(
                    TruncatedStream(expected=protocol.PAYLOAD_SIZE, received=self._cursor)
                )
            else:
                logger.debug(f"Payload {self._cursor}/{protocol.PAYLOAD_SIZE} bytes")
            return

        measurement = parsing.decode_payload(self._payload)
        self._cursor = 0
        assert self._callback is not None
        self._callback(self, measurement, None)

        # Callback may have stopped (or stopped and restarted) the machine
        if self._state == ExchangeState.AWAITING_PAYLOAD:
            self._set_interest(EVENT_WRITE)
            self._state = ExchangeState.AWAITING_WRITE_READY

    # ========================================================================
    # Internal Helpers
    # ========================================================================

    def _fail(self, error: PF9802Error) -> None:
        """Report an error and end the current run without re-arming."""
        logger.warning(f"Exchange failed in state {self._state.value}: {error}")
        self._halt()
        assert self._callback is not None
        self._callback(self, None, error)

    def _halt(self) -> None:
        if self._registered:
            assert self._reactor is not None
            self._reactor.unregister(self._port)
            self._registered = False
        self._state = ExchangeState.IDLE
        self._cursor = 0

    def _set_interest(self, events: int) -> None:
        assert self._reactor is not None
        if self._registered:
            self._reactor.modify(self._port, events, self.handle_event)
        else:
            self._reactor.register(self._port, events, self.handle_event)
            self._registered = True

"""Tests for the notification-driven exchange loop."""

import errno
from typing import List, Optional, Tuple

import pytest

from fakes.fake_meter import (
    DEFAULT_MEASUREMENT,
    EOF,
    INTERRUPT,
    WOULD_BLOCK,
    FakeMeterPort,
    RecordingReactor,
    split_reply,
)
from pf9802_lib import parsing, protocol
from pf9802_lib.errors import PF9802Error, SerialIOError, TruncatedStream, UnexpectedResponse
from pf9802_lib.meter import PowerMeter
from pf9802_lib.models import ExchangeState, Measurement
from pf9802_lib.reactor import EVENT_READ, EVENT_WRITE

Outcome = Tuple[Optional[Measurement], Optional[PF9802Error]]

REPLY = bytes([protocol.RESPONSE_MARKER]) + parsing.encode_measurement(DEFAULT_MEASUREMENT)


class Collector:
    """Completion callback that records outcomes."""

    def __init__(self, stop_after: Optional[int] = None) -> None:
        self.outcomes: List[Outcome] = []
        self.stop_after = stop_after

    def __call__(self, meter, measurement, error) -> None:
        self.outcomes.append((measurement, error))
        if self.stop_after is not None and len(self.outcomes) >= self.stop_after:
            meter.async_stop()


def _started(port: FakeMeterPort, callback=None) -> Tuple[PowerMeter, RecordingReactor, Collector]:
    reactor = RecordingReactor()
    collector = callback if callback is not None else Collector()
    meter = PowerMeter(port)
    meter.async_init(collector, reactor)
    meter.async_start()
    return meter, reactor, collector


def test_start_registers_write_interest() -> None:
    """Test that start flushes, goes non-blocking and waits for writability."""
    port = FakeMeterPort()
    meter, reactor, _ = _started(port)

    assert meter.state == ExchangeState.AWAITING_WRITE_READY
    assert meter.cursor == 0
    assert reactor.calls == [("register", EVENT_WRITE)]
    assert port.flush_count == 1
    assert port.blocking is False


def test_start_requires_init() -> None:
    """Test that starting without a callback is refused."""
    meter = PowerMeter(FakeMeterPort())

    with pytest.raises(RuntimeError):
        meter.async_start()


def test_start_twice_refused() -> None:
    """Test that a running machine cannot be started again."""
    meter, _, _ = _started(FakeMeterPort())

    with pytest.raises(RuntimeError):
        meter.async_start()


def test_full_exchange_split_across_notifications() -> None:
    """Test write in 1, marker in 2 and payload in 3 notifications."""
    port = FakeMeterPort()
    meter, reactor, collector = _started(port)
    # Marker after one empty wakeup, then payload as 7 + 7 + 6 bytes
    port.queue_read(WOULD_BLOCK, *split_reply(REPLY, [8, 7, 6]))

    reactor.fire()  # writable: request goes out
    assert port.written == protocol.REQUEST
    assert meter.state == ExchangeState.AWAITING_RESPONSE_BYTE
    assert reactor.events == EVENT_READ

    reactor.fire()  # readable, nothing there yet
    assert meter.state == ExchangeState.AWAITING_RESPONSE_BYTE
    assert collector.outcomes == []

    reactor.fire()  # marker plus first 7 payload bytes
    assert meter.state == ExchangeState.AWAITING_PAYLOAD
    assert meter.cursor == 7

    reactor.fire()
    assert meter.cursor == 14
    assert collector.outcomes == []

    reactor.fire()  # last 6 bytes
    assert collector.outcomes == [(DEFAULT_MEASUREMENT, None)]
    assert meter.cursor == 0
    assert meter.state == ExchangeState.AWAITING_WRITE_READY
    assert reactor.interest_changes() == [
        ("register", EVENT_WRITE),
        ("modify", EVENT_READ),
        ("modify", EVENT_WRITE),
    ]


def test_marker_and_payload_in_one_notification() -> None:
    """Test that a matched marker falls through to payload reading."""
    port = FakeMeterPort(auto_reply=DEFAULT_MEASUREMENT)
    meter, reactor, collector = _started(port)

    reactor.fire()
    reactor.fire()

    assert collector.outcomes == [(DEFAULT_MEASUREMENT, None)]
    assert meter.state == ExchangeState.AWAITING_WRITE_READY


def test_loop_repeats_until_stopped() -> None:
    """Test that the machine re-arms itself after each exchange."""
    port = FakeMeterPort(auto_reply=DEFAULT_MEASUREMENT, reply_chunks=[1, 5, 15])
    meter, reactor, collector = _started(port, Collector(stop_after=3))

    for _ in range(20):
        if not reactor.registered:
            break
        reactor.fire()

    assert len(collector.outcomes) == 3
    assert all(m == DEFAULT_MEASUREMENT and e is None for m, e in collector.outcomes)
    assert port.written == protocol.REQUEST * 3
    assert meter.state == ExchangeState.IDLE
    assert not reactor.registered


def test_unexpected_marker_reported_once() -> None:
    """Test a 0x00 marker: one error, no further interest registration."""
    port = FakeMeterPort(auto_reply=DEFAULT_MEASUREMENT, marker=0x00)
    meter, reactor, collector = _started(port)

    reactor.fire()
    changes_before = len(reactor.interest_changes())
    reactor.fire()

    assert len(collector.outcomes) == 1
    measurement, error = collector.outcomes[0]
    assert measurement is None
    assert isinstance(error, UnexpectedResponse)
    assert error.received == 0x00
    assert len(reactor.interest_changes()) == changes_before
    assert not reactor.registered
    assert meter.state == ExchangeState.IDLE


def test_truncated_after_partial_payload() -> None:
    """Test stream closing after the marker and 10 of 20 payload bytes."""
    port = FakeMeterPort()
    meter, reactor, collector = _started(port)
    port.queue_read(REPLY[:11], WOULD_BLOCK, EOF)

    reactor.fire()
    reactor.fire()
    assert meter.cursor == 10
    assert collector.outcomes == []

    reactor.fire()

    assert len(collector.outcomes) == 1
    error = collector.outcomes[0][1]
    assert isinstance(error, TruncatedStream)
    assert error.received == 10
    assert not reactor.registered
    assert meter.cursor == 0


def test_truncated_before_marker() -> None:
    """Test stream closing before the response marker."""
    port = FakeMeterPort()
    _, reactor, collector = _started(port)
    port.queue_read(EOF)

    reactor.fire()
    reactor.fire()

    assert isinstance(collector.outcomes[0][1], TruncatedStream)
    assert collector.outcomes[0][1].received == 0


def test_interrupted_read_is_not_an_error() -> None:
    """Test that signal interruptions during reads are retried."""
    port = FakeMeterPort()
    _, reactor, collector = _started(port, Collector(stop_after=1))
    port.queue_read(INTERRUPT, REPLY[:1], INTERRUPT, REPLY[1:])

    reactor.fire()
    reactor.fire()

    assert collector.outcomes == [(DEFAULT_MEASUREMENT, None)]


def test_write_failure_reports_io_error() -> None:
    """Test that a failed request write stops the loop with errno."""
    port = FakeMeterPort()
    meter, reactor, collector = _started(port)
    port.queue_write(OSError(errno.EIO, "Input/output error"))

    reactor.fire()

    error = collector.outcomes[0][1]
    assert isinstance(error, SerialIOError)
    assert error.errno == errno.EIO
    assert not reactor.registered
    assert meter.state == ExchangeState.IDLE


def test_read_failure_reports_io_error() -> None:
    """Test that a failed payload read stops the loop."""
    port = FakeMeterPort()
    _, reactor, collector = _started(port)
    port.queue_read(REPLY[:5], OSError(errno.EIO, "Input/output error"))

    reactor.fire()
    reactor.fire()

    assert isinstance(collector.outcomes[0][1], SerialIOError)
    assert not reactor.registered


def test_stop_in_callback_prevents_rearm_and_restart_works() -> None:
    """Test stop from the callback, then a fresh start."""
    port = FakeMeterPort(auto_reply=DEFAULT_MEASUREMENT)
    meter, reactor, collector = _started(port, Collector(stop_after=1))

    reactor.fire()
    reactor.fire()

    assert len(collector.outcomes) == 1
    assert reactor.calls[-1] == ("unregister", None)
    assert ("modify", EVENT_WRITE) not in reactor.calls
    assert meter.state == ExchangeState.IDLE

    collector.stop_after = None
    meter.async_start()
    assert reactor.calls[-1] == ("register", EVENT_WRITE)
    reactor.fire()
    reactor.fire()

    assert len(collector.outcomes) == 2
    assert meter.state == ExchangeState.AWAITING_WRITE_READY


def test_stop_discards_partial_payload() -> None:
    """Test that stop mid-payload resets cursor and flushes stale bytes."""
    port = FakeMeterPort()
    meter, reactor, collector = _started(port)
    port.queue_read(REPLY[:6], WOULD_BLOCK, REPLY[6:])

    reactor.fire()
    reactor.fire()
    assert meter.cursor == 5

    meter.async_stop()

    assert meter.state == ExchangeState.IDLE
    assert meter.cursor == 0
    assert len(port.read_script) == 0
    assert port.flush_count == 2
    assert collector.outcomes == []


def test_stop_is_idempotent() -> None:
    """Test calling stop on an idle and on a stopped machine."""
    port = FakeMeterPort()
    meter, reactor, _ = _started(port)

    meter.async_stop()
    meter.async_stop()

    assert reactor.calls.count(("unregister", None)) == 1
    assert meter.state == ExchangeState.IDLE


def test_restart_after_error() -> None:
    """Test that start after an error flushes and begins a new exchange."""
    port = FakeMeterPort(auto_reply=DEFAULT_MEASUREMENT, marker=0x00)
    meter, reactor, collector = _started(port)

    reactor.fire()
    reactor.fire()
    assert isinstance(collector.outcomes[-1][1], UnexpectedResponse)

    port.marker = protocol.RESPONSE_MARKER
    meter.async_start()
    reactor.fire()
    reactor.fire()

    assert collector.outcomes[-1] == (DEFAULT_MEASUREMENT, None)


def test_notification_when_idle_is_ignored() -> None:
    """Test that a stray notification in IDLE does nothing."""
    port = FakeMeterPort()
    meter = PowerMeter(port)
    meter.async_init(Collector(), RecordingReactor())

    meter.handle_event(EVENT_WRITE)

    assert port.written == b""


def test_close_stops_running_loop() -> None:
    """Test that close() deregisters before releasing the descriptor."""
    port = FakeMeterPort()
    meter, reactor, _ = _started(port)

    meter.close()

    assert not reactor.registered
    assert not port.is_open


def test_reinit_while_running_refused() -> None:
    """Test that async_init() cannot swap callbacks mid-run."""
    meter, _, _ = _started(FakeMeterPort())

    with pytest.raises(RuntimeError):
        meter.async_init(Collector(), RecordingReactor())


class DeadLinePort(FakeMeterPort):
    """Fake whose flush fails once the line has gone away."""

    def __init__(self) -> None:
        super().__init__()
        self.dead = False

    def flush_io(self) -> None:
        if self.dead:
            raise SerialIOError("Failed to flush port: Input/output error", errno=errno.EIO)
        super().flush_io()


def test_stop_in_callback_survives_dead_line() -> None:
    """Test that stopping from the error callback does not raise on a dead line."""
    port = DeadLinePort()
    meter, reactor, collector = _started(port, Collector(stop_after=1))
    port.dead = True
    port.queue_write(OSError(errno.EIO, "Input/output error"))

    reactor.fire()

    assert isinstance(collector.outcomes[0][1], SerialIOError)
    assert meter.state == ExchangeState.IDLE
    assert not reactor.registered


def test_close_releases_dead_line() -> None:
    """Test that close() still closes the port when the flush fails."""
    port = DeadLinePort()
    meter, reactor, _ = _started(port)
    port.dead = True

    meter.close()

    assert not port.is_open
    assert not reactor.registered

#!/usr/bin/env python3
"""
Async monitor: print every PF9802 measurement until an error occurs.

Runs the non-blocking exchange loop on a selectors-based reactor. Each
completed exchange is printed; the first error stops the loop.

Usage:
    python examples/async_monitor.py /dev/ttyUSB0 [--csv out.csv] [--count N]
"""

import argparse
import logging
import os
import sys

from data_store import DataRecorder, DataStore
from pf9802_lib import PowerMeter, SelectorReactor, SerialIOError
from pf9802_lib.models import Measurement

# ============================================================================
# CONFIGURATION - overridable via environment
# ============================================================================
DEFAULT_PORT = os.getenv("PF9802_PORT", "/dev/ttyUSB0")
DEFAULT_BAUD = int(os.getenv("PF9802_BAUD", "2400"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.WARNING),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def print_measurement(m: Measurement) -> None:
    print(f"voltage : {m.voltage:.08f}")
    print(f"current : {m.current:.08f}")
    print(f"pf      : {m.power_factor:.08f}")
    print(f"freq    : {m.frequency:.08f}")
    print(f"power   : {m.power:.08f}")
    print(flush=True)


def main() -> int:
    parser = argparse.ArgumentParser(description="Stream PF9802 measurements")
    parser.add_argument("port", nargs="?", default=DEFAULT_PORT, help="Serial device")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD)
    parser.add_argument("--count", type=int, default=None, help="Stop after N measurements")
    parser.add_argument("--csv", default=None, help="Export measurements to this CSV file")
    args = parser.parse_args()

    try:
        meter = PowerMeter.open(args.port, args.baud)
    except SerialIOError as e:
        print(f"Cannot open {args.port}: {e}", file=sys.stderr)
        return 1

    store = DataStore()
    failed = False

    def on_error(m: PowerMeter, error) -> None:
        nonlocal failed
        failed = True
        print(f"pf9802 get failed: {error.kind.name} ({error})")
        if isinstance(error, SerialIOError):
            print(f"errno = {error.errno}")
        m.async_stop()

    recorder = DataRecorder(store, max_samples=args.count, on_error=on_error)

    def on_done(m: PowerMeter, measurement, error) -> None:
        recorder(m, measurement, error)
        if measurement is not None:
            print_measurement(measurement)

    reactor = SelectorReactor()
    with meter:
        meter.async_init(on_done, reactor)
        meter.async_start()
        try:
            reactor.run()
        except KeyboardInterrupt:
            meter.async_stop()
    reactor.close()

    if args.csv:
        store.export_csv(args.csv)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Blocking poll: read the meter with get() at a fixed interval.

Usage:
    python examples/blocking_poll.py /dev/ttyUSB0 [--interval 1.0] [--count 10]
"""

import argparse
import logging
import os
import sys
import time

from pf9802_lib import PF9802Error, PowerMeter

DEFAULT_PORT = os.getenv("PF9802_PORT", "/dev/ttyUSB0")
DEFAULT_BAUD = int(os.getenv("PF9802_BAUD", "2400"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING")

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.WARNING),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Poll a PF9802 with blocking reads")
    parser.add_argument("port", nargs="?", default=DEFAULT_PORT, help="Serial device")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD)
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between reads")
    parser.add_argument("--count", type=int, default=10)
    args = parser.parse_args()

    try:
        meter = PowerMeter.open(args.port, args.baud)
    except PF9802Error as e:
        print(f"Cannot open {args.port}: {e}", file=sys.stderr)
        return 1

    with meter:
        for i in range(args.count):
            start = time.time()
            try:
                m = meter.get()
            except PF9802Error as e:
                print(f"[{i + 1}/{args.count}] failed: {e.kind.name} ({e})")
                # Stream position is unknown after a failure
                meter.port.flush_io()
            else:
                print(
                    f"[{i + 1}/{args.count}] {m.voltage:.2f} V  {m.current:.3f} A  "
                    f"PF {m.power_factor:.3f}  {m.frequency:.2f} Hz  {m.power:.2f} W"
                )
            time.sleep(max(0.0, args.interval - (time.time() - start)))

    return 0


if __name__ == "__main__":
    sys.exit(main())

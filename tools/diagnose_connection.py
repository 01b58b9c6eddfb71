"""Diagnose a PF9802 link by sending one raw request and dumping the reply."""

import sys
import time

import serial

REQUEST = b"\x05"
EXPECTED_REPLY_SIZE = 21


def diagnose_connection(port="/dev/ttyUSB0", baud=2400):
    """Send the request marker directly with pyserial and hex-dump the answer."""

    print(f"\n=== Opening {port} at {baud} baud ===")
    ser = serial.Serial(
        port=port,
        baudrate=baud,
        bytesize=serial.EIGHTBITS,
        parity=serial.PARITY_NONE,
        stopbits=serial.STOPBITS_ONE,
        timeout=1.0,
        rtscts=False,
        dsrdtr=False,
        xonxoff=False
    )
    print(f"Port opened: {ser.is_open}")

    stale = ser.read(ser.in_waiting or 0)
    if stale:
        print(f"Discarding {len(stale)} stale bytes: {stale.hex(' ')}")
    ser.reset_input_buffer()
    ser.reset_output_buffer()

    print(f"\n=== Sending request {REQUEST.hex()} ===")
    start = time.time()
    sent = ser.write(REQUEST)
    ser.flush()
    print(f"Sent {sent} byte(s), flushed")

    reply = ser.read(EXPECTED_REPLY_SIZE)
    elapsed = time.time() - start
    print(f"\nReceived {len(reply)} byte(s) in {elapsed:.3f}s: {reply.hex(' ')}")

    if not reply:
        print("\n*** NO REPLY ***")
        print("\nPossible reasons:")
        print("1. Wrong port or meter not powered")
        print("2. Baud rate is not 2400")
        print("3. TX/RX lines swapped")
    elif reply[0] != 0xFA:
        print(f"\n*** UNEXPECTED MARKER {reply[0]:#04x} (expected 0xfa) ***")
    elif len(reply) < EXPECTED_REPLY_SIZE:
        print(f"\n*** SHORT REPLY: {len(reply) - 1} of 20 payload bytes ***")
    else:
        print("\n*** REPLY LOOKS VALID ***")

    ser.close()
    print("\nPort closed")

if __name__ == "__main__":
    port = sys.argv[1] if len(sys.argv) > 1 else "/dev/ttyUSB0"
    diagnose_connection(port)

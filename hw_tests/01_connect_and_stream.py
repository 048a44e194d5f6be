#!/usr/bin/env python3
"""Connect and stream smoke test.

Connects to a USB serial device, waits for output lines and exports them.

Expected behavior:
- The device is selected and opened at the requested baud rate
- At least --min-lines lines are framed within the timeout
- No line contains an ANSI escape character
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from hw_tests.common import (
    TestResult,
    export_lines_csv,
    robust_teardown,
    setup_logging,
    wait_for_lines,
)
from serial_log_lib import MonitorConfig, PySerialBackend, SerialSessionManager


def main():
    parser = argparse.ArgumentParser(description="Connect and stream smoke test")
    parser.add_argument("--port", default=None)
    parser.add_argument("--baud", type=int, default=9600)
    parser.add_argument("--min-lines", type=int, default=10)
    parser.add_argument("--timeout", type=float, default=30.0)
    args = parser.parse_args()

    logs_dir = Path(__file__).parent / "logs"
    out_dir = Path(__file__).parent / "out"
    logger = setup_logging("01_connect_and_stream", logs_dir)

    manager = None
    passed = False
    metrics = {}

    try:
        print(f"{'='*60}")
        print("Test: Connect and Stream")
        print(f"Port: {args.port or 'auto'}")
        print(f"{'='*60}\n")

        manager = SerialSessionManager(PySerialBackend(), MonitorConfig(baud_rate=args.baud))
        criteria = {"port": args.port} if args.port else {}
        handle = manager.request_device(**criteria)
        logger.info(f"Selected {handle.device} {handle.descriptor}")

        manager.connect()
        metrics["device"] = handle.device
        metrics["descriptor"] = str(handle.descriptor)
        metrics["baud_rate"] = manager.baud_rate

        got_lines = wait_for_lines(manager, args.min_lines, args.timeout, logger)
        lines = manager.buffer_snapshot()
        metrics["lines"] = len(lines)

        with_escape = [line for line in lines if "\x1b" in line.text]
        metrics["lines_with_escape"] = len(with_escape)

        csv_path = export_lines_csv(manager, out_dir, "connect_and_stream")
        metrics["csv"] = str(csv_path)

        passed = got_lines and not with_escape
        message = (
            f"Received {len(lines)} clean lines"
            if passed else
            f"Received {len(lines)} lines, {len(with_escape)} with escapes"
        )

    except Exception as e:
        logger.error(f"Test failed: {e}", exc_info=True)
        message = f"Exception: {e}"

    finally:
        robust_teardown(manager, logger)

    TestResult(passed, message, metrics).print_result()
    return 0 if passed else 1


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Attach to a USB serial device and print its output line by line.

Keeps running across unplug/replug of the same device until Ctrl-C.

Usage:
    python3 monitor_cli.py                      # the only USB serial port
    python3 monitor_cli.py --port /dev/ttyACM0 --baud 115200
    python3 monitor_cli.py --vid 0x2341 --filter "^ERR" --level error
"""

import argparse
import logging
import sys
import threading
from typing import List

from serial_log_lib import (
    LogFilter,
    LogLine,
    PySerialBackend,
    SerialLogError,
    SerialSessionManager,
    SessionState,
    load_config,
)


def _int_auto(value: str) -> int:
    """Parse decimal or 0x-prefixed hex."""
    return int(value, 0)


def main() -> int:
    parser = argparse.ArgumentParser(description="Serial log monitor")
    parser.add_argument("--port", help="Port name (default: the only USB serial port)")
    parser.add_argument("--vid", type=_int_auto, help="USB vendor id")
    parser.add_argument("--pid", type=_int_auto, help="USB product id")
    parser.add_argument("--baud", type=int, help="Baud rate (default from config)")
    parser.add_argument("--filter", default=None, help="Regex filter for printed lines")
    parser.add_argument("--level", default=None, help="all, error, warning, info, debug")
    parser.add_argument("--log-level", default="WARNING", help="Library log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    config = load_config()
    log_filter = LogFilter(
        pattern=config.filter_text if args.filter is None else args.filter,
        level=config.level if args.level is None else args.level,
    )
    if not log_filter.pattern_valid:
        print(f"Invalid filter: {log_filter.apply([]).error}", file=sys.stderr)
        return 2

    print_lock = threading.Lock()

    def print_lines(lines: List[LogLine]) -> None:
        for line in log_filter.apply(lines).lines:
            with print_lock:
                print(line.text, flush=True)

    manager = SerialSessionManager(PySerialBackend(), config, on_line=print_lines)

    try:
        criteria = {}
        if args.port:
            criteria["port"] = args.port
        if args.vid is not None:
            criteria["vendor_id"] = args.vid
        if args.pid is not None:
            criteria["product_id"] = args.pid

        handle = manager.request_device(**criteria)
        manager.connect(args.baud)
        print(
            f"--- Connected to {handle.device} {handle.descriptor} "
            f"at {manager.baud_rate} baud (Ctrl-C to quit) ---",
            file=sys.stderr,
        )

        last_state = manager.state
        while True:
            manager.wait_for_state(SessionState.IDLE, timeout=0.5)
            state = manager.state
            if state != last_state:
                print(f"--- {state.value} ---", file=sys.stderr)
                last_state = state
            if state == SessionState.IDLE:
                return 1 if manager.last_error else 0

    except SerialLogError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Unplug/replug test - verify transparent reconnection.

Tests the reconnect lifecycle:
- Connect to the device and collect lines
- Operator unplugs the device (or --fake simulates it)
- Manager goes Reconnecting and keeps retrying
- Operator replugs the device
- Manager returns to Connected and lines keep arriving

Expected behavior:
- Buffer contents from before the unplug are preserved
- Reconnect uses the original baud rate
- reconnect_count increments by one
"""

import argparse
import sys
import threading
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from hw_tests.common import (
    TestResult,
    export_lines_csv,
    robust_teardown,
    setup_logging,
    wait_for_lines,
)
from serial_log_lib import (
    MonitorConfig,
    PySerialBackend,
    SerialSessionManager,
    SessionState,
)

try:
    from fakes.fake_serial import FakeDevice, FakeSerialBackend
except ImportError:
    FakeSerialBackend = None


def _run_fake_device(device, backend, stop: threading.Event, unplug_after: float,
                     replug_after: float):
    """Emit a line every 100ms and unplug/replug on schedule."""
    start = time.time()
    n = 0
    unplugged = replugged = False
    while not stop.is_set():
        elapsed = time.time() - start
        if not unplugged and elapsed >= unplug_after:
            backend.unplug(device)
            unplugged = True
        elif unplugged and not replugged and elapsed >= replug_after:
            backend.plug(device)
            replugged = True
        if device.plugged:
            device.emit(f"\x1b[32mINFO\x1b[0m tick {n}\n".encode())
            n += 1
        time.sleep(0.1)


def main():
    parser = argparse.ArgumentParser(description="Unplug/replug reconnect test")
    parser.add_argument("--port", default=None)
    parser.add_argument("--baud", type=int, default=115200)
    parser.add_argument("--timeout", type=float, default=60.0,
                        help="Seconds to wait for each operator step")
    parser.add_argument("--fake", action="store_true")
    args = parser.parse_args()

    logs_dir = Path(__file__).parent / "logs"
    out_dir = Path(__file__).parent / "out"
    logger = setup_logging("02_replug_reconnect", logs_dir)

    manager = None
    stop = threading.Event()
    passed = False
    metrics = {}

    try:
        print(f"{'='*60}")
        print("Test: Unplug/Replug Reconnect")
        print(f"Port: {'FakeSerialBackend' if args.fake else (args.port or 'auto')}")
        print(f"{'='*60}\n")

        config = MonitorConfig(baud_rate=args.baud, reconnect_interval_s=0.5)
        criteria = {"port": args.port} if args.port else {}

        if args.fake:
            if FakeSerialBackend is None:
                raise ImportError("FakeSerialBackend not available")
            device = FakeDevice()
            backend = FakeSerialBackend(device)
            threading.Thread(
                target=_run_fake_device,
                args=(device, backend, stop, 2.0, 4.0),
                daemon=True,
            ).start()
            criteria = {}
        else:
            backend = PySerialBackend()

        manager = SerialSessionManager(backend, config)
        handle = manager.request_device(**criteria)
        manager.connect()
        logger.info(f"Connected to {handle.device} {handle.descriptor}")

        # =====================================================================
        # Before unplug
        # =====================================================================
        if not wait_for_lines(manager, 5, args.timeout, logger):
            raise RuntimeError("No output from device before unplug")
        before = manager.buffer_snapshot()
        metrics["lines_before_unplug"] = len(before)

        if not args.fake:
            print("\n>>> Unplug the device now <<<\n")
        if not manager.wait_for_state(SessionState.RECONNECTING, args.timeout):
            raise RuntimeError("Device loss was not detected")
        logger.info("Device lost, reconnecting...")

        # =====================================================================
        # After replug
        # =====================================================================
        if not args.fake:
            print("\n>>> Plug the device back in <<<\n")
        if not manager.wait_for_state(SessionState.CONNECTED, args.timeout):
            raise RuntimeError(
                f"Did not reconnect after {manager.reconnect_attempts} attempts"
            )

        seen = manager.buffer.total_appended
        wait_for_lines(manager, seen + 5, args.timeout, logger)
        after = manager.buffer_snapshot()

        metrics["reconnect_attempts"] = manager.reconnect_attempts
        metrics["reconnect_count"] = manager.reconnect_count
        metrics["baud_rate"] = manager.baud_rate
        metrics["lines_after_replug"] = len(after) - len(before)
        metrics["csv"] = str(export_lines_csv(manager, out_dir, "replug_reconnect"))

        preserved = after[:len(before)] == before
        passed = (
            preserved
            and manager.reconnect_count == 1
            and manager.baud_rate == args.baud
            and len(after) > len(before)
        )
        message = (
            "Reconnected with buffer preserved"
            if passed else
            f"Reconnect check failed (buffer preserved: {preserved})"
        )

    except Exception as e:
        logger.error(f"Test failed: {e}", exc_info=True)
        message = f"Exception: {e}"

    finally:
        stop.set()
        robust_teardown(manager, logger)

    TestResult(passed, message, metrics).print_result()
    return 0 if passed else 1


if __name__ == "__main__":
    sys.exit(main())

"""List serial devices with the identity used for reconnect matching."""

import sys

from serial_log_lib import PySerialBackend


def list_devices() -> int:
    """Print every port pyserial reports, USB ids first."""
    handles = PySerialBackend().enumerate_devices()
    if not handles:
        print("No serial ports found")
        return 1

    handles.sort(key=lambda h: (h.descriptor.vendor_id is None, h.device))
    for handle in handles:
        d = handle.descriptor
        usb = "USB" if d.vendor_id is not None else "   "
        print(f"{handle.device:20} {usb} {str(d):28} {handle.description}")

    print(f"\n{len(handles)} port(s)")
    return 0


if __name__ == "__main__":
    sys.exit(list_devices())

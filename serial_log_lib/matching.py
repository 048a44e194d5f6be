"""Decide whether two device descriptors refer to the same physical device."""

import logging
from typing import Iterable, Optional

from serial_log_lib.models import DeviceDescriptor, PortHandle

logger = logging.getLogger(__name__)


def matches(a: DeviceDescriptor, b: DeviceDescriptor) -> bool:
    """Check whether b identifies the same device as a.

    Vendor and product id must both be equal. Serial numbers are compared
    only when both sides report one; devices that never expose a serial
    number are matched on vendor and product id alone.

    Args:
        a: Reference descriptor (the device being looked for)
        b: Candidate descriptor

    Returns:
        True if b is considered the same device as a
    """
    if a.vendor_id != b.vendor_id or a.product_id != b.product_id:
        return False
    if a.serial_number is None or b.serial_number is None:
        return True
    return a.serial_number == b.serial_number


def find_match(
    target: DeviceDescriptor, candidates: Iterable[PortHandle]
) -> Optional[PortHandle]:
    """Return the first enumerated port whose device matches target.

    Args:
        target: Descriptor to reacquire
        candidates: Ports from enumeration, in platform order

    Returns:
        Matching PortHandle, or None
    """
    for handle in candidates:
        if matches(target, handle.descriptor):
            logger.debug(f"Matched {target} to {handle.device}")
            return handle
    return None

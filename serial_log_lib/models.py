"""Data models for the serial log monitor library."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class SessionState(Enum):
    """Serial session manager states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READ_ERROR = "read_error"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class DeviceDescriptor:
    """Immutable identity snapshot of a physical device.

    Attributes:
        vendor_id: USB vendor id, or None for ports without USB metadata.
        product_id: USB product id, or None for ports without USB metadata.
        serial_number: Device serial number. None means unknown; matching
            then falls back to vendor and product id only.
    """

    vendor_id: Optional[int]
    product_id: Optional[int]
    serial_number: Optional[str] = None

    def __str__(self) -> str:
        vid = f"{self.vendor_id:04x}" if self.vendor_id is not None else "----"
        pid = f"{self.product_id:04x}" if self.product_id is not None else "----"
        if self.serial_number:
            return f"{vid}:{pid} ({self.serial_number})"
        return f"{vid}:{pid}"


@dataclass(frozen=True)
class PortHandle:
    """A device as reported by enumeration.

    Attributes:
        device: Platform port name (e.g. "/dev/ttyUSB0" or "COM3").
        descriptor: Identity of the device behind the port.
        description: Human-readable description from the platform.
        ref: Backend-specific payload. Not part of equality.
    """

    device: str
    descriptor: DeviceDescriptor
    description: str = ""
    ref: Any = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict:
        """Serializable view for the service layer."""
        return {
            "device": self.device,
            "description": self.description,
            "vendor_id": self.descriptor.vendor_id,
            "product_id": self.descriptor.product_id,
            "serial_number": self.descriptor.serial_number,
        }


@dataclass(frozen=True)
class LogLine:
    """One framed, ANSI-stripped line of device output.

    Attributes:
        text: Line content without the terminating newline.
        terminated: False only for the residue emitted by a flush.
        ts: UTC timestamp when the line was framed.
    """

    text: str
    terminated: bool = True
    ts: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )

    @property
    def raw(self) -> str:
        """Text including the newline it was terminated by, if any."""
        return self.text + "\n" if self.terminated else self.text


@dataclass(frozen=True)
class SessionStatus:
    """Published, read-only view of the session manager."""

    state: SessionState
    device: Optional[PortHandle]
    target: Optional[DeviceDescriptor]
    baud_rate: int
    line_limit: int
    lines: int
    last_error: Optional[str]
    reconnect_attempts: int
    reconnect_count: int

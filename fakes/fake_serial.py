"""Fake serial backend that simulates hot-pluggable USB serial devices.

Implements the same surface as PySerialBackend (enumeration, selection,
open/close, single-reader locking, hot-plug callbacks) entirely in memory,
so session behavior can be exercised deterministically without hardware.
"""

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional

from serial_log_lib.errors import (
    OpenError,
    ReaderLockedError,
    ReadFailure,
    SelectionError,
)
from serial_log_lib.models import DeviceDescriptor, PortHandle

logger = logging.getLogger(__name__)

# Sentinels placed in a connection's chunk queue
_FAIL = object()
_EOS = object()

# How often a blocked fake read re-checks for cancellation
_POLL_S = 0.02


class FakeDevice:
    """One simulated USB serial device.

    Bytes emitted while no connection is open are held (like an OS receive
    buffer) and delivered to the next connection.
    """

    def __init__(
        self,
        device: str = "/dev/ttyFAKE0",
        vendor_id: Optional[int] = 0x2341,
        product_id: Optional[int] = 0x0043,
        serial_number: Optional[str] = "FAKE0001",
        description: str = "Fake USB Serial",
    ) -> None:
        """Initialize fake device.

        Args:
            device: Port name reported by enumeration
            vendor_id: USB vendor id (None for a non-USB port)
            product_id: USB product id
            serial_number: Serial number, or None if the device reports none
            description: Human-readable port description
        """
        self.handle = PortHandle(
            device=device,
            descriptor=DeviceDescriptor(vendor_id, product_id, serial_number),
            description=description,
        )
        self.plugged = True
        self.open_failures = 0
        self._pending: List[bytes] = []
        self._connection: Optional["FakeConnection"] = None
        self._lock = threading.Lock()

    @property
    def descriptor(self) -> DeviceDescriptor:
        return self.handle.descriptor

    def emit(self, *chunks: bytes) -> None:
        """Send chunks from the device to the host."""
        with self._lock:
            if self._connection is not None and self._connection.is_open:
                for chunk in chunks:
                    self._connection.deliver(chunk)
            else:
                self._pending.extend(chunks)

    def end_stream(self) -> None:
        """Make the active reader see end-of-stream without an error."""
        with self._lock:
            if self._connection is not None:
                self._connection.deliver(_EOS)

    def fail_read(self) -> None:
        """Make the active reader's next read fail."""
        with self._lock:
            if self._connection is not None:
                self._connection.deliver(_FAIL)

    def _attach(self, connection: "FakeConnection") -> None:
        with self._lock:
            self._connection = connection
            for chunk in self._pending:
                connection.deliver(chunk)
            self._pending.clear()

    def _detach(self, connection: "FakeConnection") -> None:
        with self._lock:
            if self._connection is connection:
                self._connection = None

    @property
    def connection(self) -> Optional["FakeConnection"]:
        return self._connection


class FakeReader:
    """ByteReader over a FakeConnection's chunk queue."""

    def __init__(self, connection: "FakeConnection") -> None:
        self._connection = connection
        self._cancelled = threading.Event()
        self._released = False
        self.cancel_calls = 0

    def read_chunk(self) -> Optional[bytes]:
        while not self._cancelled.is_set():
            try:
                item = self._connection.chunks.get(timeout=_POLL_S)
            except queue.Empty:
                continue
            if item is _FAIL:
                raise ReadFailure(f"{self._connection.handle.device}: device has been lost")
            if item is _EOS:
                return None
            return item
        return None

    def cancel(self) -> None:
        self.cancel_calls += 1
        self._cancelled.set()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._connection.release_reader(self)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def released(self) -> bool:
        return self._released


class FakeConnection:
    """Open fake port with a single-reader lock."""

    def __init__(self, backend: "FakeSerialBackend", device: FakeDevice, baud_rate: int) -> None:
        self._backend = backend
        self.device = device
        self._baud_rate = baud_rate
        self.chunks: "queue.Queue[object]" = queue.Queue()
        self.is_open = True
        self._reader: Optional[FakeReader] = None
        self._lock = threading.Lock()

    @property
    def handle(self) -> PortHandle:
        return self.device.handle

    @property
    def baud_rate(self) -> int:
        return self._baud_rate

    def deliver(self, item: object) -> None:
        self.chunks.put(item)

    def acquire_reader(self) -> FakeReader:
        with self._lock:
            if self._reader is not None:
                raise ReaderLockedError(f"{self.handle.device} already has an active reader")
            self._reader = FakeReader(self)
        self._backend._reader_acquired()
        return self._reader

    def release_reader(self, reader: FakeReader) -> None:
        with self._lock:
            if self._reader is not reader:
                return
            self._reader = None
        self._backend._reader_released()

    @property
    def reader(self) -> Optional[FakeReader]:
        return self._reader


class FakeSerialBackend:
    """In-memory SerialBackend with plug/unplug control for tests."""

    def __init__(self, *devices: FakeDevice) -> None:
        self._devices: Dict[str, FakeDevice] = {}
        self._lock = threading.Lock()
        self._attached_callbacks: List[Callable[[PortHandle], None]] = []
        self._detached_callbacks: List[Callable[[PortHandle], None]] = []

        # Counters for assertions
        self.decline_selection = False
        self.close_error: Optional[Exception] = None
        self.enumerations = 0
        self.opened: List[FakeConnection] = []
        self.closed: List[FakeConnection] = []
        self.live_readers = 0
        self.max_live_readers = 0

        for device in devices:
            self.add_device(device)

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def add_device(self, device: FakeDevice) -> FakeDevice:
        with self._lock:
            self._devices[device.handle.device] = device
        return device

    def unplug(self, device: FakeDevice) -> None:
        """Remove a device: its open connection breaks and watchers are told."""
        device.plugged = False
        device.fail_read()
        logger.debug(f"Unplugged {device.handle.device}")
        for callback in list(self._detached_callbacks):
            callback(device.handle)

    def plug(self, device: FakeDevice) -> None:
        """Reattach a device and notify watchers."""
        device.plugged = True
        logger.debug(f"Plugged {device.handle.device}")
        for callback in list(self._attached_callbacks):
            callback(device.handle)

    def _reader_acquired(self) -> None:
        with self._lock:
            self.live_readers += 1
            self.max_live_readers = max(self.max_live_readers, self.live_readers)

    def _reader_released(self) -> None:
        with self._lock:
            self.live_readers -= 1

    # ------------------------------------------------------------------
    # SerialBackend surface
    # ------------------------------------------------------------------

    def enumerate_devices(self) -> List[PortHandle]:
        with self._lock:
            self.enumerations += 1
            return [d.handle for d in self._devices.values() if d.plugged]

    def request_device_selection(
        self,
        port: Optional[str] = None,
        vendor_id: Optional[int] = None,
        product_id: Optional[int] = None,
    ) -> PortHandle:
        if self.decline_selection:
            raise SelectionError("No compatible serial port selected")
        for handle in self.enumerate_devices():
            if port is not None and handle.device != port:
                continue
            if vendor_id is not None and handle.descriptor.vendor_id != vendor_id:
                continue
            if product_id is not None and handle.descriptor.product_id != product_id:
                continue
            return handle
        raise SelectionError("No compatible serial port selected")

    def open(self, handle: PortHandle, baud_rate: int) -> FakeConnection:
        device = self._devices.get(handle.device)
        if device is None or not device.plugged:
            raise OpenError(f"Failed to open {handle.device}: no such device")
        if device.open_failures > 0:
            device.open_failures -= 1
            raise OpenError(f"Failed to open {handle.device}: port busy")
        if device.connection is not None and device.connection.is_open:
            raise OpenError(f"Failed to open {handle.device}: already open")

        connection = FakeConnection(self, device, baud_rate)
        device._attach(connection)
        self.opened.append(connection)
        logger.debug(f"Opened {handle.device} at {baud_rate} baud")
        return connection

    def get_byte_reader(self, connection: FakeConnection) -> FakeReader:
        return connection.acquire_reader()

    def close(self, connection: FakeConnection) -> None:
        if not connection.is_open:
            return
        connection.is_open = False
        connection.device._detach(connection)
        self.closed.append(connection)
        if self.close_error is not None:
            raise self.close_error

    def watch(
        self,
        on_attached: Callable[[PortHandle], None],
        on_detached: Callable[[PortHandle], None],
    ) -> Callable[[], None]:
        self._attached_callbacks.append(on_attached)
        self._detached_callbacks.append(on_detached)

        def unwatch() -> None:
            if on_attached in self._attached_callbacks:
                self._attached_callbacks.remove(on_attached)
            if on_detached in self._detached_callbacks:
                self._detached_callbacks.remove(on_detached)

        return unwatch

"""Serial transport boundary and its pyserial implementation."""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Protocol

import serial
import serial.tools.list_ports

from serial_log_lib import protocol
from serial_log_lib.errors import (
    CleanupWarning,
    OpenError,
    ReaderLockedError,
    ReadFailure,
    SelectionError,
)
from serial_log_lib.models import DeviceDescriptor, PortHandle

logger = logging.getLogger(__name__)

DeviceCallback = Callable[[PortHandle], None]


class ByteReader(Protocol):
    """Protocol for the single in-flight reader of a connection."""

    def read_chunk(self) -> Optional[bytes]:
        """Block for the next chunk. None means end of stream."""
        ...

    def cancel(self) -> None:
        """Make the pending and all later read_chunk() calls return None."""
        ...

    def release(self) -> None:
        """Give the reader lock back to the connection."""
        ...


class SerialConnection(Protocol):
    """Protocol for an open device connection (the transport handle)."""

    @property
    def handle(self) -> PortHandle:
        """Port this connection was opened on."""
        ...

    @property
    def baud_rate(self) -> int:
        """Baud rate the port was opened with."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if the connection is still open."""
        ...


class SerialBackend(Protocol):
    """Protocol for the platform serial-I/O layer (allows test doubles)."""

    def enumerate_devices(self) -> List[PortHandle]:
        """List devices currently available."""
        ...

    def request_device_selection(self, **criteria: object) -> PortHandle:
        """Pick one device; raises SelectionError if none qualifies."""
        ...

    def open(self, handle: PortHandle, baud_rate: int) -> SerialConnection:
        """Open a device; raises OpenError on failure."""
        ...

    def get_byte_reader(self, connection: SerialConnection) -> ByteReader:
        """Lock and return the connection's reader; raises ReaderLockedError."""
        ...

    def close(self, connection: SerialConnection) -> None:
        """Close a connection. Closing twice is a no-op."""
        ...

    def watch(
        self, on_attached: DeviceCallback, on_detached: DeviceCallback
    ) -> Callable[[], None]:
        """Subscribe to hot-plug events; returns a callable that unsubscribes."""
        ...


@contextmanager
def reader_scope(
    backend: SerialBackend, connection: SerialConnection
) -> Iterator[ByteReader]:
    """Acquire the connection's reader and guarantee its release.

    On every exit path the reader is cancelled and released before control
    returns to the caller. Errors during that cleanup are logged as
    CleanupWarning and never propagate.

    Args:
        backend: Backend that owns the connection
        connection: Open connection

    Yields:
        The locked ByteReader

    Raises:
        ReaderLockedError: If another reader is still live
    """
    reader = backend.get_byte_reader(connection)
    try:
        yield reader
    finally:
        for action, call in (("cancel reader", reader.cancel), ("release reader", reader.release)):
            try:
                call()
            except Exception as e:
                logger.warning(str(CleanupWarning(action, e)))


def close_quietly(backend: SerialBackend, connection: Optional[SerialConnection]) -> None:
    """Close a connection to a device that may already be gone."""
    if connection is None:
        return
    try:
        backend.close(connection)
    except Exception as e:
        logger.warning(str(CleanupWarning(f"close {connection.handle.device}", e)))


# ============================================================================
# pyserial implementation
# ============================================================================


def _port_to_handle(info) -> PortHandle:
    """Convert a pyserial ListPortInfo into a PortHandle."""
    descriptor = DeviceDescriptor(
        vendor_id=info.vid,
        product_id=info.pid,
        serial_number=info.serial_number or None,
    )
    return PortHandle(
        device=info.device,
        descriptor=descriptor,
        description=info.description or "",
        ref=info,
    )


class PySerialReader:
    """ByteReader over a pyserial port.

    Reads use the port timeout so a cancel is noticed within
    protocol.READ_TIMEOUT_S even on platforms without cancel_read().
    """

    def __init__(self, connection: "PySerialConnection") -> None:
        self._connection = connection
        self._cancelled = threading.Event()
        self._released = False

    def read_chunk(self) -> Optional[bytes]:
        """Block until bytes arrive, the reader is cancelled, or the port fails.

        Returns:
            Non-empty bytes, or None once cancelled

        Raises:
            ReadFailure: If the port reports an error (device removed, etc)
        """
        port = self._connection.port
        while not self._cancelled.is_set():
            try:
                waiting = port.in_waiting
                data = port.read(max(1, min(waiting, protocol.READ_CHUNK_SIZE)))
            except (serial.SerialException, OSError, TypeError) as e:
                if self._cancelled.is_set():
                    break
                raise ReadFailure(
                    f"Read from {self._connection.handle.device} failed: {e}"
                ) from e

            if data:
                logger.debug(f"Read {len(data)} bytes from {self._connection.handle.device}")
                return data

        return None

    def cancel(self) -> None:
        """Request cancellation (idempotent)."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        cancel_read = getattr(self._connection.port, "cancel_read", None)
        if cancel_read is not None:
            try:
                cancel_read()
            except (serial.SerialException, OSError) as e:
                logger.debug(f"cancel_read failed: {e}")

    def release(self) -> None:
        """Unlock the connection (idempotent)."""
        if self._released:
            return
        self._released = True
        self._connection.release_reader(self)

    @property
    def cancelled(self) -> bool:
        """Whether cancel() was called."""
        return self._cancelled.is_set()


class PySerialConnection:
    """Open pyserial port plus its single-reader lock."""

    def __init__(self, handle: PortHandle, port: serial.Serial, baud_rate: int) -> None:
        self._handle = handle
        self._baud_rate = baud_rate
        self.port = port
        self._reader: Optional[PySerialReader] = None
        self._lock = threading.Lock()

    @property
    def handle(self) -> PortHandle:
        return self._handle

    @property
    def baud_rate(self) -> int:
        return self._baud_rate

    @property
    def is_open(self) -> bool:
        try:
            return bool(self.port.is_open)
        except (serial.SerialException, OSError):
            return False

    def acquire_reader(self) -> PySerialReader:
        """Lock the connection for a new reader.

        Raises:
            ReaderLockedError: If a reader is already live
        """
        with self._lock:
            if self._reader is not None:
                raise ReaderLockedError(
                    f"{self._handle.device} already has an active reader"
                )
            self._reader = PySerialReader(self)
            return self._reader

    def release_reader(self, reader: PySerialReader) -> None:
        """Drop the lock held by reader (no-op for a stale reader)."""
        with self._lock:
            if self._reader is reader:
                self._reader = None


class PortWatcher:
    """Background thread turning port-list polling into hot-plug callbacks."""

    def __init__(
        self,
        enumerate_devices: Callable[[], List[PortHandle]],
        on_attached: DeviceCallback,
        on_detached: DeviceCallback,
        interval_s: float = protocol.PORT_WATCH_INTERVAL_S,
    ) -> None:
        self._enumerate = enumerate_devices
        self._on_attached = on_attached
        self._on_detached = on_detached
        self._interval_s = interval_s
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start polling in a daemon thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="PortWatcher", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and join the thread (idempotent)."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=protocol.THREAD_JOIN_TIMEOUT_S)
        self._thread = None

    def _snapshot(self) -> Dict[str, PortHandle]:
        return {h.device: h for h in self._enumerate()}

    def _run(self) -> None:
        try:
            known = self._snapshot()
        except Exception as e:
            logger.error(f"Initial port enumeration failed: {e}", exc_info=True)
            known = {}

        while not self._stop_event.wait(timeout=self._interval_s):
            try:
                current = self._snapshot()
            except Exception as e:
                logger.error(f"Port enumeration failed: {e}", exc_info=True)
                continue

            for device, handle in known.items():
                if current.get(device) != handle:
                    logger.info(f"Device detached: {device} {handle.descriptor}")
                    self._on_detached(handle)
            for device, handle in current.items():
                if known.get(device) != handle:
                    logger.info(f"Device attached: {device} {handle.descriptor}")
                    self._on_attached(handle)
            known = current


class PySerialBackend:
    """SerialBackend backed by pyserial and its port enumeration."""

    def __init__(
        self,
        read_timeout_s: float = protocol.READ_TIMEOUT_S,
        watch_interval_s: float = protocol.PORT_WATCH_INTERVAL_S,
    ) -> None:
        self._read_timeout_s = read_timeout_s
        self._watch_interval_s = watch_interval_s

    def enumerate_devices(self) -> List[PortHandle]:
        """List serial ports known to the OS."""
        return [_port_to_handle(p) for p in serial.tools.list_ports.comports()]

    def request_device_selection(
        self,
        port: Optional[str] = None,
        vendor_id: Optional[int] = None,
        product_id: Optional[int] = None,
    ) -> PortHandle:
        """Pick a port by name, by USB ids, or the only USB port present.

        Args:
            port: Exact port name to select
            vendor_id: USB vendor id filter
            product_id: USB product id filter

        Returns:
            Selected PortHandle

        Raises:
            SelectionError: If no compatible port qualifies
        """
        handles = self.enumerate_devices()

        if port is not None:
            for handle in handles:
                if handle.device == port:
                    return handle
            raise SelectionError(f"Serial port {port} not found")

        if vendor_id is not None or product_id is not None:
            for handle in handles:
                d = handle.descriptor
                if (vendor_id is None or d.vendor_id == vendor_id) and (
                    product_id is None or d.product_id == product_id
                ):
                    return handle
            raise SelectionError("No compatible serial port selected")

        usb = [h for h in handles if h.descriptor.vendor_id is not None]
        if len(usb) == 1:
            return usb[0]
        if not usb:
            raise SelectionError("No compatible serial port selected")
        names = ", ".join(h.device for h in usb)
        raise SelectionError(f"Several USB serial ports found ({names}); choose one")

    def open(self, handle: PortHandle, baud_rate: int) -> PySerialConnection:
        """Open a serial port 8N1 without flow control.

        Raises:
            OpenError: If port cannot be opened
        """
        try:
            port = serial.Serial(
                port=handle.device,
                baudrate=baud_rate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self._read_timeout_s,
                rtscts=False,
                dsrdtr=False,
                xonxoff=False,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise OpenError(f"Failed to open {handle.device} at {baud_rate} baud: {e}") from e

        logger.info(f"Opened serial port {handle.device} at {baud_rate} baud")
        return PySerialConnection(handle, port, baud_rate)

    def get_byte_reader(self, connection: PySerialConnection) -> PySerialReader:
        return connection.acquire_reader()

    def close(self, connection: PySerialConnection) -> None:
        if connection.is_open:
            connection.port.close()
            logger.info(f"Closed serial port {connection.handle.device}")

    def watch(
        self, on_attached: DeviceCallback, on_detached: DeviceCallback
    ) -> Callable[[], None]:
        watcher = PortWatcher(
            self.enumerate_devices, on_attached, on_detached, self._watch_interval_s
        )
        watcher.start()
        return watcher.stop

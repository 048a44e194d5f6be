"""Serial session manager: connection lifecycle, framing and reconnection."""

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Union

from serial_log_lib import protocol
from serial_log_lib.config import MonitorConfig
from serial_log_lib.errors import (
    OpenError,
    ReadFailure,
    SelectionError,
    SerialLogError,
    SessionStateError,
)
from serial_log_lib.framing import LineFramer
from serial_log_lib.matching import find_match, matches
from serial_log_lib.models import (
    DeviceDescriptor,
    LogLine,
    PortHandle,
    SessionState,
    SessionStatus,
)
from serial_log_lib.ring_buffer import BoundedLogBuffer
from serial_log_lib.transport import (
    ByteReader,
    SerialBackend,
    SerialConnection,
    close_quietly,
    reader_scope,
)

logger = logging.getLogger(__name__)

LineCallback = Callable[[List[LogLine]], None]


class CommandKind(Enum):
    """Messages consumed by the control thread."""

    SELECT = "select"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CANCEL_RECONNECT = "cancel_reconnect"
    ATTEMPT = "attempt"
    DEVICE_ATTACHED = "device_attached"
    DEVICE_DETACHED = "device_detached"
    READ_FAILED = "read_failed"
    READER_CLOSED = "reader_closed"
    SHUTDOWN = "shutdown"


@dataclass
class _Command:
    kind: CommandKind
    payload: Any = None
    generation: int = 0
    future: Optional[Future] = None


@dataclass
class Session:
    """Mutable aggregate for one logical connection.

    Survives reconnects: only the connection, reader and generation are
    rebound when the device comes back.
    """

    target: DeviceDescriptor
    baud_rate: int
    handle: PortHandle
    connection: Optional[SerialConnection] = None
    reader: Optional[ByteReader] = None
    generation: int = 0
    stop_event: threading.Event = field(default_factory=threading.Event)
    closing: bool = False
    lost: bool = False


class SerialSessionManager:
    """Owns the device handle and turns its byte stream into buffered lines.

    All state transitions happen on a single control thread that consumes a
    command queue. Caller intents, reader completion and hot-plug
    notifications are all messages on that queue, and the reconnect timer
    is the queue's wait deadline, so no two transitions ever overlap. A
    separate read-loop thread blocks on the transport and feeds the framer
    and buffer; at most one exists per session at any time.
    """

    def __init__(
        self,
        backend: SerialBackend,
        config: Optional[MonitorConfig] = None,
        on_line: Optional[LineCallback] = None,
    ) -> None:
        """Initialize manager.

        Args:
            backend: Platform serial layer (PySerialBackend or a fake).
            config: Startup configuration. Defaults to MonitorConfig().
            on_line: Optional callback receiving each batch of new lines,
                     called on the read-loop thread after buffering.
        """
        self._backend = backend
        self._config = config or MonitorConfig()
        self._on_line = on_line

        self._baud_rate = self._config.baud_rate
        self._reconnect_interval_s = self._config.reconnect_interval_s
        self._buffer = BoundedLogBuffer(capacity=self._config.line_limit)
        self._framer = LineFramer()

        # Published state
        self._state = SessionState.IDLE
        self._state_changed = threading.Condition()
        self._selected: Optional[PortHandle] = None
        self._session: Optional[Session] = None
        self._last_error: Optional[str] = None
        self._reconnect_attempts = 0
        self._reconnect_count = 0

        # Control thread
        self._commands: "queue.Queue[_Command]" = queue.Queue()
        self._control_thread: Optional[threading.Thread] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._next_attempt_at: Optional[float] = None
        self._generation = 0
        self._unwatch: Optional[Callable[[], None]] = None
        self._lifecycle_lock = threading.Lock()
        self._closed = False

    # ========================================================================
    # Intents
    # ========================================================================

    def list_devices(self) -> List[PortHandle]:
        """Enumerate devices available on the backend."""
        return self._backend.enumerate_devices()

    def request_device(self, **criteria: Any) -> PortHandle:
        """Ask the backend to pick a device and select it.

        Args:
            **criteria: Passed to the backend's request_device_selection()

        Returns:
            The selected PortHandle

        Raises:
            SelectionError: If no compatible device was chosen
            SessionStateError: If a session is active
        """
        try:
            handle = self._backend.request_device_selection(**criteria)
        except SelectionError as e:
            self._last_error = str(e)
            raise
        return self.select_device(handle)

    def select_device(self, device: Union[PortHandle, DeviceDescriptor]) -> PortHandle:
        """Select the device the next connect() opens.

        Args:
            device: A handle from enumeration, or a descriptor resolved
                    against the devices currently present

        Returns:
            The selected PortHandle

        Raises:
            SelectionError: If a descriptor matches no present device
            SessionStateError: If a session is active
        """
        return self._submit(CommandKind.SELECT, device).result()

    def connect(self, baud_rate: Optional[int] = None) -> SessionStatus:
        """Open the selected device and start streaming lines.

        Blocks until the open succeeded or failed. A failed open leaves the
        manager Idle and is not retried.

        Args:
            baud_rate: Overrides the configured baud rate for this session

        Returns:
            Status after connecting

        Raises:
            OpenError: If the transport cannot open the device
            SessionStateError: If not Idle or no device is selected
        """
        return self._submit(CommandKind.CONNECT, baud_rate).result()

    def disconnect(self) -> None:
        """Tear the session down without waiting for the read loop.

        Safe in any state. The manager reports Idle once the read loop has
        flushed and released the device; use wait_for_state() to block.
        """
        self._post(_Command(CommandKind.DISCONNECT))

    def cancel_reconnect(self) -> None:
        """Abandon an in-progress reconnect. No-op in other states."""
        self._post(_Command(CommandKind.CANCEL_RECONNECT))

    def retry_now(self) -> None:
        """Run a reconnect attempt immediately. No-op unless Reconnecting."""
        self._post(_Command(CommandKind.ATTEMPT))

    def set_baud_rate(self, baud_rate: int) -> None:
        """Set the baud rate for the next connect (reconnects keep theirs)."""
        if baud_rate <= 0:
            raise ValueError(f"baud_rate must be positive, got {baud_rate}")
        self._baud_rate = baud_rate
        logger.info(f"Baud rate for next connect: {baud_rate}")

    def set_capacity(self, capacity: int) -> None:
        """Change the buffer capacity; shrinking drops the oldest lines."""
        self._buffer.set_capacity(capacity)
        logger.info(f"Line limit set to {capacity}")

    def clear(self) -> None:
        """Drop all buffered lines."""
        self._buffer.clear()

    def close(self) -> None:
        """Release every resource and stop background threads (idempotent)."""
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            thread = self._control_thread

        if thread is not None:
            self._commands.put(_Command(CommandKind.SHUTDOWN))
            thread.join(timeout=protocol.THREAD_JOIN_TIMEOUT_S)
            if thread.is_alive():
                logger.warning("Control thread did not stop cleanly")

        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None

        self._set_state(SessionState.DISCONNECTED)
        logger.info("Session manager closed")

    def __enter__(self) -> "SerialSessionManager":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ========================================================================
    # Published State
    # ========================================================================

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._state

    @property
    def device_info(self) -> Optional[PortHandle]:
        """Port of the active session, else the selected port."""
        session = self._session
        if session is not None:
            return session.handle
        return self._selected

    @property
    def target(self) -> Optional[DeviceDescriptor]:
        """Descriptor being held or reacquired, None once disconnecting."""
        session = self._session
        if session is None or session.closing:
            return None
        return session.target

    @property
    def last_error(self) -> Optional[str]:
        """Last user-facing error message, if any."""
        return self._last_error

    @property
    def baud_rate(self) -> int:
        """Baud rate of the active session, else the one for the next connect."""
        session = self._session
        return session.baud_rate if session is not None else self._baud_rate

    @property
    def reconnect_attempts(self) -> int:
        """Attempts made in the current (or last) reconnect episode."""
        return self._reconnect_attempts

    @property
    def reconnect_count(self) -> int:
        """Successful reconnects since the manager was created."""
        return self._reconnect_count

    @property
    def buffer(self) -> BoundedLogBuffer:
        return self._buffer

    def buffer_snapshot(self) -> List[LogLine]:
        """Get a copy of the buffered lines, oldest first."""
        return self._buffer.snapshot()

    def new_lines(self, cursor: int = 0) -> Tuple[List[LogLine], int]:
        """Get lines appended since cursor; see BoundedLogBuffer.since()."""
        return self._buffer.since(cursor)

    def status(self) -> SessionStatus:
        """Snapshot of the published state."""
        return SessionStatus(
            state=self._state,
            device=self.device_info,
            target=self.target,
            baud_rate=self.baud_rate,
            line_limit=self._buffer.capacity,
            lines=len(self._buffer),
            last_error=self._last_error,
            reconnect_attempts=self._reconnect_attempts,
            reconnect_count=self._reconnect_count,
        )

    def is_connected(self) -> bool:
        return self._state == SessionState.CONNECTED

    def wait_for_state(self, state: SessionState, timeout: Optional[float] = None) -> bool:
        """Block until the published state equals state.

        Returns:
            True if reached, False on timeout
        """
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self._state == state, timeout)

    # ========================================================================
    # Internal: Control Thread
    # ========================================================================

    def _ensure_started(self) -> None:
        with self._lifecycle_lock:
            if self._closed:
                raise SessionStateError("Session manager is closed")
            if self._control_thread is not None:
                return

            self._control_thread = threading.Thread(
                target=self._control_loop, name="SessionControl", daemon=True
            )
            self._control_thread.start()
            self._unwatch = self._backend.watch(
                lambda handle: self._post(_Command(CommandKind.DEVICE_ATTACHED, handle)),
                lambda handle: self._post(_Command(CommandKind.DEVICE_DETACHED, handle)),
            )
            logger.debug("Started session control thread")

    def _post(self, command: _Command) -> None:
        if self._closed:
            logger.debug(f"Ignoring {command.kind.value} after close")
            return
        if command.kind not in (CommandKind.DEVICE_ATTACHED, CommandKind.DEVICE_DETACHED):
            self._ensure_started()
        self._commands.put(command)

    def _submit(self, kind: CommandKind, payload: Any = None) -> Future:
        future: Future = Future()
        self._ensure_started()
        self._commands.put(_Command(kind, payload, future=future))
        return future

    def _control_loop(self) -> None:
        logger.info(f"Session control loop started (thread {threading.get_ident()})")

        while True:
            timeout = None
            if self._next_attempt_at is not None:
                timeout = max(0.0, self._next_attempt_at - time.monotonic())

            try:
                command = self._commands.get(timeout=timeout)
            except queue.Empty:
                command = _Command(CommandKind.ATTEMPT)

            if command.kind is CommandKind.SHUTDOWN:
                self._shutdown()
                break

            try:
                self._dispatch(command)
            except Exception as e:
                logger.error(f"Error handling {command.kind.value}: {e}", exc_info=True)
                if command.future is not None and not command.future.done():
                    command.future.set_exception(e)

        logger.info("Session control loop stopped")

    def _dispatch(self, command: _Command) -> None:
        kind = command.kind
        if kind in (CommandKind.SELECT, CommandKind.CONNECT):
            handler = self._select if kind is CommandKind.SELECT else self._connect
            assert command.future is not None
            try:
                result = handler(command.payload)
            except SerialLogError as e:
                command.future.set_exception(e)
            else:
                command.future.set_result(result)
        elif kind is CommandKind.DISCONNECT:
            self._disconnect()
        elif kind is CommandKind.CANCEL_RECONNECT:
            self._cancel_reconnect()
        elif kind is CommandKind.ATTEMPT:
            self._handle_attempt()
        elif kind is CommandKind.DEVICE_ATTACHED:
            self._handle_attached(command.payload)
        elif kind is CommandKind.DEVICE_DETACHED:
            self._handle_detached(command.payload)
        elif kind is CommandKind.READ_FAILED:
            self._handle_reader_done(command.generation, command.payload)
        elif kind is CommandKind.READER_CLOSED:
            self._handle_reader_done(command.generation, None)

    def _set_state(self, state: SessionState) -> None:
        with self._state_changed:
            if state == self._state:
                return
            old = self._state
            self._state = state
            self._state_changed.notify_all()
        logger.info(f"Session state: {old.value} -> {state.value}")

    # ========================================================================
    # Internal: Intent Handlers
    # ========================================================================

    def _select(self, device: Union[PortHandle, DeviceDescriptor]) -> PortHandle:
        if self._state != SessionState.IDLE:
            raise SessionStateError(
                f"Cannot select a device in state {self._state.value}. Disconnect first."
            )

        if isinstance(device, DeviceDescriptor):
            handle = find_match(device, self._backend.enumerate_devices())
            if handle is None:
                self._last_error = f"No device matching {device} is attached"
                raise SelectionError(self._last_error)
        else:
            handle = device

        self._selected = handle
        self._last_error = None
        logger.info(f"Selected {handle.device} {handle.descriptor}")
        return handle

    def _connect(self, baud_rate: Optional[int]) -> SessionStatus:
        if self._state != SessionState.IDLE:
            raise SessionStateError(f"Already connected (state: {self._state.value})")
        if self._selected is None:
            raise SessionStateError("No port selected")

        handle = self._selected
        baud = baud_rate or self._baud_rate
        self._set_state(SessionState.CONNECTING)
        logger.info(f"Connecting to {handle.device} at {baud} baud...")

        try:
            connection = self._backend.open(handle, baud)
        except OpenError as e:
            self._fail_connect(e)
            raise
        except Exception as e:
            error = OpenError(f"Failed to open {handle.device} at {baud} baud: {e}")
            self._fail_connect(error)
            raise error from e

        self._session = Session(target=handle.descriptor, baud_rate=baud, handle=handle)
        self._last_error = None
        self._reconnect_attempts = 0
        self._bind(self._session, connection)
        return self.status()

    def _fail_connect(self, error: OpenError) -> None:
        self._last_error = f"Failed to connect: {error}"
        self._set_state(SessionState.IDLE)
        logger.error(self._last_error)

    def _disconnect(self) -> None:
        self._next_attempt_at = None
        session = self._session
        if session is None:
            logger.debug("Disconnect with no session")
            return

        logger.info("Disconnecting...")
        session.closing = True

        if self._reader_thread is not None and self._reader_thread.is_alive():
            # Read loop finishes the teardown and reports READER_CLOSED
            self._cancel_reader(session)
            return

        # Read loop already exited; its pending message becomes stale
        self._join_reader()
        self._teardown_connection(session)
        self._session = None
        self._set_state(SessionState.IDLE)
        logger.info("Disconnected")

    def _cancel_reconnect(self) -> None:
        if self._state != SessionState.RECONNECTING:
            logger.debug(f"Cancel reconnect ignored in state {self._state.value}")
            return

        self._next_attempt_at = None
        self._session = None
        self._last_error = "Reconnect cancelled"
        self._set_state(SessionState.IDLE)
        logger.info("Reconnect cancelled")

    def _shutdown(self) -> None:
        self._next_attempt_at = None
        session = self._session
        if session is not None:
            session.closing = True
            self._cancel_reader(session)
            self._join_reader()
            self._teardown_connection(session)
            self._session = None
        self._set_state(SessionState.IDLE)

    # ========================================================================
    # Internal: Reader Lifecycle
    # ========================================================================

    def _bind(self, session: Session, connection: SerialConnection) -> None:
        """Attach a freshly opened connection and start its read loop."""
        assert self._reader_thread is None or not self._reader_thread.is_alive()

        self._generation += 1
        session.generation = self._generation
        session.connection = connection
        session.handle = connection.handle
        session.stop_event = threading.Event()
        session.lost = False

        self._set_state(SessionState.CONNECTED)
        self._reader_thread = threading.Thread(
            target=self._read_loop,
            args=(session, connection, session.generation, session.stop_event),
            name="SerialReader",
            daemon=True,
        )
        self._reader_thread.start()
        logger.info(f"Connected to {connection.handle.device} at {session.baud_rate} baud")

    def _cancel_reader(self, session: Session) -> None:
        session.stop_event.set()
        reader = session.reader
        if reader is not None:
            reader.cancel()

    def _join_reader(self) -> None:
        thread = self._reader_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=protocol.THREAD_JOIN_TIMEOUT_S)
            if thread.is_alive():
                logger.warning("Reader thread did not stop cleanly")
        self._reader_thread = None

    def _teardown_connection(self, session: Session) -> None:
        """Flush the framer and close the transport. Reader must be released."""
        residual = self._framer.flush()
        if residual is not None:
            self._deliver([residual])
        close_quietly(self._backend, session.connection)
        session.connection = None

    def _read_loop(
        self,
        session: Session,
        connection: SerialConnection,
        generation: int,
        stop_event: threading.Event,
    ) -> None:
        """Background thread: read chunks, frame them, append to buffer."""
        logger.info(f"Read loop started for {connection.handle.device} (generation {generation})")
        error: Optional[Exception] = None

        try:
            with reader_scope(self._backend, connection) as reader:
                session.reader = reader
                if stop_event.is_set():
                    reader.cancel()

                while True:
                    chunk = reader.read_chunk()
                    if chunk is None:
                        break
                    lines = self._framer.feed(chunk)
                    if lines:
                        self._deliver(lines)
        except SerialLogError as e:
            error = e
        except Exception as e:
            logger.error(f"Error in read loop: {e}", exc_info=True)
            error = ReadFailure(f"Read loop crashed: {e}")
        finally:
            session.reader = None

        logger.info(f"Read loop stopped (generation {generation})")
        if error is not None and not stop_event.is_set():
            self._commands.put(_Command(CommandKind.READ_FAILED, error, generation))
        else:
            self._commands.put(_Command(CommandKind.READER_CLOSED, None, generation))

    def _deliver(self, lines: List[LogLine]) -> None:
        self._buffer.append(lines)
        if self._on_line is not None:
            try:
                self._on_line(lines)
            except Exception as e:
                logger.error(f"Line callback failed: {e}", exc_info=True)

    def _handle_reader_done(self, generation: int, error: Optional[Exception]) -> None:
        session = self._session
        if session is None or generation != session.generation:
            logger.debug(f"Ignoring stale reader message (generation {generation})")
            return

        self._join_reader()

        if session.closing:
            self._teardown_connection(session)
            self._session = None
            self._set_state(SessionState.IDLE)
            logger.info("Disconnected")
            return

        if error is None:
            reason = "device detached" if session.lost else "stream ended unexpectedly"
            error = ReadFailure(reason)
        self._on_read_failure(session, error)

    # ========================================================================
    # Internal: Reconnection
    # ========================================================================

    def _on_read_failure(self, session: Session, error: Exception) -> None:
        logger.warning(f"Lost {session.handle.device}: {error}")
        self._set_state(SessionState.READ_ERROR)
        self._teardown_connection(session)
        self._reconnect_attempts = 0
        self._set_state(SessionState.RECONNECTING)
        self._schedule_attempt()

    def _schedule_attempt(self) -> None:
        self._next_attempt_at = time.monotonic() + self._reconnect_interval_s
        logger.debug(f"Next reconnect attempt in {self._reconnect_interval_s:.1f}s")

    def _handle_attempt(self) -> None:
        if self._state != SessionState.RECONNECTING or self._session is None:
            logger.debug(f"Reconnect attempt ignored in state {self._state.value}")
            return
        self._attempt_reconnect(self._session)

    def _handle_attached(self, handle: PortHandle) -> None:
        session = self._session
        if self._state != SessionState.RECONNECTING or session is None:
            return
        if matches(session.target, handle.descriptor):
            logger.info(f"Target device reappeared on {handle.device}")
            self._attempt_reconnect(session)

    def _handle_detached(self, handle: PortHandle) -> None:
        session = self._session
        if self._state != SessionState.CONNECTED or session is None or session.closing:
            return
        if handle.device == session.handle.device:
            logger.info(f"Active device {handle.device} detached")
            session.lost = True
            self._cancel_reader(session)

    def _attempt_reconnect(self, session: Session) -> None:
        self._next_attempt_at = None
        self._reconnect_attempts += 1
        attempt = self._reconnect_attempts

        try:
            handles = self._backend.enumerate_devices()
        except Exception as e:
            logger.warning(f"Reconnect attempt {attempt}: enumeration failed: {e}")
            self._schedule_attempt()
            return

        handle = find_match(session.target, handles)
        if handle is None:
            logger.debug(f"Reconnect attempt {attempt}: {session.target} not present")
            self._schedule_attempt()
            return

        try:
            connection = self._backend.open(handle, session.baud_rate)
        except Exception as e:
            logger.warning(f"Reconnect attempt {attempt}: {e}")
            self._schedule_attempt()
            return

        self._reconnect_count += 1
        logger.info(f"Reconnected to {handle.device} after {attempt} attempt(s)")
        self._bind(session, connection)

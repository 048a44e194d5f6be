"""Tests for SerialSessionManager selection, connect and disconnect.

Tests verify:
- Selection through the backend and by descriptor
- Connect/disconnect lifecycle and published state
- Open failures leave the manager Idle with an error, never retried
- Intents rejected in the wrong state
- Framing, buffering and the line callback while connected
- close() releases everything and is idempotent
"""

import threading
import time

import pytest

from fakes.fake_serial import FakeDevice, FakeReader, FakeSerialBackend
from serial_log_lib.config import MonitorConfig
from serial_log_lib.errors import OpenError, SelectionError, SessionStateError
from serial_log_lib.models import DeviceDescriptor, SessionState
from serial_log_lib.session import SerialSessionManager


def wait_until(predicate, timeout: float = 2.0) -> bool:
    """Poll predicate until it is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _texts(manager):
    return [line.text for line in manager.buffer_snapshot()]


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def backend(device):
    return FakeSerialBackend(device)


@pytest.fixture
def manager(backend):
    mgr = SerialSessionManager(backend, MonitorConfig(reconnect_interval_s=0.05))
    yield mgr
    mgr.close()


@pytest.fixture
def connected(manager):
    manager.request_device()
    manager.connect()
    return manager


# =============================================================================
# Selection
# =============================================================================

def test_initial_state(manager) -> None:
    assert manager.state == SessionState.IDLE
    assert manager.last_error is None
    assert manager.device_info is None
    assert manager.target is None
    assert manager.buffer_snapshot() == []


def test_list_devices(manager, device) -> None:
    handles = manager.list_devices()
    assert [h.device for h in handles] == ["/dev/ttyFAKE0"]
    assert handles[0].descriptor == device.descriptor


def test_request_device_selects(manager, device) -> None:
    handle = manager.request_device()
    assert handle.device == "/dev/ttyFAKE0"
    assert manager.device_info == handle
    assert manager.state == SessionState.IDLE


def test_request_device_declined(manager, backend) -> None:
    """Test a declined selection raises and records the error, staying Idle."""
    backend.decline_selection = True

    with pytest.raises(SelectionError):
        manager.request_device()

    assert manager.state == SessionState.IDLE
    assert manager.last_error == "No compatible serial port selected"
    assert backend.opened == []


def test_select_by_descriptor(manager, device) -> None:
    handle = manager.select_device(DeviceDescriptor(0x2341, 0x0043, "FAKE0001"))
    assert handle.device == device.handle.device


def test_select_unknown_descriptor(manager) -> None:
    with pytest.raises(SelectionError):
        manager.select_device(DeviceDescriptor(0x1234, 0x5678, None))
    assert "No device matching" in manager.last_error


def test_select_while_connected_rejected(connected, device) -> None:
    with pytest.raises(SessionStateError):
        connected.select_device(device.handle)


# =============================================================================
# Connect / Disconnect
# =============================================================================

def test_connect_without_selection(manager, backend) -> None:
    with pytest.raises(SessionStateError, match="No port selected"):
        manager.connect()
    assert manager.state == SessionState.IDLE
    assert backend.opened == []


def test_connect_and_disconnect(manager, backend, device) -> None:
    """Test the full Idle -> Connected -> Idle cycle releases the port."""
    manager.request_device()
    status = manager.connect()

    assert status.state == SessionState.CONNECTED
    assert manager.is_connected()
    assert manager.target == device.descriptor
    assert status.device.device == "/dev/ttyFAKE0"
    assert len(backend.opened) == 1
    assert wait_until(lambda: backend.live_readers == 1)

    manager.disconnect()
    assert manager.wait_for_state(SessionState.IDLE, timeout=2.0)

    assert backend.closed == backend.opened
    assert backend.live_readers == 0
    assert backend.max_live_readers == 1
    assert manager.last_error is None
    assert manager.target is None


def test_connect_uses_configured_baud(backend) -> None:
    with SerialSessionManager(backend, MonitorConfig(baud_rate=57600)) as manager:
        manager.request_device()
        manager.connect()
        assert backend.opened[0].baud_rate == 57600
        assert manager.baud_rate == 57600


def test_connect_baud_override(manager, backend) -> None:
    manager.request_device()
    manager.connect(115200)
    assert backend.opened[0].baud_rate == 115200
    assert manager.status().baud_rate == 115200


def test_set_baud_rate_applies_to_next_connect(manager, backend) -> None:
    manager.set_baud_rate(38400)
    assert manager.baud_rate == 38400

    manager.request_device()
    manager.connect()
    assert backend.opened[0].baud_rate == 38400

    with pytest.raises(ValueError):
        manager.set_baud_rate(0)


def test_connect_twice_rejected(connected) -> None:
    with pytest.raises(SessionStateError, match="Already connected"):
        connected.connect()
    assert connected.state == SessionState.CONNECTED


def test_open_failure_leaves_idle(manager, backend, device) -> None:
    """Test a failed open reports the error and does not retry."""
    device.open_failures = 1
    manager.request_device()

    with pytest.raises(OpenError):
        manager.connect()

    assert manager.state == SessionState.IDLE
    assert manager.last_error.startswith("Failed to connect:")
    assert "port busy" in manager.last_error

    time.sleep(0.2)
    assert manager.state == SessionState.IDLE
    assert backend.opened == []
    assert manager.reconnect_attempts == 0


def test_connect_after_open_failure(manager, backend, device) -> None:
    device.open_failures = 1
    manager.request_device()
    with pytest.raises(OpenError):
        manager.connect()

    manager.connect()
    assert manager.state == SessionState.CONNECTED
    assert manager.last_error is None


def test_disconnect_when_idle_is_noop(manager) -> None:
    manager.disconnect()
    time.sleep(0.05)
    assert manager.state == SessionState.IDLE


def test_reconnect_after_disconnect(manager, backend) -> None:
    """Test a manual connect works again after disconnecting."""
    manager.request_device()
    manager.connect()
    manager.disconnect()
    assert manager.wait_for_state(SessionState.IDLE, timeout=2.0)

    manager.connect()
    assert manager.state == SessionState.CONNECTED
    assert len(backend.opened) == 2
    assert wait_until(lambda: backend.live_readers == 1)
    assert backend.max_live_readers == 1
    assert manager.reconnect_count == 0


# =============================================================================
# Streaming
# =============================================================================

def test_lines_are_buffered(connected, device) -> None:
    device.emit(b"boot\n", b"\x1b[32mready\x1b[0m\nparti", b"al\n")
    assert wait_until(lambda: len(connected.buffer) == 3)
    assert _texts(connected) == ["boot", "ready", "partial"]


def test_bytes_sent_before_open_are_delivered(manager, device) -> None:
    device.emit(b"early\n")
    manager.request_device()
    manager.connect()
    assert wait_until(lambda: _texts(manager) == ["early"])


def test_disconnect_flushes_partial_line(connected, device) -> None:
    """Test the unterminated residue is emitted when disconnecting."""
    device.emit(b"hello\nwor")
    assert wait_until(lambda: _texts(connected) == ["hello"])

    connected.disconnect()
    assert connected.wait_for_state(SessionState.IDLE, timeout=2.0)

    lines = connected.buffer_snapshot()
    assert [line.text for line in lines] == ["hello", "wor"]
    assert lines[0].terminated
    assert not lines[1].terminated


def test_second_disconnect_after_read_loop_exit_flushes(
    monkeypatch, connected, backend, device
) -> None:
    """Test a disconnect queued ahead of the read loop's exit still flushes the residue."""
    entered = threading.Event()
    gate = threading.Event()
    original_cancel = FakeReader.cancel
    held = []

    def slow_cancel(reader):
        if threading.current_thread().name != "SessionControl" or held:
            original_cancel(reader)
            return
        held.append(reader)
        entered.set()
        gate.wait(timeout=2.0)
        original_cancel(reader)
        # Return only once the read loop has exited and queued its message
        wait_until(lambda: not connected._reader_thread.is_alive())

    monkeypatch.setattr(FakeReader, "cancel", slow_cancel)

    device.emit(b"head\nhalf")
    assert wait_until(lambda: _texts(connected) == ["head"])

    connected.disconnect()
    assert entered.wait(timeout=2.0)
    connected.disconnect()
    gate.set()

    assert connected.wait_for_state(SessionState.IDLE, timeout=2.0)
    lines = connected.buffer_snapshot()
    assert [line.text for line in lines] == ["head", "half"]
    assert not lines[1].terminated
    assert backend.live_readers == 0

    connected.connect()
    device.emit(b"new\n")
    assert wait_until(lambda: _texts(connected) == ["head", "half", "new"])


def test_line_limit_from_config(backend, device) -> None:
    with SerialSessionManager(backend, MonitorConfig(line_limit=2)) as manager:
        manager.request_device()
        manager.connect()
        device.emit(b"1\n2\n3\n")
        assert wait_until(lambda: manager.buffer.total_appended == 3)
        assert _texts(manager) == ["2", "3"]


def test_set_capacity_and_clear(connected, device) -> None:
    device.emit(b"a\nb\nc\n")
    assert wait_until(lambda: len(connected.buffer) == 3)

    connected.set_capacity(2)
    assert _texts(connected) == ["b", "c"]
    assert connected.status().line_limit == 2

    connected.clear()
    assert connected.buffer_snapshot() == []
    assert connected.status().lines == 0


def test_new_lines_cursor(connected, device) -> None:
    device.emit(b"a\n")
    assert wait_until(lambda: len(connected.buffer) == 1)
    lines, cursor = connected.new_lines(0)
    assert [line.text for line in lines] == ["a"]

    device.emit(b"b\n")
    assert wait_until(lambda: len(connected.buffer) == 2)
    lines, cursor = connected.new_lines(cursor)
    assert [line.text for line in lines] == ["b"]


def test_line_callback(backend, device) -> None:
    """Test on_line sees each batch and a failing callback does not stop reading."""
    seen = []

    def on_line(lines):
        seen.extend(line.text for line in lines)
        raise RuntimeError("display went away")

    with SerialSessionManager(backend, on_line=on_line) as manager:
        manager.request_device()
        manager.connect()
        device.emit(b"one\n")
        device.emit(b"two\n")
        assert wait_until(lambda: seen == ["one", "two"])
        assert _texts(manager) == ["one", "two"]
        assert manager.state == SessionState.CONNECTED


# =============================================================================
# Close
# =============================================================================

def test_close_releases_everything(backend, device) -> None:
    manager = SerialSessionManager(backend)
    manager.request_device()
    manager.connect()
    device.emit(b"head\ntail")
    assert wait_until(lambda: _texts(manager) == ["head"])

    manager.close()

    assert manager.state == SessionState.DISCONNECTED
    assert backend.live_readers == 0
    assert backend.closed == backend.opened
    assert _texts(manager) == ["head", "tail"]

    # Idempotent
    manager.close()
    assert manager.state == SessionState.DISCONNECTED


def test_intents_after_close(backend) -> None:
    manager = SerialSessionManager(backend)
    manager.close()

    manager.disconnect()
    manager.cancel_reconnect()
    with pytest.raises(SessionStateError):
        manager.connect()
    assert manager.state == SessionState.DISCONNECTED

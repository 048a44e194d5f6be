"""Tests for transparent reconnection after device loss.

Tests verify:
- Unplug moves the session to Reconnecting with the target retained
- Replug (or a manual retry) reacquires the same device
- Buffer contents and the original baud rate survive a reconnect
- At most one reader is live at any time
- Cancel and disconnect abandon the reconnect for good
- Cleanup errors from a vanished device are logged, never raised
"""

import logging
import time

import pytest

from fakes.fake_serial import FakeDevice, FakeSerialBackend
from serial_log_lib.config import MonitorConfig
from serial_log_lib.models import SessionState
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
    mgr.request_device()
    mgr.connect()
    yield mgr
    mgr.close()


def _lose(manager, backend, device) -> None:
    backend.unplug(device)
    assert manager.wait_for_state(SessionState.RECONNECTING, timeout=2.0)


# =============================================================================
# Device Loss and Reacquisition
# =============================================================================

def test_unplug_and_replug(manager, backend, device) -> None:
    """Test the full lose/retry/reacquire cycle keeps the buffer."""
    device.emit(b"before 1\nbefore 2\n")
    assert wait_until(lambda: len(manager.buffer) == 2)

    _lose(manager, backend, device)

    assert manager.target == device.descriptor
    assert manager.last_error is None
    assert wait_until(lambda: manager.reconnect_attempts >= 3)
    assert manager.state == SessionState.RECONNECTING

    backend.plug(device)
    assert manager.wait_for_state(SessionState.CONNECTED, timeout=2.0)
    assert manager.reconnect_count == 1

    device.emit(b"after\n")
    assert wait_until(lambda: len(manager.buffer) == 3)
    assert _texts(manager) == ["before 1", "before 2", "after"]
    assert backend.max_live_readers == 1


def test_old_connection_released_after_loss(manager, backend, device) -> None:
    first = backend.opened[0]
    _lose(manager, backend, device)

    assert not first.is_open
    assert first.reader is None
    assert backend.live_readers == 0
    assert first in backend.closed


def test_partial_line_flushed_on_loss(manager, backend, device) -> None:
    device.emit(b"done\nhalf")
    assert wait_until(lambda: _texts(manager) == ["done"])

    _lose(manager, backend, device)

    lines = manager.buffer_snapshot()
    assert [line.text for line in lines] == ["done", "half"]
    assert not lines[1].terminated


def test_stream_end_is_treated_as_loss(manager, backend, device) -> None:
    """Test an unrequested end of stream triggers a reconnect."""
    device.end_stream()

    assert wait_until(lambda: manager.reconnect_count == 1)
    assert manager.wait_for_state(SessionState.CONNECTED, timeout=2.0)
    assert len(backend.opened) == 2
    assert backend.max_live_readers == 1


def test_reconnect_keeps_original_baud(backend, device) -> None:
    with SerialSessionManager(backend, MonitorConfig(reconnect_interval_s=0.05)) as manager:
        manager.request_device()
        manager.connect(115200)
        manager.set_baud_rate(9600)

        _lose(manager, backend, device)
        backend.plug(device)
        assert manager.wait_for_state(SessionState.CONNECTED, timeout=2.0)

        assert backend.opened[-1].baud_rate == 115200
        assert manager.baud_rate == 115200

        manager.disconnect()
        assert manager.wait_for_state(SessionState.IDLE, timeout=2.0)
        assert manager.baud_rate == 9600


def test_reacquires_device_on_new_port(manager, backend, device) -> None:
    """Test the same device re-enumerated under another name is found."""
    _lose(manager, backend, device)

    renamed = FakeDevice(device="/dev/ttyFAKE1")
    backend.add_device(renamed)
    backend.plug(renamed)

    assert manager.wait_for_state(SessionState.CONNECTED, timeout=2.0)
    assert manager.device_info.device == "/dev/ttyFAKE1"


def test_ignores_other_devices(manager, backend, device) -> None:
    _lose(manager, backend, device)

    other = FakeDevice(device="/dev/ttyFAKE2", serial_number="OTHER")
    backend.add_device(other)
    backend.plug(other)

    time.sleep(0.3)
    assert manager.state == SessionState.RECONNECTING
    assert len(backend.opened) == 1


def test_detach_of_other_device_while_connected(manager, backend) -> None:
    other = backend.add_device(FakeDevice(device="/dev/ttyFAKE2", serial_number="OTHER"))
    backend.unplug(other)

    time.sleep(0.1)
    assert manager.state == SessionState.CONNECTED


def test_failed_open_during_reconnect_is_retried(manager, backend, device) -> None:
    _lose(manager, backend, device)

    device.open_failures = 2
    backend.plug(device)

    assert manager.wait_for_state(SessionState.CONNECTED, timeout=2.0)
    assert manager.reconnect_attempts >= 3
    assert device.open_failures == 0


def test_retry_now(backend, device) -> None:
    """Test a manual retry reconnects without waiting for the timer."""
    with SerialSessionManager(backend, MonitorConfig(reconnect_interval_s=30.0)) as manager:
        manager.request_device()
        manager.connect()
        _lose(manager, backend, device)

        # Back without a hot-plug notification
        device.plugged = True
        manager.retry_now()

        assert manager.wait_for_state(SessionState.CONNECTED, timeout=2.0)
        assert manager.reconnect_attempts == 1


def test_retry_now_when_connected_is_noop(manager, backend) -> None:
    manager.retry_now()
    time.sleep(0.1)
    assert manager.state == SessionState.CONNECTED
    assert len(backend.opened) == 1


# =============================================================================
# Abandoning a Reconnect
# =============================================================================

def test_cancel_reconnect(manager, backend, device) -> None:
    _lose(manager, backend, device)

    manager.cancel_reconnect()
    assert manager.wait_for_state(SessionState.IDLE, timeout=2.0)
    assert manager.last_error == "Reconnect cancelled"
    assert manager.target is None

    # Nothing revives a cancelled session
    backend.plug(device)
    manager.retry_now()
    time.sleep(0.3)
    assert manager.state == SessionState.IDLE
    assert len(backend.opened) == 1


def test_cancel_reconnect_when_connected_is_noop(manager) -> None:
    manager.cancel_reconnect()
    time.sleep(0.1)
    assert manager.state == SessionState.CONNECTED
    assert manager.last_error is None


def test_disconnect_while_reconnecting(manager, backend, device) -> None:
    _lose(manager, backend, device)

    manager.disconnect()
    assert manager.wait_for_state(SessionState.IDLE, timeout=2.0)
    assert manager.target is None

    backend.plug(device)
    time.sleep(0.3)
    assert manager.state == SessionState.IDLE
    assert len(backend.opened) == 1


def test_close_while_reconnecting(manager, backend, device) -> None:
    _lose(manager, backend, device)

    manager.close()
    assert manager.state == SessionState.DISCONNECTED

    backend.plug(device)
    time.sleep(0.2)
    assert len(backend.opened) == 1


# =============================================================================
# Cleanup Errors
# =============================================================================

def test_close_error_is_logged_not_raised(manager, backend, device, caplog) -> None:
    caplog.set_level(logging.WARNING, logger="serial_log_lib.transport")
    backend.close_error = OSError("device gone")

    _lose(manager, backend, device)

    assert any(
        "close /dev/ttyFAKE0 failed: device gone" in r.getMessage() for r in caplog.records
    )

    backend.close_error = None
    backend.plug(device)
    assert manager.wait_for_state(SessionState.CONNECTED, timeout=2.0)

"""
serial_log_lib - Attach to a USB serial device and stream its output as log lines.

Frames the raw byte stream into ANSI-stripped lines, keeps them in a bounded
buffer, and transparently reacquires the same device after it is replugged.
"""

from serial_log_lib.config import MonitorConfig, load_config, save_preferences
from serial_log_lib.errors import (
    CleanupWarning,
    InvalidFilterPattern,
    OpenError,
    ReaderLockedError,
    ReadFailure,
    SelectionError,
    SerialLogError,
    SessionStateError,
)
from serial_log_lib.filtering import FilterResult, LogFilter
from serial_log_lib.framing import LineFramer, strip_ansi
from serial_log_lib.matching import find_match, matches
from serial_log_lib.models import (
    DeviceDescriptor,
    LogLine,
    PortHandle,
    SessionState,
    SessionStatus,
)
from serial_log_lib.ring_buffer import BoundedLogBuffer
from serial_log_lib.session import SerialSessionManager
from serial_log_lib.transport import PySerialBackend

__version__ = "0.1.0"

__all__ = [
    "SerialSessionManager",
    "PySerialBackend",
    "MonitorConfig",
    "load_config",
    "save_preferences",
    "LineFramer",
    "strip_ansi",
    "BoundedLogBuffer",
    "matches",
    "find_match",
    "LogFilter",
    "FilterResult",
    "DeviceDescriptor",
    "PortHandle",
    "LogLine",
    "SessionState",
    "SessionStatus",
    "SerialLogError",
    "SelectionError",
    "OpenError",
    "ReadFailure",
    "ReaderLockedError",
    "SessionStateError",
    "InvalidFilterPattern",
    "CleanupWarning",
]

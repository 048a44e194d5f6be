"""Stream constants, escape patterns and timing for the serial log monitor."""

import re
from typing import Final, Tuple

# ============================================================================
# Framing
# ============================================================================

# Only LF terminates a line; CR is kept as data
LINE_TERMINATOR: Final[bytes] = b"\n"

# Device output is decoded as UTF-8; undecodable bytes become U+FFFD
TEXT_ENCODING: Final[str] = "utf-8"

# CSI-style escape: ESC or 8-bit CSI, optional intermediates, numeric
# parameters separated by ';', then one final byte
RE_ANSI_ESCAPE: Final[re.Pattern[str]] = re.compile(
    "[\u001b\u009b][[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]"
)

# ============================================================================
# Serial Parameters
# ============================================================================

DEFAULT_BAUD_RATE: Final[int] = 9600

# Rates offered by the connection panel, most common first
SUPPORTED_BAUD_RATES: Final[Tuple[int, ...]] = (
    9600,
    115200,
    57600,
    38400,
    19200,
    14400,
    4800,
    2400,
)

# ============================================================================
# Buffering
# ============================================================================

DEFAULT_LINE_LIMIT: Final[int] = 1000

# ============================================================================
# Timing
# ============================================================================

# Fixed delay between reacquisition attempts (no exponential growth)
DEFAULT_RECONNECT_INTERVAL_S: Final[float] = 2.0

# Read timeout on the port; bounds how long a cancel can go unnoticed
READ_TIMEOUT_S: Final[float] = 0.2

# Max bytes requested per read when nothing is waiting
READ_CHUNK_SIZE: Final[int] = 4096

# Poll period of the hot-plug port watcher
PORT_WATCH_INTERVAL_S: Final[float] = 1.0

# How long close() waits for background threads
THREAD_JOIN_TIMEOUT_S: Final[float] = 5.0

# ============================================================================
# Filtering
# ============================================================================

LEVEL_SELECTORS: Final[Tuple[str, ...]] = ("all", "error", "warning", "info", "debug")

"""Common utilities for hardware validation scripts.

Provides:
- Structured logging
- CSV export of the line buffer
- Robust teardown
- Result reporting
"""

import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from serial_log_lib import SerialSessionManager


@dataclass
class TestResult:
    """Uniform test result structure."""
    passed: bool
    message: str
    metrics: dict

    def print_result(self):
        """Print formatted result."""
        status = "PASS" if self.passed else "FAIL"
        print(f"\n{'='*60}")
        print(f"{status}: {self.message}")
        if self.metrics:
            print("\nMetrics:")
            for key, value in self.metrics.items():
                print(f"  {key}: {value}")
        print('='*60)


def setup_logging(script_name: str, logs_dir: Path) -> logging.Logger:
    """Setup structured logging to both console and file.

    Library loggers propagate to the root logger, so they land in the same
    file.

    Args:
        script_name: Name of the script (for log filename)
        logs_dir: Directory for log files

    Returns:
        Configured logger
    """
    logs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = logs_dir / f"{script_name}_{timestamp}.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # File handler - verbose
    fh = logging.FileHandler(log_file)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))

    # Console handler - less verbose
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))

    root.addHandler(fh)
    root.addHandler(ch)

    logger = logging.getLogger(script_name)
    logger.info(f"Logging to {log_file}")
    return logger


def export_lines_csv(manager: SerialSessionManager, out_dir: Path, prefix: str) -> Path:
    """Export the manager's buffer to a timestamped CSV file.

    Args:
        manager: SerialSessionManager instance
        out_dir: Output directory
        prefix: Filename prefix

    Returns:
        Path to exported CSV file
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = out_dir / f"{prefix}_{timestamp}.csv"

    lines = manager.buffer_snapshot()
    df = pd.DataFrame({
        "timestamp": [line.ts.isoformat() for line in lines],
        "text": [line.text for line in lines],
        "terminated": [line.terminated for line in lines],
    })
    df.to_csv(filepath, index=False)
    return filepath


def robust_teardown(manager: Optional[SerialSessionManager],
                    logger: Optional[logging.Logger] = None):
    """Close the manager, logging instead of raising.

    Args:
        manager: SerialSessionManager instance (may be None)
        logger: Optional logger for messages
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    if manager is None:
        return
    try:
        logger.info("Closing session manager...")
        manager.close()
    except Exception as e:
        logger.error(f"Error during teardown: {e}")


def wait_for_lines(manager: SerialSessionManager,
                   min_lines: int,
                   timeout: float = 30.0,
                   logger: Optional[logging.Logger] = None) -> bool:
    """Wait until the buffer has seen at least min_lines lines.

    Args:
        manager: SerialSessionManager instance
        min_lines: Minimum number of lines appended
        timeout: Maximum wait time in seconds
        logger: Optional logger

    Returns:
        True if min_lines reached, False on timeout
    """
    if logger is None:
        logger = logging.getLogger(__name__)

    start = time.time()
    last_count = 0

    while time.time() - start < timeout:
        current_count = manager.buffer.total_appended

        if current_count >= min_lines:
            logger.info(f"Reached {current_count} lines")
            return True

        if current_count != last_count:
            logger.debug(f"Buffer has seen {current_count} lines...")
            last_count = current_count

        time.sleep(0.2)

    logger.warning(f"Timeout after {timeout}s. Only {last_count} lines received.")
    return False

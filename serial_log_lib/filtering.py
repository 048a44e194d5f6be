"""Regex and level filtering of buffered log lines for display."""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from serial_log_lib import protocol
from serial_log_lib.errors import InvalidFilterPattern
from serial_log_lib.models import LogLine

logger = logging.getLogger(__name__)


def compile_pattern(text: str) -> Optional["re.Pattern[str]"]:
    """Compile a user filter pattern.

    Args:
        text: Regex source. Empty means no filter.

    Returns:
        Compiled pattern, or None for an empty pattern

    Raises:
        InvalidFilterPattern: If text is not a valid regex
    """
    if not text:
        return None
    try:
        return re.compile(text)
    except re.error as e:
        raise InvalidFilterPattern(f"Invalid filter pattern {text!r}: {e}") from e


def matches_level(line: LogLine, level: str) -> bool:
    """Check a line against a coarse level selector (case-insensitive)."""
    if level == "all":
        return True
    return level in line.text.lower()


@dataclass(frozen=True)
class FilterResult:
    """Filtered view of the buffer.

    Attributes:
        lines: Lines that passed the filter, oldest first.
        pattern_valid: False if the current pattern text failed to compile.
        error: Compile error message when pattern_valid is False.
    """

    lines: List[LogLine]
    pattern_valid: bool = True
    error: Optional[str] = None


class LogFilter:
    """Stateful filter that survives invalid patterns.

    When a new pattern does not compile, the last valid pattern stays in
    force and the result is flagged so the caller can show the error.
    """

    def __init__(self, pattern: str = "", level: str = "all") -> None:
        self._pattern_text = ""
        self._compiled: Optional["re.Pattern[str]"] = None
        self._error: Optional[str] = None
        self._level = "all"
        self.set_level(level)
        self.set_pattern(pattern)

    def set_pattern(self, text: str) -> bool:
        """Replace the regex pattern.

        Returns:
            True if the pattern compiled and is now active
        """
        self._pattern_text = text
        try:
            self._compiled = compile_pattern(text)
        except InvalidFilterPattern as e:
            self._error = str(e)
            logger.debug(self._error)
            return False
        self._error = None
        return True

    def set_level(self, level: str) -> None:
        """Replace the level selector.

        Raises:
            ValueError: If level is not a known selector
        """
        level = level.lower()
        if level not in protocol.LEVEL_SELECTORS:
            raise ValueError(f"level must be one of {protocol.LEVEL_SELECTORS}, got '{level}'")
        self._level = level

    def apply(self, lines: Sequence[LogLine]) -> FilterResult:
        """Filter lines by level then by pattern.

        Args:
            lines: Buffer snapshot, oldest first

        Returns:
            FilterResult with the surviving lines
        """
        kept = [line for line in lines if matches_level(line, self._level)]
        if self._compiled is not None:
            kept = [line for line in kept if self._compiled.search(line.text)]
        return FilterResult(
            lines=kept, pattern_valid=self._error is None, error=self._error
        )

    @property
    def pattern(self) -> str:
        """Pattern text as last set, valid or not."""
        return self._pattern_text

    @property
    def level(self) -> str:
        return self._level

    @property
    def pattern_valid(self) -> bool:
        return self._error is None

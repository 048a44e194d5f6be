"""Byte-stream to log-line framing with ANSI escape removal."""

import logging
from typing import List, Optional

from serial_log_lib import protocol
from serial_log_lib.models import LogLine

logger = logging.getLogger(__name__)


def strip_ansi(text: str) -> str:
    """Remove CSI-style terminal escape sequences from text.

    Args:
        text: Decoded device output

    Returns:
        Text with every escape sequence removed
    """
    return protocol.RE_ANSI_ESCAPE.sub("", text)


def decode_line(data: bytes) -> str:
    """Decode one line worth of bytes and strip escapes.

    A newline byte never occurs inside a UTF-8 multibyte sequence, so
    decoding line by line gives the same text as decoding the whole stream.
    """
    return strip_ansi(data.decode(protocol.TEXT_ENCODING, errors="replace"))


class LineFramer:
    """Stateful accumulator turning arbitrary byte chunks into LogLines.

    Bytes not yet terminated by a newline are kept until a later feed()
    completes them or flush() emits them as a final unterminated line.
    Escape stripping is done per completed line, so sequences split across
    chunks are still removed.
    """

    def __init__(self) -> None:
        self._partial = bytearray()

    def feed(self, chunk: bytes) -> List[LogLine]:
        """Append a chunk and return every line it completed.

        Args:
            chunk: Raw bytes from the transport (may be empty)

        Returns:
            Zero or more LogLines, in stream order
        """
        if not chunk:
            return []

        self._partial.extend(chunk)

        lines: List[LogLine] = []
        start = 0
        while True:
            idx = self._partial.find(protocol.LINE_TERMINATOR, start)
            if idx == -1:
                break
            lines.append(LogLine(text=decode_line(bytes(self._partial[start:idx]))))
            start = idx + 1

        if start:
            del self._partial[:start]

        if lines:
            logger.debug(f"Framed {len(lines)} lines, {len(self._partial)} bytes pending")
        return lines

    def flush(self) -> Optional[LogLine]:
        """Emit pending bytes as a final line, even without a terminator.

        Returns:
            The residual LogLine, or None if nothing was pending
        """
        if not self._partial:
            return None

        line = LogLine(text=decode_line(bytes(self._partial)), terminated=False)
        logger.debug(f"Flushed {len(self._partial)} unterminated bytes")
        self._partial.clear()
        return line

    @property
    def pending(self) -> int:
        """Number of bytes waiting for a newline."""
        return len(self._partial)

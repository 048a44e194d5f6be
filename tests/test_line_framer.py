"""Tests for LineFramer and ANSI stripping.

Tests verify:
- Lines are emitted only once their newline arrives
- flush() emits the unterminated residue exactly once
- Escape sequences split across chunks are still removed
- Output is independent of how the stream is chunked
"""

import pytest

from serial_log_lib.framing import LineFramer, decode_line, strip_ansi


def _texts(lines):
    return [line.text for line in lines]


def test_partial_lines_wait_for_newline() -> None:
    """Test "AB", "C\\n", "DE" frames ABC and keeps DE for flush."""
    framer = LineFramer()

    assert framer.feed(b"AB") == []
    assert framer.pending == 2

    lines = framer.feed(b"C\n")
    assert _texts(lines) == ["ABC"]
    assert lines[0].terminated

    assert framer.feed(b"DE") == []

    residual = framer.flush()
    assert residual is not None
    assert residual.text == "DE"
    assert not residual.terminated
    assert framer.pending == 0


def test_flush_with_nothing_pending() -> None:
    """Test flush() returns None when no bytes are pending."""
    framer = LineFramer()
    assert framer.flush() is None

    framer.feed(b"done\n")
    assert framer.flush() is None


def test_flush_is_emitted_once() -> None:
    """Test a second flush does not repeat the residue."""
    framer = LineFramer()
    framer.feed(b"tail")
    assert framer.flush().text == "tail"
    assert framer.flush() is None


def test_multiple_lines_in_one_chunk() -> None:
    """Test one chunk completing several lines keeps their order."""
    framer = LineFramer()
    assert _texts(framer.feed(b"one\ntwo\n\nthree")) == ["one", "two", ""]
    assert framer.flush().text == "three"


def test_empty_chunk_is_ignored() -> None:
    framer = LineFramer()
    assert framer.feed(b"") == []
    assert framer.pending == 0


def test_carriage_return_is_kept() -> None:
    """Test only LF terminates a line; CR stays in the text."""
    framer = LineFramer()
    assert _texts(framer.feed(b"boot ok\r\n")) == ["boot ok\r"]


def test_ansi_sequences_are_stripped() -> None:
    """Test color codes are removed from framed lines."""
    framer = LineFramer()
    lines = framer.feed(b"\x1b[31mERROR\x1b[0m: overheated\n")
    assert _texts(lines) == ["ERROR: overheated"]


def test_ansi_sequence_split_across_chunks() -> None:
    """Test an escape sequence straddling two chunks is still removed."""
    framer = LineFramer()
    assert framer.feed(b"\x1b[3") == []
    assert _texts(framer.feed(b"1mRED\x1b[0m\n")) == ["RED"]


def test_multibyte_character_split_across_chunks() -> None:
    """Test a UTF-8 sequence split between chunks decodes correctly."""
    framer = LineFramer()
    assert framer.feed(b"caf\xc3") == []
    assert _texts(framer.feed(b"\xa9\n")) == ["café"]


def test_invalid_utf8_is_replaced() -> None:
    assert decode_line(b"bad \xff byte") == "bad \ufffd byte"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("\x1b[0m", ""),
        ("\x1b[1;32mOK\x1b[0m", "OK"),
        ("\x1b[2K\x1b[1Gprompt>", "prompt>"),
        ("\x1b[?25lhidden cursor", "hidden cursor"),
        ("\u009b31mC1 CSI", "C1 CSI"),
        ("plain text", "plain text"),
    ],
)
def test_strip_ansi(text, expected) -> None:
    """Test strip_ansi removes CSI-style sequences only."""
    assert strip_ansi(text) == expected


def test_chunking_does_not_change_output() -> None:
    """Test every two-cut split of a stream frames to the same text."""
    stream = b"one\r\nt\x1b[1mw\x1b[0mo\n\xc3\xa9t\xc3\xa9\nunterminated"

    reference = LineFramer()
    expected = reference.feed(stream)
    expected.append(reference.flush())
    expected_text = "".join(line.raw for line in expected)

    for i in range(len(stream) + 1):
        for j in range(i, len(stream) + 1):
            framer = LineFramer()
            lines = []
            for chunk in (stream[:i], stream[i:j], stream[j:]):
                lines.extend(framer.feed(chunk))
            residual = framer.flush()
            if residual is not None:
                lines.append(residual)

            assert "".join(line.raw for line in lines) == expected_text, (i, j)
            assert _texts(lines) == _texts(expected), (i, j)

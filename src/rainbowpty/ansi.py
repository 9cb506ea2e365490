from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import NamedTuple

import rich.repr

from rainbowpty.cursor import Cursor, SavedCursor
from rainbowpty.rainbow import COLOR_MODES, ColorPhase, rainbow

log = logging.getLogger("rainbowpty")


def byte_range(start: int, end: int) -> frozenset[int]:
    """Build a set of byte values between two bytes.

    Args:
        start: Start byte.
        end: End byte (inclusive)

    Returns:
        A frozenset of byte values.
    """
    return frozenset(range(start, end + 1))


MAX_SEQUENCE = 4096
"""Default limit for a single escape sequence before it is emitted as-is."""

ESCAPE = 0x1B
BELL = 0x07
BACKSLASH = 0x5C
CSI = ord("[")
OSC = ord("]")

PRINTABLE = byte_range(0x20, 0x7E)
INTERMEDIATE = byte_range(0x20, 0x2F)
FINAL = byte_range(0x30, 0x7E)
CSI_FINAL = byte_range(0x40, 0x7E)

# Introducers of sequences terminated by ST (ESC \)
STRING_INTRODUCERS = {
    ord("P"): "dcs",
    ord("k"): "title",
    ord("_"): "apc",
    ord("^"): "pm",
    ord("X"): "sos",
}

RESET_TO_INITIAL_STATE = b"\x1bc"
ENTER_ALTERNATE_SCREEN = b"\x1b[?1049h"
LEAVE_ALTERNATE_SCREEN = b"\x1b[?1049l"

CURSOR_CSI = re.compile(rb"\x1b\[(\d*)(?:;(\d*))?(?:;\d*)*([@A-Za-z])")


class Text(NamedTuple):
    """Plain text (the initial state)."""


@rich.repr.auto
class EscapeSequence(NamedTuple):
    """Inside an unterminated escape sequence."""

    keep: bytearray
    """Bytes of the sequence so far, including the leading ESC."""

    def __rich_repr__(self) -> rich.repr.Result:
        yield bytes(self.keep)


@rich.repr.auto
class Utf8Continuation(NamedTuple):
    """Inside a multi-byte UTF-8 character."""

    keep: bytearray
    """Bytes of the character so far."""
    expected: int
    """Length of the complete character."""

    def __rich_repr__(self) -> rich.repr.Result:
        yield bytes(self.keep)
        yield "expected", self.expected


type ParserState = Text | EscapeSequence | Utf8Continuation

TEXT = Text()


def utf8_length(lead: int) -> int:
    """Get the length of a UTF-8 character from its first byte.

    Args:
        lead: First byte of the character.

    Returns:
        2, 3, or 4. Any byte which isn't a valid lead byte has a length of 1.
    """
    if lead & 0b1110_0000 == 0b1100_0000:
        return 2
    if lead & 0b1111_0000 == 0b1110_0000:
        return 3
    if lead & 0b1111_1000 == 0b1111_0000:
        return 4
    return 1


@lru_cache(maxsize=1024)
def parse_csi(csi: bytes) -> tuple[str, int, int] | None:
    """Parse a cursor-like CSI sequence.

    Args:
        csi: A complete CSI sequence.

    Returns:
        A tuple of the final character and the first two numeric parameters
            (missing or zero parameters are 1), or `None` if the sequence
            doesn't have plain numeric parameters.
    """
    if (match := CURSOR_CSI.fullmatch(csi)) is None:
        return None
    first, second, final = match.groups(default=b"")
    return (final.decode("ascii"), int(first or 0) or 1, int(second or 0) or 1)


class RainbowStream:
    """Recolors a stream of terminal output, one byte at a time.

    Text is prefixed with a color sequence derived from the cursor position.
    Escape sequences are passed through unmodified, and update the cursor
    where they move it.
    """

    def __init__(
        self,
        phase: ColorPhase | None = None,
        colors: str = "truecolor",
        max_sequence: int = MAX_SEQUENCE,
        cursor: Cursor | None = None,
    ) -> None:
        """Create a stream.

        Args:
            phase: Gradient parameters, or `None` for a random offset.
            colors: Color mode; a key of `COLOR_MODES`.
            max_sequence: Maximum length of an escape sequence.
            cursor: Initial cursor, or `None` to start at the top left.
        """
        if colors not in COLOR_MODES:
            raise ValueError(
                f"Unknown color mode {colors!r}; expected one of {', '.join(COLOR_MODES)}"
            )
        self.phase = ColorPhase.random() if phase is None else phase
        self.colors = colors
        self.encode = COLOR_MODES[colors]
        self.max_sequence = max(max_sequence, 2)
        self.cursor = Cursor() if cursor is None else cursor
        self.saved_cursor: SavedCursor | None = None
        self.state: ParserState = TEXT

    def color(self, row: int, column: int) -> bytes:
        """Get the color sequence for a screen position.

        Args:
            row: Row (1-based).
            column: Column (1-based).

        Returns:
            An SGR sequence.
        """
        phase = self.phase
        return self.encode(rainbow(phase.frequency, phase.phase(row, column)))

    def feed(self, data: bytes) -> bytes:
        """Feed output from the child, and get the recolored output.

        Incomplete sequences at the end of `data` are held until a later call
        completes them.

        Args:
            data: Bytes to process.

        Returns:
            Bytes to write to the terminal.
        """
        output = bytearray()
        classify = self.classify
        for byte in data:
            classify(byte, output)
        return bytes(output)

    def flush(self) -> bytes:
        """Get any partial sequence unmodified, and return to the text state.

        Returns:
            Pending bytes.
        """
        match self.state:
            case EscapeSequence(keep) | Utf8Continuation(keep, _):
                pending = bytes(keep)
            case _:
                pending = b""
        self.state = TEXT
        return pending

    def classify(self, byte: int, output: bytearray) -> ParserState:
        """Classify a single byte.

        Args:
            byte: Byte value.
            output: Buffer to write output to.

        Returns:
            The new state.
        """
        match self.state:
            case Text():
                state = self._text(byte, output)
            case EscapeSequence() as escape_sequence:
                state = self._escape_sequence(escape_sequence, byte, output)
            case Utf8Continuation() as utf8:
                state = self._utf8_continuation(utf8, byte, output)
        self.state = state
        return state

    def _character(self, character: bytes | bytearray, output: bytearray) -> None:
        """Write a single column character."""
        cursor = self.cursor
        cursor.advance()
        output += self.color(cursor.row, cursor.column)
        output += character

    def _text(self, byte: int, output: bytearray) -> ParserState:
        if byte == ESCAPE:
            return EscapeSequence(bytearray((byte,)))

        if byte & 0x80:
            if (expected := utf8_length(byte)) == 1:
                self._character(bytes((byte,)), output)
                return TEXT
            return Utf8Continuation(bytearray((byte,)), expected)

        cursor = self.cursor
        match byte:
            case 0x0A:  # \n
                cursor.new_line()
            case 0x0D:  # \r
                cursor.carriage_return()
            case 0x08:  # \b
                cursor.backspace()
            case 0x09:  # \t
                cursor.tab()
            case _ if byte in PRINTABLE:
                cursor.advance()
        output += self.color(cursor.row, cursor.column)
        output.append(byte)
        return TEXT

    def _escape_sequence(
        self, state: EscapeSequence, byte: int, output: bytearray
    ) -> ParserState:
        keep = state.keep
        keep.append(byte)

        if len(keep) == 2:
            if byte in (CSI, OSC) or byte in STRING_INTRODUCERS:
                complete = False
            elif byte in INTERMEDIATE:
                # Three byte sequence, e.g. ESC ( B
                complete = False
            elif byte in FINAL:
                complete = True
            else:
                # Not a sequence; the ESC goes out as-is
                output.append(ESCAPE)
                return self._text(byte, output)
        else:
            introducer = keep[1]
            if introducer == CSI:
                complete = byte in CSI_FINAL
            elif introducer == OSC:
                complete = byte == BELL or (byte == BACKSLASH and keep[-2] == ESCAPE)
            elif introducer in STRING_INTRODUCERS:
                complete = byte == BACKSLASH and keep[-2] == ESCAPE
            else:
                complete = True

        if not complete:
            if len(keep) >= self.max_sequence:
                log.warning(
                    "escape sequence exceeded %d bytes; writing unmodified",
                    self.max_sequence,
                )
                output += keep
                return TEXT
            return state

        sequence = bytes(keep)
        if sequence[1] == CSI:
            self._on_csi(sequence)
        elif sequence == RESET_TO_INITIAL_STATE:
            self.cursor.reset()
        output += sequence
        return TEXT

    def _on_csi(self, csi: bytes) -> None:
        """Update the cursor from a complete CSI sequence."""
        cursor = self.cursor
        if csi == ENTER_ALTERNATE_SCREEN:
            self.saved_cursor = cursor.save()
            return
        if csi == LEAVE_ALTERNATE_SCREEN:
            if self.saved_cursor is not None:
                cursor.restore(self.saved_cursor)
            return

        match parse_csi(csi):
            case ["A", lines, _]:
                cursor.up(lines)
            case ["B", lines, _]:
                cursor.down(lines)
            case ["C", cells, _]:
                cursor.forward(cells)
            case ["D", cells, _]:
                cursor.back(cells)
            case ["E", lines, _]:
                cursor.next_line(lines)
            case ["F", lines, _]:
                cursor.previous_line(lines)
            case ["G", column, _]:
                cursor.set_column(column)
            case ["H" | "f", row, column]:
                cursor.move_to(row, column)

    def _utf8_continuation(
        self, state: Utf8Continuation, byte: int, output: bytearray
    ) -> ParserState:
        keep = state.keep
        if byte & 0b1100_0000 != 0b1000_0000:
            # Truncated character; write what we have and start over
            self._character(keep, output)
            return self._text(byte, output)

        keep.append(byte)
        if len(keep) < state.expected:
            return state
        self._character(keep, output)
        return TEXT

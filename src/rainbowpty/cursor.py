from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

import rich.repr

TAB_SIZE = 8


@rich.repr.auto
class SavedCursor(NamedTuple):
    """A snapshot of the cursor position."""

    row: int
    column: int

    def __rich_repr__(self) -> rich.repr.Result:
        yield self.row
        yield self.column


@rich.repr.auto
@dataclass
class Cursor:
    """Logical cursor position (1-based).

    This is only used to pick a color, so it is never clamped to the screen.
    Rows and columns may be less than 1, or beyond the terminal dimensions.
    """

    row: int = 1
    column: int = 1

    def __rich_repr__(self) -> rich.repr.Result:
        yield "row", self.row
        yield "column", self.column

    @property
    def position(self) -> tuple[int, int]:
        return (self.row, self.column)

    def advance(self) -> None:
        """Advance over a single printed character."""
        self.column += 1

    def new_line(self) -> None:
        self.row += 1
        self.column = 1

    def carriage_return(self) -> None:
        self.column = 1

    def backspace(self) -> None:
        self.column -= 1

    def tab(self) -> None:
        """Move to the next tab stop (columns 1, 9, 17 ...)."""
        self.column = ((self.column - 1) // TAB_SIZE + 1) * TAB_SIZE + 1

    def up(self, lines: int = 1) -> None:
        self.row -= lines

    def down(self, lines: int = 1) -> None:
        self.row += lines

    def forward(self, cells: int = 1) -> None:
        self.column += cells

    def back(self, cells: int = 1) -> None:
        self.column -= cells

    def next_line(self, lines: int = 1) -> None:
        self.row += lines
        self.column = 1

    def previous_line(self, lines: int = 1) -> None:
        self.row -= lines
        self.column = 1

    def set_column(self, column: int) -> None:
        self.column = column

    def move_to(self, row: int, column: int) -> None:
        self.row = row
        self.column = column

    def reset(self) -> None:
        """Home the cursor, as after a full terminal reset."""
        self.row = 1
        self.column = 1

    def save(self) -> SavedCursor:
        return SavedCursor(self.row, self.column)

    def restore(self, saved: SavedCursor) -> None:
        self.row, self.column = saved

from __future__ import annotations

import random
from dataclasses import dataclass
from functools import lru_cache
from math import floor, pi, sin
from typing import Callable, Mapping

from textual.color import Color

THIRD = 2 * pi / 3

SGR_RESET = b"\x1b[0m"


@dataclass(frozen=True)
class ColorPhase:
    """Parameters of the rainbow gradient for a session."""

    frequency: float = 0.1
    """How quickly the hue changes."""
    spread: float = 3.0
    """Columns per unit of phase (higher values make wider bands)."""
    offset: float = 0.0
    """Starting point of the gradient."""

    def __post_init__(self) -> None:
        if self.spread <= 0:
            raise ValueError(f"spread must be positive; found {self.spread!r}")

    @classmethod
    def random(
        cls,
        frequency: float = 0.1,
        spread: float = 3.0,
        rng: random.Random | None = None,
    ) -> ColorPhase:
        """Create a phase with a random offset in the range [0, 255).

        Args:
            frequency: Gradient frequency.
            spread: Gradient spread.
            rng: Optional random number generator (for reproducible offsets).

        Returns:
            A new ColorPhase.
        """
        offset = (rng or random).random() * 255
        return cls(frequency, spread, offset)

    def phase(self, row: int, column: int) -> float:
        """The phase scalar for a screen position."""
        return self.offset + row + column / self.spread


def rainbow(frequency: float, phase: float) -> Color:
    """Get the rainbow color at a given phase.

    Three sine waves of the same frequency, 120 degrees apart.

    Args:
        frequency: Gradient frequency.
        phase: Phase scalar.

    Returns:
        A color.
    """
    angle = frequency * phase
    return Color(
        int(sin(angle) * 127 + 128),
        int(sin(angle + THIRD) * 127 + 128),
        int(sin(angle + 2 * THIRD) * 127 + 128),
    )


@lru_cache(maxsize=4096)
def _truecolor(red: int, green: int, blue: int) -> bytes:
    return f"\x1b[38;2;{red};{green};{blue}m".encode("ascii")


@lru_cache(maxsize=256)
def _color_256(index: int) -> bytes:
    return f"\x1b[38;5;{index}m".encode("ascii")


def cube_index(color: Color) -> int:
    """Map a color on to the 6x6x6 cube of the 256 color palette."""
    red, green, blue = color.rgb
    return (
        16
        + 36 * floor(red / 256 * 6)
        + 6 * floor(green / 256 * 6)
        + floor(blue / 256 * 6)
    )


def sgr_truecolor(color: Color) -> bytes:
    """Encode a 24-bit foreground color sequence."""
    return _truecolor(*color.rgb)


def sgr_256(color: Color) -> bytes:
    """Encode an 8-bit (256 color) foreground color sequence."""
    return _color_256(cube_index(color))


type ColorEncoder = Callable[[Color], bytes]

COLOR_MODES: Mapping[str, ColorEncoder] = {
    "truecolor": sgr_truecolor,
    "256": sgr_256,
}

"""Color representation and perceptual color distance for FilamentGroup."""

from functools import total_ordering
from typing import Iterable, Sequence, Tuple

import numpy as np
from skimage.color import deltaE_ciede2000, rgb2lab


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """Convert hex color string to RGB tuple."""
    hex_color = hex_color.lstrip("#")
    rgb_values = tuple(int(hex_color[i : i + 2], 16) for i in (0, 2, 4))
    return (rgb_values[0], rgb_values[1], rgb_values[2])


@total_ordering
class Color:
    """8-bit RGBA color of a filament or a loaded spool.

    Colors compare channel by channel (r, g, b, a) so they can be used as
    part of sort keys when equivalent spools are grouped together.
    """

    __slots__ = ("r", "g", "b", "a")

    def __init__(self, r: int = 0, g: int = 0, b: int = 0, a: int = 255):
        for value in (r, g, b, a):
            if not 0 <= int(value) <= 255:
                raise ValueError(f"Color channel out of range: {value}")
        self.r = int(r)
        self.g = int(g)
        self.b = int(b)
        self.a = int(a)

    @classmethod
    def from_hex(cls, hex_str: str) -> "Color":
        """Parse ``#RRGGBB`` or ``#RRGGBBAA``.

        Args:
            hex_str: Hex color string with leading ``#``

        Returns:
            Parsed color

        Raises:
            ValueError: If the string is not a 7 or 9 character hex color
        """
        if not hex_str or hex_str[0] != "#" or len(hex_str) not in (7, 9):
            raise ValueError(f"Invalid hex color: {hex_str!r}")
        try:
            r, g, b = hex_to_rgb(hex_str[:7])
            a = int(hex_str[7:9], 16) if len(hex_str) == 9 else 255
        except ValueError as e:
            raise ValueError(f"Invalid hex color: {hex_str!r}") from e
        return cls(r, g, b, a)

    def to_hex_str(self, include_alpha: bool = False) -> str:
        """Format as lowercase ``#rrggbb`` (or ``#rrggbbaa``)."""
        text = f"#{self.r:02x}{self.g:02x}{self.b:02x}"
        if include_alpha:
            text += f"{self.a:02x}"
        return text

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)

    def _key(self) -> Tuple[int, int, int, int]:
        return (self.r, self.g, self.b, self.a)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Color):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other: "Color") -> bool:
        if not isinstance(other, Color):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        return f"Color({self.to_hex_str(include_alpha=True)})"


def rgb_to_lab(rgb: Iterable[Sequence[int]]) -> np.ndarray:
    """Convert 8-bit RGB triples to CIELAB.

    Args:
        rgb: Sequence of (r, g, b) triples in [0, 255]

    Returns:
        Array of shape (N, 3) with L*, a*, b* values
    """
    arr = np.asarray(list(rgb), dtype=np.float64).reshape(-1, 3)
    if arr.size == 0:
        return np.zeros((0, 3), dtype=np.float64)
    # rgb2lab wants an image-shaped float array in [0, 1]
    lab = rgb2lab((arr / 255.0).reshape(1, -1, 3))
    return lab.reshape(-1, 3)


def color_distance(rgb_a: Sequence[int], rgb_b: Sequence[int]) -> float:
    """Perceptual distance (CIEDE2000) between two RGB triples."""
    lab = rgb_to_lab([rgb_a, rgb_b])
    return float(deltaE_ciede2000(lab[0], lab[1]))


def color_distance_matrix(
    colors_a: Sequence[Color], colors_b: Sequence[Color]
) -> np.ndarray:
    """Pairwise CIEDE2000 distances.

    Args:
        colors_a: Row colors
        colors_b: Column colors

    Returns:
        Array of shape (len(colors_a), len(colors_b))
    """
    if not colors_a or not colors_b:
        return np.zeros((len(colors_a), len(colors_b)), dtype=np.float64)

    lab_a = rgb_to_lab([c.rgb for c in colors_a])
    lab_b = rgb_to_lab([c.rgb for c in colors_b])

    rows = np.repeat(lab_a[:, None, :], len(colors_b), axis=1)
    cols = np.repeat(lab_b[None, :, :], len(colors_a), axis=0)
    return deltaE_ciede2000(rows, cols)

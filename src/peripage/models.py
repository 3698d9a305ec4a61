"""
Printer models and the monochrome raster consumed by the encoder.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable

from .errors import EncodingError


class PrinterModel(IntEnum):
    """Peripage models, valued by printable dots per row."""
    A6 = 384
    A6P = 576
    A40 = 1728
    A40P = 1848

    @property
    def row_width(self) -> int:
        """Maximum number of dots the print head can burn on one row."""
        return int(self)

    @property
    def row_bytes(self) -> int:
        """Bytes per raster row (8 dots per byte)."""
        return self.row_width // 8

    @property
    def row_characters(self) -> int:
        """Characters per row when rendering text at 12 dots per glyph."""
        return self.row_width // 12

    @classmethod
    def from_name(cls, name: str) -> "PrinterModel":
        """Look up a model by case-insensitive name ("a6p", "A40", ...)."""
        try:
            return cls[name.upper()]
        except KeyError:
            raise ValueError(
                f"Unknown printer model: {name}. "
                f"Supported models: {[m.name for m in cls]}"
            ) from None


@dataclass(frozen=True)
class MonochromeRaster:
    """
    1-bit raster, packed row-major with the leftmost pixel in the MSB.

    A set bit means "burn" (black). The buffer always holds
    ceil(width / 8) bytes per row.

    Attributes:
        width: Width in pixels
        height: Height in pixels
        data: Packed pixel rows
    """
    width: int
    height: int
    data: bytes

    def __post_init__(self):
        if self.width < 0 or self.height < 0:
            raise EncodingError(
                f"Raster dimensions must be non-negative, got {self.width}x{self.height}"
            )
        expected = self.bytes_per_row * self.height
        if len(self.data) != expected:
            raise EncodingError(
                f"Raster buffer is {len(self.data)} bytes, expected {expected} "
                f"for {self.width}x{self.height}"
            )
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

    @property
    def bytes_per_row(self) -> int:
        return (self.width + 7) // 8

    def row(self, y: int) -> bytes:
        """Return the packed bytes of row ``y``."""
        if not 0 <= y < self.height:
            raise IndexError(f"Row {y} out of range for height {self.height}")
        start = y * self.bytes_per_row
        return self.data[start:start + self.bytes_per_row]

    def rows(self, start: int = 0, stop: int = None) -> bytes:
        """Return the packed bytes of rows ``start`` up to ``stop``."""
        stop = self.height if stop is None else min(stop, self.height)
        return self.data[start * self.bytes_per_row:stop * self.bytes_per_row]

    @classmethod
    def blank(cls, width: int, height: int) -> "MonochromeRaster":
        """Create an all-white raster."""
        return cls(width, height, bytes(((width + 7) // 8) * height))

    @classmethod
    def from_rows(cls, width: int, rows: Iterable[bytes]) -> "MonochromeRaster":
        """Build a raster from already packed rows."""
        rows = list(rows)
        return cls(width, len(rows), b"".join(rows))

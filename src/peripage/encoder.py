"""
Raster Encoder for Peripage Printers.

Turns a MonochromeRaster into the ordered command frames of one print:
an init frame, one frame per band of rows, and a trailing feed.
"""

from dataclasses import dataclass

import packbits

from .errors import ConfigError, EncodingError
from .models import MonochromeRaster
from .protocol import AckPolicy, BandEncoding, CommandFrame, Commands

MAX_BAND_HEIGHT = 0xFF


@dataclass
class EncoderOptions:
    """
    Options for encoding a print.

    Attributes:
        density: Heating concentration, 0 (light) to 2 (dark)
        feed: Dots of paper fed after the image (1-255)
        band_height: Rows per raster band (1-255)
        compress: PackBits-compress bands when it makes them smaller
        acknowledged: Printer acknowledges every packet
    """
    density: int = 1
    feed: int = 30
    band_height: int = 24
    compress: bool = True
    acknowledged: bool = True

    def validate(self):
        """Raise ConfigError if any option is out of range."""
        if not 0 <= self.density <= 2:
            raise ConfigError(f"Density must be 0-2, got {self.density}")
        if not 1 <= self.feed <= 0xFF:
            raise ConfigError(f"Feed must be 1-255 dots, got {self.feed}")
        if not 1 <= self.band_height <= MAX_BAND_HEIGHT:
            raise ConfigError(
                f"Band height must be 1-{MAX_BAND_HEIGHT} rows, got {self.band_height}"
            )

    @property
    def ack_policy(self) -> AckPolicy:
        return AckPolicy.SINGLE_BYTE if self.acknowledged else AckPolicy.NONE


class RasterEncoder:
    """Encode monochrome rasters into printer command frames."""

    def __init__(self, options: EncoderOptions = None):
        self.options = options or EncoderOptions()
        self.options.validate()

    def encode(self, raster: MonochromeRaster) -> list[CommandFrame]:
        """
        Encode a raster.

        Args:
            raster: Packed 1-bit raster, width a multiple of 8

        Returns:
            Frames in send order: init, bands, feed

        Raises:
            EncodingError: If width is not a positive multiple of 8 or height is 0
        """
        if raster.width <= 0 or raster.width % 8 != 0:
            raise EncodingError(
                f"Raster width must be a positive multiple of 8, got {raster.width}"
            )
        if raster.height == 0:
            raise EncodingError("Raster height must be non-zero")

        ack = self.options.ack_policy
        frames = [CommandFrame.init(self.options.density, ack)]

        for top in range(0, raster.height, self.options.band_height):
            rows = raster.rows(top, top + self.options.band_height)
            height = len(rows) // raster.bytes_per_row
            frames.append(self._encode_band(rows, raster.bytes_per_row, height))

        frames.append(CommandFrame.feed(self.options.feed, ack))
        return frames

    def _encode_band(self, rows: bytes, row_bytes: int, height: int) -> CommandFrame:
        """Encode one band, keeping the raw form unless compression shrinks it."""
        ack = self.options.ack_policy
        raw = Commands.raster_header(row_bytes, height) + rows

        if self.options.compress:
            packed = packbits.encode(rows)
            compressed = Commands.raster_header(
                row_bytes, height, BandEncoding.RLE, len(packed)
            ) + packed
            # Incompressible bands (noise, dithering) would grow
            if len(compressed) < len(raw):
                return CommandFrame.band(compressed, height, BandEncoding.RLE, ack)

        return CommandFrame.band(raw, height, BandEncoding.RAW, ack)


def encode(raster: MonochromeRaster, options: EncoderOptions = None) -> list[CommandFrame]:
    """Encode a raster with the given options."""
    return RasterEncoder(options).encode(raster)


def decode_band(frame: CommandFrame) -> bytes:
    """Recover the packed rows carried by a raster band frame."""
    header_size = len(Commands.RASTER_PREFIX) + 5
    if frame.encoding == BandEncoding.RLE:
        return packbits.decode(frame.payload[header_size + 2:])
    return frame.payload[header_size:]

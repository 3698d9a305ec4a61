"""
Image Processing for Peripage Printers.

Converts images, QR codes and plain text to the MonochromeRaster consumed
by the encoder. Every raster is padded to the full row width of the
printer, content centred.
"""

import unicodedata
from io import BytesIO
from pathlib import Path
from typing import Literal, Optional, Union

import qrcode
from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError
from qrcode.constants import (
    ERROR_CORRECT_H,
    ERROR_CORRECT_L,
    ERROR_CORRECT_M,
    ERROR_CORRECT_Q,
)

from .errors import ImageError
from .models import MonochromeRaster, PrinterModel

# Image size limits to prevent memory exhaustion from malicious/malformed images
MAX_IMAGE_DIMENSION = 10000  # Maximum width or height in pixels
MAX_IMAGE_PIXELS = 10_000_000  # Maximum total pixels (10 megapixels)

DEFAULT_WIDTH = PrinterModel.A6P.row_width

# QR code error correction levels
QRErrorCorrection = Literal["L", "M", "Q", "H"]

QR_ERROR_CORRECTION = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}

ImageSource = Union[str, Path, bytes, Image.Image]


class ImageSizeError(ImageError):
    """Image dimensions exceed safety limits."""

    pass


class ImageProcessor:
    """Process images for thermal printing."""

    def __init__(self, width: int = DEFAULT_WIDTH, threshold: Optional[int] = None):
        """
        Initialize processor.

        Args:
            width: Printer row width in pixels
            threshold: Grayscale cut-off for black/white (0-255); None dithers
        """
        self.width = width
        self.threshold = threshold

    def load(self, source: ImageSource) -> Image.Image:
        """
        Load an image from various sources.

        Args:
            source: File path, bytes, or PIL Image

        Returns:
            PIL Image object

        Raises:
            ImageSizeError: If image dimensions exceed safety limits
            ImageError: If the source cannot be read as an image
        """
        try:
            if isinstance(source, Image.Image):
                img = source
            elif isinstance(source, (str, Path)):
                img = Image.open(source)
            elif isinstance(source, bytes):
                img = Image.open(BytesIO(source))
            else:
                raise ImageError(f"Unsupported source type: {type(source)}")
        except (UnidentifiedImageError, OSError) as e:
            raise ImageError(f"Cannot read image: {e}") from e

        # Validate image dimensions to prevent memory exhaustion
        if img.width > MAX_IMAGE_DIMENSION or img.height > MAX_IMAGE_DIMENSION:
            raise ImageSizeError(
                f"Image dimensions ({img.width}x{img.height}) exceed maximum "
                f"({MAX_IMAGE_DIMENSION}x{MAX_IMAGE_DIMENSION})"
            )
        if img.width * img.height > MAX_IMAGE_PIXELS:
            raise ImageSizeError(
                f"Image pixel count ({img.width * img.height:,}) exceeds "
                f"maximum ({MAX_IMAGE_PIXELS:,})"
            )

        return img

    def prepare(self, image: Image.Image) -> Image.Image:
        """
        Prepare image for printing.

        Images wider than the printer are scaled down keeping the aspect
        ratio; narrower ones keep their size and are centred.

        Returns:
            1-bit image exactly ``width`` pixels wide
        """
        if image.mode in ("RGBA", "LA", "P"):
            # Transparent areas print as white
            background = Image.new("RGBA", image.size, "white")
            background.alpha_composite(image.convert("RGBA"))
            image = background

        if image.mode != "L":
            image = image.convert("L")

        if image.width > self.width:
            ratio = self.width / image.width
            new_height = max(1, int(image.height * ratio))
            image = image.resize((self.width, new_height), Image.Resampling.LANCZOS)

        if self.threshold is None:
            image = image.convert("1")  # Floyd-Steinberg
        else:
            image = image.point(lambda x: 0 if x < self.threshold else 255, mode="1")

        return self.center_pad(image)

    def center_pad(self, image: Image.Image) -> Image.Image:
        """Pad a 1-bit image with white to the full row width."""
        if image.width == self.width:
            return image

        padded = Image.new("1", (self.width, image.height), color=1)
        padded.paste(image, ((self.width - image.width) // 2, 0))
        return padded

    def to_raster(self, image: Image.Image) -> MonochromeRaster:
        """
        Convert 1-bit image to a MonochromeRaster.

        PIL stores white as 1; the printer burns set bits, so bits are
        inverted and the row padding bits cleared.
        """
        if image.mode != "1":
            image = image.convert("1")

        width, height = image.size
        bytes_per_row = (width + 7) // 8
        data = bytearray(b ^ 0xFF for b in image.tobytes())

        spare_bits = bytes_per_row * 8 - width
        if spare_bits:
            mask = (0xFF << spare_bits) & 0xFF
            for i in range(bytes_per_row - 1, len(data), bytes_per_row):
                data[i] &= mask

        return MonochromeRaster(width, height, bytes(data))

    def process(self, source: ImageSource) -> MonochromeRaster:
        """Load, prepare and pack an image in one step."""
        return self.to_raster(self.prepare(self.load(source)))


def load_bitmap(source: ImageSource, width: int = DEFAULT_WIDTH,
                threshold: Optional[int] = None) -> MonochromeRaster:
    """Load an image file, bytes or PIL image as a printable raster."""
    return ImageProcessor(width, threshold).process(source)


def render_qr(
    payload: str,
    size: Optional[int] = None,
    width: int = DEFAULT_WIDTH,
    error_correction: QRErrorCorrection = "M",
) -> MonochromeRaster:
    """
    Render a QR code as a printable raster.

    Args:
        payload: The data to encode (URL, text, etc.)
        size: Edge length in pixels (default and maximum: ``width``)
        width: Printer row width in pixels
        error_correction: Error correction level (L=7%, M=15%, Q=25%, H=30%)

    Raises:
        ImageError: If the payload is empty or the options are invalid
    """
    if not payload:
        raise ImageError("QR payload must not be empty")
    if error_correction not in QR_ERROR_CORRECTION:
        raise ImageError(
            f"Invalid error correction: {error_correction}. "
            f"Supported levels: {list(QR_ERROR_CORRECTION)}"
        )

    size = min(size or width, width)
    if size <= 0:
        raise ImageError(f"QR size must be positive, got {size}")

    qr = qrcode.QRCode(
        version=None,  # Auto-detect version based on data
        error_correction=QR_ERROR_CORRECTION[error_correction],
        box_size=1,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    # qrcode returns a PilImage wrapper
    if hasattr(img, "get_image"):
        img = img.get_image()

    # Nearest neighbour keeps modules sharp
    img = img.convert("L").resize((size, size), Image.Resampling.NEAREST)

    processor = ImageProcessor(width, threshold=128)
    return processor.to_raster(processor.prepare(img))


def filter_ascii(text: str) -> str:
    """Strip accents and drop characters the printer font cannot show."""
    text = unicodedata.normalize("NFD", text)
    return text.encode("ascii", "ignore").decode("ascii")


def wrap_lines(text: str, characters_per_row: int) -> list[str]:
    """Split text into printer rows, hard-wrapping long lines."""
    rows = []
    for line in text.split("\n"):
        line = line.rstrip()
        if not line:
            rows.append("")
            continue
        for i in range(0, len(line), characters_per_row):
            rows.append(line[i:i + characters_per_row])
    return rows


def render_text(text: str, width: int = DEFAULT_WIDTH,
                characters_per_row: Optional[int] = None) -> MonochromeRaster:
    """
    Render plain text as a printable raster.

    Args:
        text: Text to print; non-ASCII characters are transliterated or dropped
        width: Printer row width in pixels
        characters_per_row: Wrap column (default: 12 dots per character)

    Raises:
        ImageError: If nothing printable remains
    """
    characters_per_row = characters_per_row or max(1, width // 12)
    rows = wrap_lines(filter_ascii(text).replace("\r", ""), characters_per_row)
    if not any(rows):
        raise ImageError("Text has no printable characters")

    font = ImageFont.load_default()
    left, top, right, bottom = font.getbbox("Ag")
    line_height = (bottom - top) + 2

    canvas = Image.new("L", (width // 2, line_height * len(rows) + 2), color=255)
    draw = ImageDraw.Draw(canvas)
    for i, row in enumerate(rows):
        draw.text((0, i * line_height - top + 1), row, font=font, fill=0)

    # The default font is ~6 dots wide; doubling gives 12 dots per character
    canvas = canvas.resize((canvas.width * 2, canvas.height * 2), Image.Resampling.NEAREST)

    processor = ImageProcessor(width, threshold=128)
    return processor.to_raster(processor.prepare(canvas))


def create_test_pattern(width: int = DEFAULT_WIDTH, height: int = 96) -> Image.Image:
    """Create a test pattern image: border, diagonals and a density ramp."""
    img = Image.new("1", (width, height), color=1)  # White background
    draw = ImageDraw.Draw(img)

    draw.rectangle((0, 0, width - 1, height - 1), outline=0)
    draw.line((0, 0, width - 1, height - 1), fill=0)
    draw.line((width - 1, 0, 0, height - 1), fill=0)

    # Bars of increasing width along the bottom edge
    x = 4
    bar = 1
    while x + bar < width - 4:
        draw.rectangle((x, height - 16, x + bar - 1, height - 5), fill=0)
        x += bar * 2 + 2
        bar += 1

    return img

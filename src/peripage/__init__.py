"""Peripage Thermal Printer Driver for Linux/macOS."""

__version__ = "0.1.0"

from .errors import (
    PrinterError,
    EncodingError,
    ConfigError,
    ConnectionError,
    TransportError,
    TransportErrorKind,
    SessionBusyError,
    ImageError,
    PrintError,
)
from .models import PrinterModel, MonochromeRaster
from .protocol import AckPolicy, CommandFrame, DeviceQuery, FrameKind, Packet
from .encoder import EncoderOptions, RasterEncoder, encode
from .chunker import FrameChunker, chunk
from .channel import RadioChannel, RFCOMMChannel, BLEChannel, create_channel
from .session import SessionConfig, SessionState, TransportSession
from .controller import JobProgress, JobStatus, PrintJob, PrintJobController
from .image import (
    ImageProcessor,
    ImageSizeError,
    MAX_IMAGE_DIMENSION,
    MAX_IMAGE_PIXELS,
    load_bitmap,
    render_qr,
    render_text,
)
from .responses import BatteryStatus, DeviceInfo
from .printer import PeripagePrinter, quick_print

__all__ = [
    "PrinterError",
    "EncodingError",
    "ConfigError",
    "ConnectionError",
    "TransportError",
    "TransportErrorKind",
    "SessionBusyError",
    "ImageError",
    "PrintError",
    "PrinterModel",
    "MonochromeRaster",
    "AckPolicy",
    "CommandFrame",
    "DeviceQuery",
    "FrameKind",
    "Packet",
    "EncoderOptions",
    "RasterEncoder",
    "encode",
    "FrameChunker",
    "chunk",
    "RadioChannel",
    "RFCOMMChannel",
    "BLEChannel",
    "create_channel",
    "SessionConfig",
    "SessionState",
    "TransportSession",
    "JobProgress",
    "JobStatus",
    "PrintJob",
    "PrintJobController",
    "ImageProcessor",
    "ImageSizeError",
    "MAX_IMAGE_DIMENSION",
    "MAX_IMAGE_PIXELS",
    "load_bitmap",
    "render_qr",
    "render_text",
    "BatteryStatus",
    "DeviceInfo",
    "PeripagePrinter",
    "quick_print",
]

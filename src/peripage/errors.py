"""
Exception hierarchy for the Peripage driver.

Every error raised by the encoder, chunker, transport session and job
controller derives from PrinterError so callers can catch them in one place.
"""

from enum import Enum
from typing import Optional


class PrinterError(Exception):
    """Base exception for all printer errors."""

    pass


class EncodingError(PrinterError):
    """Raster cannot be turned into printer commands (bad dimensions/buffer)."""

    pass


class ConfigError(PrinterError):
    """Invalid MTU, window, timeout or encoder option."""

    pass


class ConnectionError(PrinterError):
    """Error opening the radio channel or completing the handshake."""

    pass


class TransportErrorKind(str, Enum):
    """Why a packet could not be delivered."""
    TIMEOUT = "timeout"
    LINK_DROPPED = "link_dropped"
    NACK = "nack"


class TransportError(PrinterError):
    """Packet delivery failed.

    Attributes:
        kind: TransportErrorKind describing the failure
        packet_index: Index of the packet being delivered, if known
    """

    def __init__(self, kind: TransportErrorKind, message: str = "",
                 packet_index: Optional[int] = None):
        self.kind = TransportErrorKind(kind)
        self.packet_index = packet_index
        super().__init__(message or self.kind.value)


class SessionBusyError(PrinterError):
    """Another job holds the session and the busy policy is fail-fast."""

    pass


class ImageError(PrinterError):
    """Error loading or converting an image for printing."""

    pass


class PrintError(PrinterError):
    """A print job finished in the failed state.

    Attributes:
        job: The PrintJob that failed (bytes_acked, reason, error_kind)
    """

    def __init__(self, message: str, job=None):
        super().__init__(message)
        self.job = job

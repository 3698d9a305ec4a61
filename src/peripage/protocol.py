"""
Peripage Printer Protocol Implementation.

Command bytes follow the Peripage A6/A6+/A40 utility:

    Reset:          10 ff fe 01 + 12 x 00   (required after every connect)
    Concentration:  10 ff 10 00 <0..2>
    Raster band:    1d 76 30 <mode> xL xH yL yH [nL nH] <data>
    Feed (break):   1b 4a <1..255>
    Queries:        10 ff ...  (see DeviceQuery)

Commands travel in link packets (to be verified against the device
command reference):

    Index:     packet index, low byte
    Length:    payload length, little-endian 16-bit
    Checksum:  XOR of payload bytes
    Payload:   slice of the command stream

Acknowledged packets are answered with a single ACK (0x06) or NAK (0x15)
byte, status queries with a reply.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

ACK = 0x06
NAK = 0x15

PACKET_HEADER_SIZE = 4
MAX_PAYLOAD_SIZE = 0xFFFF


class FrameKind(Enum):
    """Kinds of command frames in a print job."""
    INIT = "init"
    RASTER_BAND = "raster_band"
    FEED = "feed"
    STATUS_QUERY = "status_query"


class AckPolicy(Enum):
    """What the printer sends back after receiving a frame's packets."""
    NONE = "none"
    SINGLE_BYTE = "single_byte"
    STATUS_REPLY = "status_reply"


class BandEncoding(IntEnum):
    """Raster band mode byte."""
    RAW = 0x00
    RLE = 0x80  # PackBits compressed, length field follows the header


class DeviceQuery(Enum):
    """Information queries answered by the printer."""
    IP = bytes.fromhex("10ff20f0")         # e.g. b"IP-300"
    NAME = bytes.fromhex("10ff3011")       # e.g. b"PeriPage+DF7A"
    SERIAL = bytes.fromhex("10ff20f2")     # e.g. b"A6491571121"
    FIRMWARE = bytes.fromhex("10ff20f1")   # e.g. b"V2.11_304dpi"
    HARDWARE = bytes.fromhex("10ff3010")
    MAC = bytes.fromhex("10ff3012")
    BATTERY = bytes.fromhex("10ff50f1")    # b"\x00" + percent
    # Corrupts the next image on some firmware (shifted rows)
    FULL = bytes.fromhex("10ff70f100")


def _checksum(data: bytes) -> int:
    """XOR of all bytes."""
    checksum = 0
    for b in data:
        checksum ^= b
    return checksum


class Commands:
    """Raw command byte builders."""

    RESET = bytes.fromhex("10fffe01") + bytes(12)
    CONCENTRATION_PREFIX = bytes.fromhex("10ff1000")
    RASTER_PREFIX = bytes.fromhex("1d7630")
    FEED_PREFIX = bytes.fromhex("1b4a")

    @staticmethod
    def reset() -> bytes:
        """Reset printer state. Without it the printer neither prints nor replies."""
        return Commands.RESET

    @staticmethod
    def concentration(level: int) -> bytes:
        """Set heating concentration (0 light, 1 normal, 2 dark)."""
        level = min(2, max(0, level))
        return Commands.CONCENTRATION_PREFIX + bytes([level])

    @staticmethod
    def raster_header(row_bytes: int, height: int,
                      encoding: BandEncoding = BandEncoding.RAW,
                      data_length: Optional[int] = None) -> bytes:
        """
        Build a raster band header.

        Args:
            row_bytes: Bytes per row (width / 8)
            height: Rows in the band
            encoding: RAW or RLE
            data_length: Compressed data length (RLE only)
        """
        header = Commands.RASTER_PREFIX + bytes([
            int(encoding),
            row_bytes & 0xFF, (row_bytes >> 8) & 0xFF,
            height & 0xFF, (height >> 8) & 0xFF,
        ])
        if encoding == BandEncoding.RLE:
            if data_length is None:
                raise ValueError("RLE bands need a data length")
            header += bytes([data_length & 0xFF, (data_length >> 8) & 0xFF])
        return header

    @staticmethod
    def feed(dots: int) -> bytes:
        """Feed paper by ``dots`` (clamped to 1..255)."""
        dots = min(0xFF, max(0x01, dots))
        return Commands.FEED_PREFIX + bytes([dots])

    @staticmethod
    def query(query: DeviceQuery) -> bytes:
        return query.value


@dataclass(frozen=True)
class CommandFrame:
    """One printer command with the acknowledgement it expects."""
    kind: FrameKind
    payload: bytes
    ack: AckPolicy = AckPolicy.NONE
    band_height: int = 0
    encoding: Optional[BandEncoding] = None

    def __len__(self) -> int:
        return len(self.payload)

    @classmethod
    def init(cls, density: int, ack: AckPolicy = AckPolicy.SINGLE_BYTE) -> "CommandFrame":
        return cls(FrameKind.INIT, Commands.reset() + Commands.concentration(density), ack)

    @classmethod
    def band(cls, payload: bytes, band_height: int, encoding: BandEncoding,
             ack: AckPolicy = AckPolicy.SINGLE_BYTE) -> "CommandFrame":
        return cls(FrameKind.RASTER_BAND, payload, ack, band_height, encoding)

    @classmethod
    def feed(cls, dots: int, ack: AckPolicy = AckPolicy.SINGLE_BYTE) -> "CommandFrame":
        return cls(FrameKind.FEED, Commands.feed(dots), ack)

    @classmethod
    def status_query(cls, query: DeviceQuery = DeviceQuery.BATTERY) -> "CommandFrame":
        return cls(FrameKind.STATUS_QUERY, Commands.query(query), AckPolicy.STATUS_REPLY)

    def __repr__(self) -> str:
        return f"CommandFrame({self.kind.value}, {len(self.payload)} bytes, ack={self.ack.value})"


@dataclass(frozen=True)
class Packet:
    """Link-sized slice of the command stream."""
    index: int
    payload: bytes
    ack: AckPolicy = AckPolicy.NONE

    def __len__(self) -> int:
        return len(self.payload)

    def encode(self) -> bytes:
        """Encode packet to bytes for transmission."""
        length = len(self.payload)
        header = bytes([
            self.index & 0xFF,
            length & 0xFF, (length >> 8) & 0xFF,
            _checksum(self.payload),
        ])
        return header + self.payload

    @classmethod
    def decode(cls, data: bytes, index: Optional[int] = None) -> Optional["Packet"]:
        """
        Decode bytes into a Packet.

        The wire form only carries the low byte of the index; pass the full
        ``index`` when it is known.
        """
        if len(data) < PACKET_HEADER_SIZE:
            return None

        length = data[1] | (data[2] << 8)
        if len(data) != PACKET_HEADER_SIZE + length:
            return None

        payload = bytes(data[PACKET_HEADER_SIZE:])
        if _checksum(payload) != data[3]:
            return None

        if index is None:
            index = data[0]
        elif index & 0xFF != data[0]:
            return None

        return cls(index=index, payload=payload)

    def __repr__(self) -> str:
        return f"Packet(index={self.index}, {len(self.payload)} bytes, ack={self.ack.value})"

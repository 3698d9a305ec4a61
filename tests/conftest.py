"""
Pytest configuration for Peripage printer tests.

Provides a scripted in-memory radio channel, session fixtures and
command-line options for hardware tests.
"""

import asyncio
from collections import deque
from typing import Callable, Optional

import pytest
import pytest_asyncio

from peripage import PeripagePrinter
from peripage.channel import RadioChannel
from peripage.errors import ConnectionError, TransportError, TransportErrorKind
from peripage.models import MonochromeRaster
from peripage.protocol import ACK, NAK, DeviceQuery, Packet
from peripage.session import SessionConfig, TransportSession

BATTERY_REPLY = b"\x00\x40"
FULL_REPLY = b"PeriPage+DF7A|AA:BB:CC:DD:EE:FF|11:22:33:44:55:66|V2.11_304dpi|A6491571121|64"

# write_number (1-based, handshake included), decoded packet -> reply bytes or None
Responder = Callable[[int, Optional[Packet]], Optional[bytes]]


def default_reply(packet: Optional[Packet]) -> Optional[bytes]:
    """ACK everything; answer queries like a healthy printer."""
    if packet is None:
        return None
    if packet.payload == DeviceQuery.BATTERY.value:
        return BATTERY_REPLY
    if packet.payload == DeviceQuery.FULL.value:
        return FULL_REPLY
    if packet.payload == DeviceQuery.NAME.value:
        return b"PeriPage+DF7A\x00"
    return bytes([ACK])


def scripted(naks: dict = None, silent: set = ()) -> Responder:
    """
    Build a responder that misbehaves on selected writes.

    Args:
        naks: write number -> reply byte override (NAK by default)
        silent: write numbers that get no reply at all
    """
    naks = naks or {}

    def respond(write_number: int, packet: Optional[Packet]) -> Optional[bytes]:
        if write_number in silent:
            return None
        if write_number in naks:
            return bytes([naks[write_number]])
        return default_reply(packet)

    return respond


def nak_writes(*write_numbers: int) -> Responder:
    return scripted(naks={n: NAK for n in write_numbers})


class FakeChannel(RadioChannel):
    """In-memory channel that records writes and replies via a responder."""

    def __init__(
        self,
        mtu: int = 182,
        responder: Optional[Responder] = None,
        refuse: bool = False,
        drop_at_write: Optional[int] = None,
    ):
        super().__init__(mtu)
        self.responder = responder or (lambda n, packet: default_reply(packet))
        self.refuse = refuse
        self.drop_at_write = drop_at_write
        self.writes: list[bytes] = []
        self.replies: deque = deque()
        self.open_calls = 0
        self.close_calls = 0
        self._open = False
        self._arrived: Optional[asyncio.Event] = None

    @property
    def packets(self) -> list[Packet]:
        """Decoded packets in write order."""
        return [Packet.decode(data) for data in self.writes]

    @property
    def payloads(self) -> list[bytes]:
        return [packet.payload for packet in self.packets]

    def push(self, data: bytes):
        """Queue bytes for the next read()."""
        self.replies.append(bytes(data))
        if self._arrived is not None:
            self._arrived.set()

    async def open(self, address: str):
        self.open_calls += 1
        if self.refuse:
            raise ConnectionError(f"Connection refused by device {address}")
        self._open = True

    async def write(self, data: bytes) -> int:
        if not self._open:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "Channel is not open")

        write_number = len(self.writes) + 1
        if self.drop_at_write is not None and write_number >= self.drop_at_write:
            self._open = False
            raise TransportError(TransportErrorKind.LINK_DROPPED, "Link dropped")

        self.writes.append(bytes(data))
        reply = self.responder(write_number, Packet.decode(data))
        if reply:
            self.push(reply)
        return len(data)

    async def read(self, timeout: float) -> bytes:
        if not self._open:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "Channel is not open")

        if not self.replies:
            self._arrived = asyncio.Event()
            try:
                await asyncio.wait_for(self._arrived.wait(), timeout)
            except asyncio.TimeoutError:
                raise TransportError(TransportErrorKind.TIMEOUT, "No data") from None
            finally:
                self._arrived = None

        return self.replies.popleft()

    async def close(self):
        self.close_calls += 1
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open


def fast_config(**overrides) -> SessionConfig:
    """Session settings with no sleeps and short timeouts."""
    settings = dict(
        settle_delay=0,
        backoff=0,
        packet_timeout=0.2,
        handshake_timeout=0.2,
        drain_timeout=0.2,
        reply_quiet=0.02,
    )
    settings.update(overrides)
    return SessionConfig(**settings)


def pattern_raster(width: int = 256, height: int = 40) -> MonochromeRaster:
    """Raster with a distinct byte pattern per row."""
    row_bytes = width // 8
    rows = [bytes((y * 7 + x) & 0xFF for x in range(row_bytes)) for y in range(height)]
    return MonochromeRaster.from_rows(width, rows)


@pytest.fixture
def channel():
    """A well-behaved fake channel."""
    return FakeChannel()


@pytest_asyncio.fixture
async def session(channel):
    """A streaming session over the fake channel."""
    session = TransportSession(channel, fast_config())
    await session.connect("AA:BB:CC:DD:EE:FF")
    yield session
    await session.close()


def pytest_addoption(parser):
    """Add command-line options for hardware tests."""
    parser.addoption(
        "--address",
        action="store",
        default=None,
        help="Bluetooth address of the printer for hardware tests",
    )


@pytest.fixture
def printer_address(request):
    """Get the printer address from command line."""
    address = request.config.getoption("--address")
    if address is None:
        pytest.skip("No printer address provided (use --address=XX:XX:XX:XX:XX:XX)")
    return address


@pytest_asyncio.fixture
async def connected_printer(printer_address):
    """Provide a connected printer instance."""
    printer = PeripagePrinter()
    printer.set_debug(True)

    try:
        await printer.connect(printer_address, retries=2, retry_delay=1.0)
    except ConnectionError:
        pytest.skip(f"Could not connect to printer at {printer_address}")

    yield printer

    await printer.disconnect()

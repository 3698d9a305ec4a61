"""
Radio Channels for Peripage Printers.

A channel is a byte-stream link to one printer. Classic Peripage models
expose a serial port profile (RFCOMM channel 1); BLE variants expose a
write characteristic and a notify characteristic, handled with Bleak.

Channels translate library errors into ConnectionError (open) and
TransportError (write/read) so the session never sees raw socket or
Bleak exceptions.
"""

import asyncio
import errno
import socket
from typing import Optional

from bleak import BleakClient
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.exc import BleakError

from .errors import ConnectionError, TransportError, TransportErrorKind


class RadioChannel:
    """Byte-stream link to a printer."""

    DEFAULT_MTU = 182

    def __init__(self, mtu: int = DEFAULT_MTU):
        self.mtu = mtu
        self._debug = False

    def set_debug(self, enabled: bool):
        """Enable/disable debug output."""
        self._debug = enabled

    def _log(self, message: str):
        """Print debug message if enabled."""
        if self._debug:
            print(f"[Peripage] {message}")

    async def open(self, address: str):
        """Open the link. Raises ConnectionError on failure."""
        raise NotImplementedError

    async def write(self, data: bytes) -> int:
        """Write bytes, returning the count written."""
        raise NotImplementedError

    async def read(self, timeout: float) -> bytes:
        """Read available bytes, raising TransportError(TIMEOUT) if none arrive."""
        raise NotImplementedError

    async def close(self):
        """Release the link. Safe to call more than once."""
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError


class RFCOMMChannel(RadioChannel):
    """Classic Bluetooth serial port profile over a Linux RFCOMM socket."""

    READ_SIZE = 1024

    def __init__(self, channel: int = 1, mtu: int = RadioChannel.DEFAULT_MTU):
        super().__init__(mtu)
        self.channel = channel
        self._sock: Optional[socket.socket] = None

    async def open(self, address: str):
        if not hasattr(socket, "AF_BLUETOOTH"):
            raise ConnectionError(
                "RFCOMM sockets are not available on this platform; "
                "use the BLE transport instead"
            )

        loop = asyncio.get_running_loop()
        sock = socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)
        sock.setblocking(False)

        self._log(f"Opening RFCOMM channel {self.channel} to {address}...")
        try:
            await loop.sock_connect(sock, (address, self.channel))
        except OSError as e:
            sock.close()
            if e.errno == errno.EHOSTDOWN:
                raise ConnectionError(
                    f"Cannot connect to Bluetooth device {address}. "
                    "Check that the printer is powered on, in range, paired "
                    "(bluetoothctl) and not connected to another device."
                ) from e
            if e.errno == errno.ECONNREFUSED:
                raise ConnectionError(
                    f"Connection refused by device {address}. "
                    "The printer may be busy with another client."
                ) from e
            raise ConnectionError(f"Failed to connect to {address}: {e}") from e

        self._sock = sock

    async def write(self, data: bytes) -> int:
        if self._sock is None:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "RFCOMM channel is not open")

        loop = asyncio.get_running_loop()
        try:
            await loop.sock_sendall(self._sock, data)
        except OSError as e:
            raise TransportError(TransportErrorKind.LINK_DROPPED, f"Write failed: {e}") from e
        return len(data)

    async def read(self, timeout: float) -> bytes:
        if self._sock is None:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "RFCOMM channel is not open")

        loop = asyncio.get_running_loop()
        try:
            data = await asyncio.wait_for(
                loop.sock_recv(self._sock, self.READ_SIZE),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(
                TransportErrorKind.TIMEOUT, f"No data within {timeout}s"
            ) from None
        except OSError as e:
            raise TransportError(TransportErrorKind.LINK_DROPPED, f"Read failed: {e}") from e

        if not data:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "Printer closed the connection")
        return data

    async def close(self):
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    @property
    def is_open(self) -> bool:
        return self._sock is not None


class BLEChannel(RadioChannel):
    """BLE link using a write characteristic and a notify characteristic."""

    # Response queue limits (prevent memory exhaustion from misbehaving devices)
    MAX_QUEUE_SIZE = 100  # Maximum number of queued notifications
    MAX_RESPONSE_SIZE = 4096  # Maximum size of a single notification (bytes)

    # Common BLE UART service UUIDs, preferred when present
    KNOWN_SERVICE_UUIDS = [
        "0000ff00-0000-1000-8000-00805f9b34fb",  # Vendor serial service
        "0000ae00-0000-1000-8000-00805f9b34fb",  # Alternative vendor service
        "6e400001-b5a3-f393-e0a9-e50e24dcca9e",  # Nordic UART Service
        "49535343-fe7d-4ae5-8fa9-9fafd205e455",  # Microchip UART
    ]

    # ATT header bytes subtracted from the negotiated MTU
    ATT_OVERHEAD = 3

    def __init__(self, mtu: int = RadioChannel.DEFAULT_MTU):
        super().__init__(mtu)
        self.client: Optional[BleakClient] = None
        self.write_char: Optional[str] = None
        self.notify_char: Optional[str] = None
        self._response_queue: asyncio.Queue = asyncio.Queue()
        self._disconnected = False

    async def open(self, address: str):
        self._disconnected = False
        self.client = BleakClient(address, disconnected_callback=self._handle_disconnect)

        self._log(f"Connecting to {address} over BLE...")
        try:
            await self.client.connect()
            self._discover_characteristics()

            if not self.write_char:
                raise ConnectionError(f"No writable characteristic found on {address}")

            if self.notify_char:
                await self.client.start_notify(self.notify_char, self._handle_notification)
        except ConnectionError:
            await self.close()
            raise
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            await self.close()
            raise ConnectionError(f"Failed to connect to {address}: {e}") from e

        mtu = getattr(self.client, "mtu_size", None)
        if mtu:
            self.mtu = mtu - self.ATT_OVERHEAD
        self._log(f"BLE MTU payload: {self.mtu} bytes")

    def _discover_characteristics(self):
        """Find write and notify characteristics, preferring known UART services."""
        services = sorted(
            self.client.services,
            key=lambda s: s.uuid not in self.KNOWN_SERVICE_UUIDS,
        )

        for service in services:
            for char in service.characteristics:
                props = char.properties

                if "write" in props or "write-without-response" in props:
                    if not self.write_char:
                        self.write_char = char.uuid
                        self._log(f"Found write characteristic: {char.uuid}")

                if "notify" in props or "indicate" in props:
                    if not self.notify_char:
                        self.notify_char = char.uuid
                        self._log(f"Found notify characteristic: {char.uuid}")

    def _handle_notification(self, sender: BleakGATTCharacteristic, data: bytearray):
        """Queue incoming notifications for read()."""
        if len(data) > self.MAX_RESPONSE_SIZE:
            return

        if self._response_queue.qsize() >= self.MAX_QUEUE_SIZE:
            try:
                self._response_queue.get_nowait()
            except asyncio.QueueEmpty:
                pass

        self._response_queue.put_nowait(bytes(data))

    def _handle_disconnect(self, client: BleakClient):
        """Wake any pending read when the link drops."""
        self._disconnected = True
        self._response_queue.put_nowait(None)

    async def write(self, data: bytes) -> int:
        if not self.is_open or not self.write_char:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "BLE link is not connected")

        try:
            await self.client.write_gatt_char(self.write_char, data, response=False)
        except (BleakError, OSError) as e:
            raise TransportError(TransportErrorKind.LINK_DROPPED, f"Write failed: {e}") from e
        return len(data)

    async def read(self, timeout: float) -> bytes:
        if self._disconnected:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "BLE link was disconnected")

        try:
            data = await asyncio.wait_for(self._response_queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                TransportErrorKind.TIMEOUT, f"No notification within {timeout}s"
            ) from None

        if data is None:
            raise TransportError(TransportErrorKind.LINK_DROPPED, "BLE link was disconnected")
        return data

    async def close(self):
        if self.client and self.client.is_connected:
            if self.notify_char:
                try:
                    await self.client.stop_notify(self.notify_char)
                except BleakError as e:
                    self._log(f"stop_notify failed: {e}")
            await self.client.disconnect()
        self.client = None
        self.write_char = None
        self.notify_char = None

    @property
    def is_open(self) -> bool:
        return self.client is not None and self.client.is_connected and not self._disconnected


def create_channel(transport: str = "rfcomm", **kwargs) -> RadioChannel:
    """Create a channel by transport name ("rfcomm" or "ble")."""
    if transport == "rfcomm":
        return RFCOMMChannel(**kwargs)
    if transport == "ble":
        return BLEChannel(**kwargs)
    raise ValueError(f"Unknown transport: {transport}. Supported: rfcomm, ble")

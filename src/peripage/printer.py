"""
High-Level Peripage Printer Interface.

Provides a simple API for printing images, QR codes and text on Peripage
A6/A6+/A40 printers. Each connect opens a fresh TransportSession; print
calls run through a PrintJobController on that session.
"""

import asyncio
from pathlib import Path
from typing import Callable, Optional, Union

from PIL import Image

from .channel import RadioChannel, create_channel
from .chunker import FrameChunker
from .controller import JobStatus, PrintJob, PrintJobController, ProgressCallback
from .encoder import EncoderOptions
from .errors import ConnectionError, PrintError
from .image import create_test_pattern, load_bitmap, render_qr, render_text
from .models import MonochromeRaster, PrinterModel
from .protocol import CommandFrame, DeviceQuery
from .responses import BatteryStatus, DeviceInfo, decode_text
from .session import SessionState, TransportSession, SessionConfig

ChannelFactory = Callable[[], RadioChannel]


class PeripagePrinter:
    """High-level interface to a Peripage thermal printer."""

    def __init__(
        self,
        model: PrinterModel = PrinterModel.A6P,
        config: SessionConfig = None,
        options: EncoderOptions = None,
        transport: str = "rfcomm",
        channel_factory: Optional[ChannelFactory] = None,
    ):
        """
        Initialize printer interface.

        Args:
            model: Printer model, sets the row width
            config: Session settings (MTU, window, retries, timeouts)
            options: Encoder settings (density, feed, compression)
            transport: "rfcomm" or "ble"
            channel_factory: Builds a channel per connection attempt
                (defaults to ``create_channel(transport)``)
        """
        self.model = model
        self.config = config or SessionConfig()
        self.options = options or EncoderOptions()
        self.transport = transport
        self.channel_factory = channel_factory or (lambda: create_channel(transport))
        self.controller = PrintJobController(self.options)
        self.session: Optional[TransportSession] = None
        self._debug = False

    def set_debug(self, enabled: bool):
        """Enable/disable debug output."""
        self._debug = enabled
        self.controller.set_debug(enabled)
        if self.session:
            self.session.set_debug(enabled)

    def _log(self, message: str):
        """Print debug message if enabled."""
        if self._debug:
            print(f"[Peripage] {message}")

    async def connect(self, address: str, retries: int = 0, retry_delay: float = 1.0) -> bool:
        """
        Connect to a printer.

        A faulted session cannot be reused, so every attempt gets a new
        channel and session.

        Args:
            address: Bluetooth address of the printer
            retries: Number of connection retries (default 0)
            retry_delay: Delay between retries in seconds (default 1.0)

        Returns:
            True if connection successful

        Raises:
            ConnectionError: If connection fails after all retries
        """
        if self.is_connected:
            await self.disconnect()

        last_error: Optional[Exception] = None
        attempts = retries + 1

        for attempt in range(attempts):
            if attempt > 0:
                self._log(f"Connection retry {attempt}/{retries}...")
                await asyncio.sleep(retry_delay)

            self._log(f"Connecting to {address}...")
            session = TransportSession(self.channel_factory(), self.config)
            session.set_debug(self._debug)

            try:
                await session.connect(address)
            except ConnectionError as e:
                last_error = e
                self._log(f"Connection error (attempt {attempt + 1}/{attempts}): {e}")
                continue

            self.session = session
            return True

        raise ConnectionError(
            f"Failed to connect to {address} after {attempts} attempt(s): {last_error}"
        ) from last_error

    async def disconnect(self):
        """Disconnect from the printer."""
        if self.session is not None:
            await self.session.close()
            self.session = None
            self._log("Disconnected")

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to a printer."""
        return self.session is not None and self.session.state == SessionState.STREAMING

    def _require_session(self) -> TransportSession:
        if not self.is_connected:
            raise ConnectionError("Not connected to printer")
        return self.session

    # ---- Printing ----

    async def print_raster(
        self,
        raster: MonochromeRaster,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PrintJob:
        """
        Print an already packed raster.

        Returns:
            The finished job (SUCCESS or CANCELLED)

        Raises:
            ConnectionError: If not connected
            PrintError: If the job failed; ``error.job`` holds the details
        """
        session = self._require_session()
        self._log(f"Printing {raster.width}x{raster.height} raster...")

        job = await self.controller.print_image(raster, session, progress=progress, cancel=cancel)
        if job.status == JobStatus.FAILED:
            raise PrintError(
                f"Print failed after {job.bytes_acked}/{job.total_bytes} bytes: {job.reason}",
                job=job,
            )
        return job

    async def print_image(
        self,
        image: Union[str, Path, bytes, Image.Image],
        threshold: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> PrintJob:
        """
        Print an image, scaled down to the printer width and dithered.

        Args:
            image: Image source (path, bytes, or PIL Image)
            threshold: Black/white cut-off (0-255) instead of dithering

        Raises:
            ConnectionError: If not connected or connection lost
            ImageError: If image cannot be loaded
            PrintError: If print job fails
        """
        self._require_session()
        raster = load_bitmap(image, width=self.model.row_width, threshold=threshold)
        return await self.print_raster(raster, progress=progress)

    async def print_qr(self, text: str, size: Optional[int] = None,
                       error_correction: str = "M") -> PrintJob:
        """Print a QR code, ``size`` pixels wide (default: full width)."""
        self._require_session()
        raster = render_qr(
            text, size=size, width=self.model.row_width, error_correction=error_correction
        )
        return await self.print_raster(raster)

    async def print_text(self, text: str) -> PrintJob:
        """Print plain text wrapped at the model's characters per row."""
        self._require_session()
        raster = render_text(
            text,
            width=self.model.row_width,
            characters_per_row=self.model.row_characters,
        )
        return await self.print_raster(raster)

    async def print_test_pattern(self) -> PrintJob:
        """Print a full-width test pattern."""
        self._log("Creating test pattern...")
        return await self.print_image(create_test_pattern(self.model.row_width), threshold=128)

    async def feed(self, dots: int = 30):
        """Feed paper forward by ``dots`` (1-255)."""
        session = self._require_session()
        self._log(f"Feeding {dots} dots...")
        frames = [CommandFrame.feed(dots, self.options.ack_policy)]

        async with session.job_lock:
            for packet in FrameChunker(frames, session.mtu):
                await session.send(packet)
            await session.drain()

    # ---- Queries ----

    async def query(self, query: DeviceQuery) -> bytes:
        """Send a device query and return the raw reply."""
        session = self._require_session()
        reply = await session.query(query)
        self._log(f"{query.name}: {reply.hex()}")
        return reply

    async def get_battery(self) -> Optional[BatteryStatus]:
        """Query battery status."""
        return BatteryStatus.parse(await self.query(DeviceQuery.BATTERY))

    async def get_device_info(self) -> Optional[DeviceInfo]:
        """
        Query name, addresses, firmware, serial and battery in one go.

        Some firmware prints the next image shifted after this query.
        """
        return DeviceInfo.parse(await self.query(DeviceQuery.FULL))

    async def get_name(self) -> Optional[str]:
        return decode_text(await self.query(DeviceQuery.NAME))

    async def get_firmware(self) -> Optional[str]:
        return decode_text(await self.query(DeviceQuery.FIRMWARE))

    async def get_serial(self) -> Optional[str]:
        return decode_text(await self.query(DeviceQuery.SERIAL))


async def quick_print(
    address: str,
    image_path: str,
    model: PrinterModel = PrinterModel.A6P,
    transport: str = "rfcomm",
    retries: int = 0,
) -> PrintJob:
    """
    Convenience function to quickly print an image.

    Args:
        address: Printer Bluetooth address
        image_path: Path to image file
        model: Printer model (default A6+)
        transport: "rfcomm" or "ble"
        retries: Number of connection retries (default 0)

    Returns:
        The finished PrintJob

    Raises:
        ConnectionError: If connection fails
        ImageError: If image cannot be loaded
        PrintError: If print job fails
    """
    printer = PeripagePrinter(model=model, transport=transport)

    try:
        await printer.connect(address, retries=retries)
        return await printer.print_image(image_path)
    finally:
        await printer.disconnect()

"""
Command-Line Interface for Peripage Printers.

Usage:
    peripage print IMAGE [-a ADDRESS]  - Print an image
    peripage qr TEXT                   - Print a QR code
    peripage text TEXT                 - Print plain text
    peripage test                      - Print test pattern
    peripage battery                   - Show battery level
    peripage info                      - Show device information
    peripage forget                    - Forget the cached printer

Without --address, the last printer that connected successfully is used.
"""

import asyncio
import re
import sys

import click

from .cache import CachedPrinter, clear_cache, load_cached_printer, save_printer
from .encoder import EncoderOptions
from .errors import ConnectionError, ImageError, PrintError, PrinterError
from .models import PrinterModel
from .printer import PeripagePrinter


# Bluetooth MAC address format: XX:XX:XX:XX:XX:XX (hex pairs separated by colons)
BLUETOOTH_MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")

# macOS CoreBluetooth UUID format: XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX
MACOS_UUID_PATTERN = re.compile(
    r"^[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$"
)

MODEL_NAMES = [m.name for m in PrinterModel]


def validate_bluetooth_address(ctx, param, value):
    """Validate Bluetooth address format.

    Accepts:
        - MAC address format: XX:XX:XX:XX:XX:XX (Linux/Windows)
        - UUID format: XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX (macOS)

    Returns:
        The validated address (uppercased for consistency)

    Raises:
        click.BadParameter: If the address format is invalid
    """
    if value is None:
        return None
    if BLUETOOTH_MAC_PATTERN.match(value):
        return value.upper()
    if MACOS_UUID_PATTERN.match(value):
        return value.upper()
    raise click.BadParameter(
        f"Invalid Bluetooth address format: '{value}'. "
        "Expected MAC format XX:XX:XX:XX:XX:XX or "
        "macOS UUID format XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX"
    )


PRINTER_OPTIONS = [
    click.option(
        "--address",
        "-a",
        callback=validate_bluetooth_address,
        help="Printer Bluetooth address (if omitted, uses the cached printer)",
    ),
    click.option(
        "--model",
        type=click.Choice(MODEL_NAMES, case_sensitive=False),
        default=None,
        help="Printer model (default: cached model or A6P)",
    ),
    click.option(
        "--transport",
        type=click.Choice(["rfcomm", "ble"]),
        default=None,
        help="Bluetooth transport (default: cached transport or rfcomm)",
    ),
    click.option("--retry", default=0, help="Number of connection retries"),
]


def printer_options(func):
    """Options shared by every command that talks to a printer."""
    for option in reversed(PRINTER_OPTIONS):
        func = option(func)
    return func


def resolve_printer(address, model, transport):
    """Fill in missing address/model/transport from the cache.

    Returns:
        (address, PrinterModel, transport, name) where name is the cached
        device name when the address matches the cached printer, else ""
    """
    cached = load_cached_printer()

    if address is None:
        if cached is None:
            click.echo(
                "No printer address given and no cached printer. Use --address.",
                err=True,
            )
            sys.exit(1)
        click.echo(f"Using cached printer: {cached.label}")
        address = cached.address
        model = model or cached.model
        transport = transport or cached.transport

    name = cached.name if cached is not None and cached.address == address else ""
    return address, PrinterModel.from_name(model or "A6P"), transport or "rfcomm", name


def run_with_printer(ctx, address, model, transport, retry, action, options=None):
    """Connect, run ``action(printer)`` and map errors to exit codes."""
    address, model, transport, name = resolve_printer(address, model, transport)

    async def _run():
        printer = PeripagePrinter(model=model, options=options, transport=transport)
        printer.set_debug(ctx.obj["debug"])

        click.echo(f"Connecting to {address}...")

        try:
            await printer.connect(address, retries=retry)
            # The device name is asked once per printer and then kept in the cache
            device_name = name or await printer.get_name() or f"Peripage {model.name}"
            save_printer(CachedPrinter(address, device_name, model.name, transport))
            await action(printer)

        except ConnectionError as e:
            click.echo(f"Connection error: {e}", err=True)
            sys.exit(1)
        except ImageError as e:
            click.echo(f"Image error: {e}", err=True)
            sys.exit(1)
        except PrintError as e:
            click.echo(f"Print error: {e}", err=True)
            sys.exit(1)
        except PrinterError as e:
            click.echo(f"Printer error: {e}", err=True)
            sys.exit(1)
        finally:
            await printer.disconnect()

    asyncio.run(_run())


def report_job(job, label: str):
    if job.succeeded:
        click.echo(f"{label} complete! ({job.total_bytes} bytes, {job.total_packets} packets)")
    else:
        click.echo(f"{label} {job.status.value}: {job.reason}", err=True)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug output")
@click.pass_context
def main(ctx, debug):
    """Peripage Thermal Printer CLI."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@main.command("print")
@click.argument("image", type=click.Path(exists=True))
@printer_options
@click.option(
    "--density",
    type=click.IntRange(0, 2),
    default=1,
    help="Print concentration (0 light, 1 normal, 2 dark)",
)
@click.option(
    "--feed",
    type=click.IntRange(1, 255),
    default=30,
    help="Paper fed after the image, in dots (default 30)",
)
@click.option("--threshold", type=click.IntRange(0, 255), default=None,
              help="Black/white cut-off instead of dithering")
@click.option("--no-compress", is_flag=True, help="Send raster bands uncompressed")
@click.pass_context
def print_image(ctx, image, address, model, transport, retry, density, feed, threshold,
                no_compress):
    """Print an image file.

    The image is scaled down to the printer width if needed, dithered to
    black and white and centred.
    """
    options = EncoderOptions(density=density, feed=feed, compress=not no_compress)

    async def _print(printer):
        click.echo(f"Printing {image}...")
        job = await printer.print_image(image, threshold=threshold)
        report_job(job, "Print")

    run_with_printer(ctx, address, model, transport, retry, _print, options)


@main.command()
@click.argument("data")
@printer_options
@click.option("--size", type=click.IntRange(min=8), default=None,
              help="QR code edge in pixels (default: full printer width)")
@click.option(
    "--error-correction",
    type=click.Choice(["L", "M", "Q", "H"]),
    default="M",
    help="Error correction level (L=7%%, M=15%%, Q=25%%, H=30%%)",
)
@click.pass_context
def qr(ctx, data, address, model, transport, retry, size, error_correction):
    """Generate and print a QR code.

    DATA is the content to encode (URL, text, etc.).

    Examples:
        peripage qr "https://example.com"
        peripage qr "Hello World" --size 256 -a AA:BB:CC:DD:EE:FF
    """

    async def _qr(printer):
        click.echo("Printing QR code...")
        job = await printer.print_qr(data, size=size, error_correction=error_correction)
        report_job(job, "QR code")

    run_with_printer(ctx, address, model, transport, retry, _qr)


@main.command()
@click.argument("text")
@printer_options
@click.pass_context
def text(ctx, text, address, model, transport, retry):
    """Print plain text.

    Accented characters are printed without accents; other non-ASCII
    characters are dropped.
    """

    async def _text(printer):
        click.echo("Printing text...")
        job = await printer.print_text(text)
        report_job(job, "Text")

    run_with_printer(ctx, address, model, transport, retry, _text)


@main.command()
@printer_options
@click.pass_context
def test(ctx, address, model, transport, retry):
    """Print a test pattern."""

    async def _test(printer):
        click.echo("Printing test pattern...")
        job = await printer.print_test_pattern()
        report_job(job, "Test print")

    run_with_printer(ctx, address, model, transport, retry, _test)


@main.command()
@printer_options
@click.pass_context
def battery(ctx, address, model, transport, retry):
    """Show the battery level."""

    async def _battery(printer):
        status = await printer.get_battery()
        if status is None:
            click.echo("Could not read battery level", err=True)
            sys.exit(1)
        click.echo(str(status))

    run_with_printer(ctx, address, model, transport, retry, _battery)


@main.command()
@printer_options
@click.pass_context
def info(ctx, address, model, transport, retry):
    """Show name, addresses, firmware and serial number."""

    async def _info(printer):
        device = await printer.get_device_info()
        if device is None:
            click.echo("Could not read device information", err=True)
            sys.exit(1)
        click.echo(str(device))

    run_with_printer(ctx, address, model, transport, retry, _info)


@main.command()
def forget():
    """Forget the cached printer."""
    if clear_cache():
        click.echo("Cached printer removed.")
    else:
        click.echo("No cached printer.")


if __name__ == "__main__":
    main()

"""
Response Parsers for Peripage Device Queries.

Single-field queries (NAME, SERIAL, FIRMWARE, ...) answer with plain ASCII.
BATTERY answers with two bytes and FULL with a pipe-separated record.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class BatteryStatus:
    """
    Parsed BATTERY response.

    Response structure:
        Offset  Length  Field
        0       1       Always 0x00
        1       1       Battery level in percent (0-100)
    """

    level: int
    raw_data: bytes = b""

    @classmethod
    def parse(cls, data: bytes) -> Optional["BatteryStatus"]:
        """
        Parse BATTERY response bytes.

        Args:
            data: Raw response bytes (expected 2 bytes)

        Returns:
            BatteryStatus instance or None if parsing fails
        """
        if len(data) < 2:
            return None

        level = data[1]
        if level > 100:
            return None

        return cls(level=level, raw_data=bytes(data))

    def __str__(self) -> str:
        return f"Battery: {self.level}%"


@dataclass
class DeviceInfo:
    """
    Parsed FULL response.

    The printer answers ``name|mac|client_mac|firmware|serial|battery``.
    """

    name: str
    mac: str
    client_mac: str
    firmware: str
    serial: str
    battery: Optional[int] = None
    raw_data: bytes = b""

    FIELD_COUNT = 6

    @classmethod
    def parse(cls, data: bytes) -> Optional["DeviceInfo"]:
        """
        Parse FULL response bytes.

        Args:
            data: Raw response bytes

        Returns:
            DeviceInfo instance or None if the record is incomplete
        """
        text = decode_text(data)
        if text is None:
            return None

        fields = text.split("|")
        if len(fields) < cls.FIELD_COUNT:
            return None

        try:
            battery = int(fields[5])
        except ValueError:
            battery = None

        return cls(
            name=fields[0],
            mac=fields[1],
            client_mac=fields[2],
            firmware=fields[3],
            serial=fields[4],
            battery=battery,
            raw_data=bytes(data),
        )

    def __str__(self) -> str:
        battery = f"{self.battery}%" if self.battery is not None else "unknown"
        return (
            f"DeviceInfo(\n"
            f"  name={self.name},\n"
            f"  mac={self.mac},\n"
            f"  client_mac={self.client_mac},\n"
            f"  firmware={self.firmware},\n"
            f"  serial={self.serial},\n"
            f"  battery={battery}\n"
            f")"
        )


def decode_text(data: bytes) -> Optional[str]:
    """Decode an ASCII reply, dropping NUL padding and line endings."""
    try:
        text = bytes(data).decode("ascii")
    except UnicodeDecodeError:
        return None
    return text.strip("\x00\r\n ")

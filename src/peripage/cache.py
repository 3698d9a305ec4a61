"""
Remembers the last printer the CLI talked to.

A single JSON record in ``~/.config/peripage/last_printer`` holds the
address, the name the printer reported about itself, its model and the
radio transport. Later commands reuse it when --address is omitted.
"""

import json
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Optional

# Records older than a day are ignored
DEFAULT_TTL_SECONDS = 24 * 60 * 60

CONFIG_DIR = Path.home() / ".config" / "peripage"
CACHE_FILE = CONFIG_DIR / "last_printer"


@dataclass(frozen=True)
class CachedPrinter:
    """
    Last-used printer record.

    Attributes:
        address: Bluetooth MAC (or CoreBluetooth UUID on macOS)
        name: Name reported by the printer's NAME query, may be empty
        model: PrinterModel name ("A6", "A6P", "A40", "A40P")
        transport: "rfcomm" or "ble"
        last_used: Unix timestamp of the last successful connect
    """

    address: str
    name: str = ""
    model: str = "A6P"
    transport: str = "rfcomm"
    last_used: float = 0.0

    @property
    def label(self) -> str:
        return self.name or self.address

    def expired(self, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> bool:
        return time.time() - self.last_used > ttl_seconds

    @classmethod
    def from_dict(cls, data: dict) -> "CachedPrinter":
        """Build a record from stored JSON. Raises KeyError/TypeError/ValueError."""
        if not isinstance(data, dict):
            raise TypeError(f"Expected an object, got {type(data).__name__}")
        # Records written before model/transport were stored fall back to defaults
        return cls(
            address=str(data["address"]),
            name=str(data.get("name", "")),
            model=str(data.get("model", cls.model)),
            transport=str(data.get("transport", cls.transport)),
            last_used=float(data["last_used"]),
        )


def load_cached_printer(ttl_seconds: float = DEFAULT_TTL_SECONDS) -> Optional[CachedPrinter]:
    """Load the cached printer if it exists and hasn't expired.

    Args:
        ttl_seconds: Maximum age of the record in seconds. Default 24 hours.

    Returns:
        CachedPrinter, or None for a missing, unreadable or stale record.
    """
    try:
        cached = CachedPrinter.from_dict(json.loads(CACHE_FILE.read_text()))
    except (OSError, ValueError, KeyError, TypeError):
        return None

    if cached.expired(ttl_seconds):
        return None
    return cached


def save_printer(printer: CachedPrinter) -> CachedPrinter:
    """Store ``printer`` as the last-used printer, stamped with the current time."""
    record = replace(printer, last_used=time.time())
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    CACHE_FILE.write_text(json.dumps(asdict(record), indent=2))
    return record


def clear_cache() -> bool:
    """Forget the cached printer. Returns False if there was nothing to forget."""
    try:
        CACHE_FILE.unlink()
    except FileNotFoundError:
        return False
    return True

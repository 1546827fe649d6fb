"""
Firmware image loading.

Turns an Intel-HEX or raw binary file into one contiguous buffer with its
flash address bounds. HEX parsing is delegated to the intelhex package.
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

from intelhex import IntelHex, IntelHexError

logger = logging.getLogger(__name__)

DEFAULT_BASE_ADDRESS = 0x08000000
DEFAULT_FILL = 0xFF
HEX_SUFFIXES = (".hex", ".ihex", ".ihx")


class FirmwareError(ValueError):
    """Firmware file cannot be loaded"""
    pass


@dataclass(frozen=True)
class FirmwareImage:
    """
    Contiguous firmware buffer.

    Attributes:
        data: Image bytes, gaps filled
        start_address: Flash address of data[0]
        source: File the image was loaded from (may be empty)
    """
    data: bytes
    start_address: int
    source: str = ""

    @property
    def end_address(self) -> int:
        """Exclusive end address."""
        return self.start_address + len(self.data)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    def blocks(self, block_size: int = 256) -> Iterator[Tuple[int, bytes]]:
        """Yield (address, chunk) pairs; the last chunk may be short."""
        if block_size < 1:
            raise ValueError(f"Invalid block size: {block_size}")
        for offset in range(0, len(self.data), block_size):
            yield self.start_address + offset, self.data[offset:offset + block_size]

    def block_count(self, block_size: int = 256) -> int:
        return -(-len(self.data) // block_size)


def image_from_hex(source: Union[str, Path], fill: int = DEFAULT_FILL) -> FirmwareImage:
    """
    Parse an Intel-HEX file.

    Extended linear/segment address records are honoured, so the image
    carries absolute flash addresses.

    Raises:
        FirmwareError: If the file is malformed or holds no data records
    """
    ih = IntelHex()
    ih.padding = fill
    try:
        ih.loadhex(str(source))
    except (IntelHexError, ValueError) as e:
        raise FirmwareError(f"Invalid HEX file {source}: {e}")

    if not len(ih):
        raise FirmwareError(f"HEX file {source} contains no data")

    start = ih.minaddr()
    end = ih.maxaddr()
    data = ih.tobinstr(start=start, end=end)
    logger.debug(f"Loaded HEX {source}: 0x{start:08X}-0x{end + 1:08X} ({len(data)} bytes)")
    return FirmwareImage(data=bytes(data), start_address=start, source=str(source))


def image_from_bin(
    source: Union[str, Path],
    base_address: int = DEFAULT_BASE_ADDRESS,
) -> FirmwareImage:
    """Load a raw binary placed at base_address."""
    path = Path(source)
    data = path.read_bytes()
    if not data:
        raise FirmwareError(f"Firmware file {source} is empty")
    logger.debug(f"Loaded BIN {source}: {len(data)} bytes at 0x{base_address:08X}")
    return FirmwareImage(data=data, start_address=base_address, source=str(source))


def load_firmware(
    source: Union[str, Path],
    base_address: Optional[int] = DEFAULT_BASE_ADDRESS,
    fill: int = DEFAULT_FILL,
) -> FirmwareImage:
    """
    Load a firmware file, choosing the format from the suffix.

    Args:
        source: Path to .hex or .bin file
        base_address: Load address for raw binaries (None means 0x08000000)
        fill: Byte used for gaps between HEX records

    Raises:
        FirmwareError: If the file is missing, empty or malformed
    """
    path = Path(source)
    if not path.exists():
        raise FirmwareError(f"Firmware file not found: {source}")

    if base_address is None:
        base_address = DEFAULT_BASE_ADDRESS

    if path.suffix.lower() in HEX_SUFFIXES:
        return image_from_hex(path, fill=fill)
    return image_from_bin(path, base_address=base_address)

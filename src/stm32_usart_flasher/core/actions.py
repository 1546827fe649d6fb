"""
Core workflow actions.

This module sequences bootloader commands into the erase/write/verify
workflows that both CLI and Streamlit call. Each public workflow returns an
OperationResult; the protocol engine underneath never retries, so the
verify retry policy lives here.
"""

import hashlib
import logging
import time
from contextlib import contextmanager
from typing import Callable, List, Optional

from stm32_usart_flasher.firmware import FirmwareImage
from stm32_usart_flasher.models import (
    DEFAULT_FLASH_BASE,
    DEFAULT_PAGE_SIZE,
    describe_product_id,
    get_target,
    is_sector_organised,
)
from stm32_usart_flasher.protocol import (
    Commands,
    ERASE_ALL_PAGES,
    EXTENDED_ERASE_MASS,
    MAX_TRANSFER_SIZE,
    BootloaderError,
    FtdiTransport,
    SerialTransport,
    SupportedCommands,
    Transport,
    TransportError,
    USARTBootloader,
)
from stm32_usart_flasher.protocol.transport import DEFAULT_BAUDRATE, DEFAULT_TIMEOUT
from .results import OperationResult, format_region

logger = logging.getLogger(__name__)

BLOCK_SIZE = MAX_TRANSFER_SIZE
VERIFY_ATTEMPTS = 5
RESET_PULSE = 0.1
WRITE_ALIGNMENT = 4
PAD_BYTE = 0xFF

ProgressCallback = Callable[[str, int, int], None]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "stm32_usart_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _report(progress_cb: Optional[ProgressCallback], stage: str, done: int, total: int) -> None:
    if progress_cb:
        progress_cb(stage, done, total)


# ----------------------------------------------------------------------
# Connection
# ----------------------------------------------------------------------

def create_transport(
    port: str,
    baudrate: int = DEFAULT_BAUDRATE,
    ftdi: bool = False,
    timeout: float = DEFAULT_TIMEOUT,
    latency_ms: Optional[int] = None,
) -> Transport:
    """Build the serial or FTDI D2XX transport for port (not yet open)."""
    if ftdi:
        kwargs = {"latency_ms": latency_ms} if latency_ms is not None else {}
        return FtdiTransport(port, baudrate=baudrate, timeout=timeout, **kwargs)
    return SerialTransport(port, baudrate=baudrate, timeout=timeout)


def enter_bootloader(transport: Transport, pulse: float = RESET_PULSE) -> None:
    """
    Reset the target into system memory.

    Wiring convention: RTS drives BOOT0, DTR drives the (inverted) nRESET line.
    """
    transport.set_rts(True)
    transport.set_dtr(True)
    time.sleep(pulse)
    transport.set_dtr(False)
    time.sleep(pulse)
    logger.debug("Target reset with BOOT0 high")


def exit_bootloader(transport: Transport, pulse: float = RESET_PULSE) -> None:
    """Reset the target with BOOT0 low so it starts from user flash."""
    transport.set_rts(False)
    transport.set_dtr(True)
    time.sleep(pulse)
    transport.set_dtr(False)
    logger.debug("Target reset with BOOT0 low")


def open_bootloader(
    port: Optional[str] = None,
    baudrate: int = DEFAULT_BAUDRATE,
    ftdi: bool = False,
    reset: bool = False,
    init_attempts: int = 5,
    legacy_extended_erase: bool = False,
    transport: Optional[Transport] = None,
) -> USARTBootloader:
    """
    Open the port, optionally reset into the bootloader, and synchronize.

    Returns:
        USARTBootloader in the Ready state; the caller must close() it.

    Raises:
        TransportError: If the port cannot be opened
        InitializationError: If the handshake fails
    """
    if transport is None:
        if port is None:
            raise ValueError("port or transport is required")
        transport = create_transport(port, baudrate=baudrate, ftdi=ftdi)

    loader = USARTBootloader(
        transport,
        init_attempts=init_attempts,
        legacy_extended_erase=legacy_extended_erase,
    )
    loader.open()
    try:
        if reset:
            enter_bootloader(transport)
        loader.init()
    except Exception:
        loader.close()
        raise
    return loader


# ----------------------------------------------------------------------
# Device information
# ----------------------------------------------------------------------

def read_device_info(loader: USARTBootloader) -> OperationResult:
    """
    Query version, supported commands, option bytes and product ID.

    Returns:
        OperationResult with metadata keys: version, commands, product_id,
        option_byte1, option_byte2, page_size
    """
    with _capture_logs() as logs:
        try:
            supported = loader.get()
            metadata = {
                "version": supported.version_string,
                "commands": [
                    _command_label(opcode) for opcode in supported.commands
                ],
            }

            target_name = ""
            if supported.supports(Commands.GET_ID):
                pid = loader.get_id()
                target_name = describe_product_id(pid)
                target = get_target(pid)
                metadata["product_id"] = pid
                metadata["page_size"] = target.page_size if target else None

            if supported.supports(Commands.GET_VERSION):
                status = loader.get_version_and_read_protection_status()
                metadata["option_byte1"] = status.option_byte1
                metadata["option_byte2"] = status.option_byte2
        except (BootloaderError, TransportError) as e:
            return OperationResult.failure("info", str(e), logs=list(logs))

        result = OperationResult.success("info", target=target_name, metadata=metadata)
        if target_name.startswith("Unknown"):
            result.add_warning(f"Unknown product ID 0x{metadata['product_id']:03X}")
        result.logs = list(logs)
        return result


def _command_label(opcode: int) -> str:
    command = Commands.by_opcode(opcode)
    name = command.name if command else "Unknown"
    return f"0x{opcode:02X} {name}"


def _resolve_page_size(
    loader: USARTBootloader,
    supported: SupportedCommands,
    result: OperationResult,
) -> int:
    if not supported.supports(Commands.GET_ID):
        result.add_warning(f"Get ID not supported; assuming {DEFAULT_PAGE_SIZE}-byte pages")
        return DEFAULT_PAGE_SIZE

    pid = loader.get_id()
    result.target = describe_product_id(pid)
    target = get_target(pid)
    if target:
        return target.page_size
    if is_sector_organised(pid):
        raise ValueError(
            f"{result.target} erases by sector; use mass erase instead of page erase"
        )
    result.add_warning(f"Unknown product ID 0x{pid:03X}; assuming {DEFAULT_PAGE_SIZE}-byte pages")
    return DEFAULT_PAGE_SIZE


# ----------------------------------------------------------------------
# Erase / write / verify
# ----------------------------------------------------------------------

def pages_for_image(
    image: FirmwareImage,
    page_size: int = DEFAULT_PAGE_SIZE,
    flash_base: int = DEFAULT_FLASH_BASE,
) -> range:
    """Indices of every flash page the image touches."""
    if image.start_address < flash_base:
        raise ValueError(
            f"Image starts at 0x{image.start_address:08X}, below flash base 0x{flash_base:08X}"
        )
    first = (image.start_address - flash_base) // page_size
    last = (image.end_address - 1 - flash_base) // page_size
    return range(first, last + 1)


def erase_pages(
    loader: USARTBootloader,
    pages: range,
    progress_cb: Optional[ProgressCallback] = None,
) -> None:
    """Legacy-erase each page in turn."""
    if pages and pages[-1] >= ERASE_ALL_PAGES:
        raise ValueError(
            f"Page {pages[-1]} cannot be addressed by legacy erase; use mass erase"
        )
    total = len(pages)
    for done, page in enumerate(pages, 1):
        loader.erase_memory(page)
        _report(progress_cb, "erase", done, total)
    logger.info(f"Erased {total} page(s)")


def mass_erase(loader: USARTBootloader, supported: SupportedCommands) -> str:
    """
    Erase the whole flash with whichever erase command the bootloader lists.

    Returns:
        "extended" or "legacy"
    """
    if supported.supports(Commands.EXTENDED_ERASE):
        loader.extended_erase_memory(EXTENDED_ERASE_MASS)
        mode = "extended"
    else:
        loader.erase_memory(ERASE_ALL_PAGES)
        mode = "legacy"
    logger.info(f"Mass erase complete ({mode})")
    return mode


def erase_image_region(
    loader: USARTBootloader,
    image: FirmwareImage,
    page_size: int = DEFAULT_PAGE_SIZE,
    flash_base: int = DEFAULT_FLASH_BASE,
    mass: bool = False,
    supported: Optional[SupportedCommands] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> str:
    """
    Erase every page the image touches, or the whole flash when mass is set.

    Returns:
        "pages", "extended" or "legacy"
    """
    if supported is None:
        supported = loader.get()
    if mass:
        return mass_erase(loader, supported)
    erase_pages(loader, pages_for_image(image, page_size, flash_base), progress_cb)
    return "pages"


def _pad(chunk: bytes) -> bytes:
    remainder = len(chunk) % WRITE_ALIGNMENT
    if remainder:
        chunk += bytes([PAD_BYTE]) * (WRITE_ALIGNMENT - remainder)
    return chunk


def write_image(
    loader: USARTBootloader,
    image: FirmwareImage,
    block_size: int = BLOCK_SIZE,
    progress_cb: Optional[ProgressCallback] = None,
) -> bool:
    """
    Write the image in block_size chunks.

    Returns:
        True if the last block had to be padded to a 4-byte boundary
    """
    if not 1 <= block_size <= MAX_TRANSFER_SIZE:
        raise ValueError(f"Block size is 1 to {MAX_TRANSFER_SIZE}. size={block_size}")

    padded = False
    total = image.block_count(block_size)
    for done, (address, chunk) in enumerate(image.blocks(block_size), 1):
        data = _pad(chunk)
        padded = padded or len(data) != len(chunk)
        loader.write_memory(address, data)
        _report(progress_cb, "write", done, total)
    logger.info(f"Wrote {image.size:,} bytes in {total} block(s)")
    return padded


def verify_image(
    loader: USARTBootloader,
    image: FirmwareImage,
    block_size: int = BLOCK_SIZE,
    attempts: int = VERIFY_ATTEMPTS,
    progress_cb: Optional[ProgressCallback] = None,
) -> List[int]:
    """
    Read back every block and compare it with the image.

    A block is re-read up to `attempts` times; read errors count as a failed
    attempt.

    Returns:
        Addresses of blocks that never matched
    """
    if not 1 <= block_size <= MAX_TRANSFER_SIZE:
        raise ValueError(f"Block size is 1 to {MAX_TRANSFER_SIZE}. size={block_size}")

    mismatches = []
    total = image.block_count(block_size)
    for done, (address, chunk) in enumerate(image.blocks(block_size), 1):
        for attempt in range(1, attempts + 1):
            try:
                if loader.read_memory(address, len(chunk)) == chunk:
                    break
                logger.warning(f"Verify mismatch at 0x{address:08X} (attempt {attempt})")
            except (BootloaderError, TransportError) as e:
                logger.warning(f"Verify read failed at 0x{address:08X} (attempt {attempt}): {e}")
        else:
            mismatches.append(address)
        _report(progress_cb, "verify", done, total)
    return mismatches


def flash_image(
    loader: USARTBootloader,
    image: FirmwareImage,
    page_size: Optional[int] = None,
    flash_base: int = DEFAULT_FLASH_BASE,
    use_mass_erase: bool = False,
    verify: bool = True,
    verify_attempts: int = VERIFY_ATTEMPTS,
    block_size: int = BLOCK_SIZE,
    go_address: Optional[int] = None,
    progress_cb: Optional[ProgressCallback] = None,
) -> OperationResult:
    """
    Erase, write and verify an image, then optionally jump to it.

    Args:
        loader: Ready USARTBootloader
        image: Firmware to program
        page_size: Flash page size; looked up from the product ID if None
        flash_base: Address of page 0
        use_mass_erase: Erase the whole flash instead of the touched pages
        verify: Read back and compare after writing
        verify_attempts: Reads per block before declaring a mismatch
        block_size: Bytes per Write/Read Memory command (1..256)
        go_address: Jump here after a successful flash
        progress_cb: Optional callback(stage, done, total)

    Returns:
        OperationResult with metadata: erase_mode, blocks, mismatches, go
    """
    region = format_region(image.start_address, image.end_address)
    result = OperationResult.success(
        "flash",
        region=region,
        bytes_len=image.size,
        hashes={"sha256": image.sha256},
    )
    started = time.monotonic()

    with _capture_logs() as logs:
        try:
            supported = loader.get()

            mass = use_mass_erase
            if not mass and not supported.supports(Commands.ERASE):
                raise ValueError(
                    "Page erase (0x43) not supported by this bootloader; "
                    "re-run with --mass-erase to erase the whole flash"
                )
            if not mass and page_size is None:
                page_size = _resolve_page_size(loader, supported, result)
            result.metadata["erase_mode"] = erase_image_region(
                loader,
                image,
                page_size=page_size or DEFAULT_PAGE_SIZE,
                flash_base=flash_base,
                mass=mass,
                supported=supported,
                progress_cb=progress_cb,
            )

            if write_image(loader, image, block_size, progress_cb):
                result.add_warning("Last block padded to a 4-byte boundary with 0xFF")
            result.metadata["blocks"] = image.block_count(block_size)

            if verify:
                mismatches = verify_image(
                    loader, image, block_size, verify_attempts, progress_cb
                )
                result.metadata["mismatches"] = [f"0x{a:08X}" for a in mismatches]
                if mismatches:
                    result.add_error(
                        f"Verify mismatch in {len(mismatches)} block(s), "
                        f"first at 0x{mismatches[0]:08X}"
                    )

            if go_address is not None and result.ok:
                loader.go(go_address)
                result.metadata["go"] = f"0x{go_address:08X}"
        except (BootloaderError, TransportError, ValueError) as e:
            logger.error(f"Flash failed: {e}")
            result.add_error(str(e))

        result.elapsed = time.monotonic() - started
        result.logs = list(logs)
    return result


# ----------------------------------------------------------------------
# Standalone operations
# ----------------------------------------------------------------------

def read_memory_region(
    loader: USARTBootloader,
    address: int,
    length: int,
    block_size: int = BLOCK_SIZE,
    progress_cb: Optional[ProgressCallback] = None,
) -> bytes:
    """Read length bytes from address in block_size chunks."""
    if not 1 <= block_size <= MAX_TRANSFER_SIZE:
        raise ValueError(f"Block size is 1 to {MAX_TRANSFER_SIZE}. size={block_size}")

    data = bytearray()
    total = -(-length // block_size)
    for done, offset in enumerate(range(0, length, block_size), 1):
        size = min(block_size, length - offset)
        data += loader.read_memory(address + offset, size)
        _report(progress_cb, "read", done, total)
    return bytes(data)


def dump_memory(
    loader: USARTBootloader,
    address: int,
    length: int,
    block_size: int = BLOCK_SIZE,
    progress_cb: Optional[ProgressCallback] = None,
) -> OperationResult:
    """
    Read a memory region.

    Returns:
        OperationResult with metadata["data"] holding the bytes read
    """
    region = format_region(address, address + length)
    with _capture_logs() as logs:
        started = time.monotonic()
        try:
            data = read_memory_region(loader, address, length, block_size, progress_cb)
        except (BootloaderError, TransportError, ValueError) as e:
            return OperationResult.failure("read", str(e), region=region, logs=list(logs))

        return OperationResult.success(
            "read",
            region=region,
            bytes_len=len(data),
            elapsed=time.monotonic() - started,
            hashes={"sha256": hashlib.sha256(data).hexdigest()},
            metadata={"data": data},
            logs=list(logs),
        )


def erase_flash(
    loader: USARTBootloader,
    selector: int,
    extended: bool = False,
) -> OperationResult:
    """Run one Erase or Extended Erase command."""
    operation = "extended-erase" if extended else "erase"
    with _capture_logs() as logs:
        started = time.monotonic()
        try:
            if extended:
                loader.extended_erase_memory(selector)
            else:
                loader.erase_memory(selector)
        except (BootloaderError, TransportError) as e:
            return OperationResult.failure(operation, str(e), logs=list(logs))

        return OperationResult.success(
            operation,
            elapsed=time.monotonic() - started,
            metadata={"selector": f"0x{selector:X}"},
            logs=list(logs),
        )


def start_application(loader: USARTBootloader, address: int) -> OperationResult:
    """Issue Go to address."""
    with _capture_logs() as logs:
        try:
            loader.go(address)
        except (BootloaderError, TransportError) as e:
            return OperationResult.failure("go", str(e), logs=list(logs))
        return OperationResult.success(
            "go",
            metadata={"address": f"0x{address:08X}"},
            logs=list(logs),
        )

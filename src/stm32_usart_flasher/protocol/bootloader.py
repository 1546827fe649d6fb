"""
STM32 USART Bootloader Protocol Engine

Implements the system-memory bootloader command set (ST AN3155) on top of a
Transport.

Protocol summary:
    HOST                              DEVICE
    [opcode, ~opcode]          -->
                               <--    ACK (0x79) / NACK (0x1F)
    [payload..., checksum]     -->
                               <--    ACK / NACK
    ...

The only command with retry semantics is the 0x7F handshake, where a NACK
is also accepted because an already synchronized device answers with one.
Every other failure propagates to the caller immediately.

Connection state:
    Closed --open()--> Open --init()--> Ready --close()--> Closed
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from .frames import (
    Ack,
    CommandCode,
    Commands,
    INIT,
    ERASE_ALL_PAGES,
    GLOBAL_ERASE_REQUEST,
    EXTENDED_ERASE_RESERVED,
    MAX_TRANSFER_SIZE,
    address_frame,
    data_frame,
    extended_erase_frame,
    length_frame,
    page_erase_frame,
)
from .transport import Transport, TransportError

logger = logging.getLogger(__name__)

INIT_ATTEMPTS = 5


class BootloaderError(Exception):
    """Base exception for protocol engine errors"""
    pass


class NotOpenError(BootloaderError):
    """Transport is not open"""
    pass


class NotInitializedError(BootloaderError):
    """Command issued before a successful handshake"""
    pass


class BootloaderNackError(BootloaderError):
    """Device answered NACK where only ACK is acceptable"""
    pass


class UnexpectedAnswerError(BootloaderError):
    """Device answered with a byte that is neither ACK nor NACK"""

    def __init__(self, answer: int, step: str = ""):
        self.answer = answer
        self.step = step
        where = f" after {step}" if step else ""
        super().__init__(f"Invalid answer 0x{answer:02X}{where}")


class InitializationError(BootloaderError):
    """Handshake failed on every attempt"""

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


class BootloaderArgumentError(BootloaderError, ValueError):
    """Argument rejected before any byte was sent"""
    pass


def _version_nibbles(version: int) -> Tuple[int, int]:
    return (version >> 4) & 0x0F, version & 0x0F


@dataclass(frozen=True)
class SupportedCommands:
    """Result of Get: bootloader version and the opcodes it accepts."""
    version: int
    commands: Tuple[int, ...]

    @property
    def major_version(self) -> int:
        return _version_nibbles(self.version)[0]

    @property
    def minor_version(self) -> int:
        return _version_nibbles(self.version)[1]

    @property
    def version_string(self) -> str:
        return f"{self.major_version}.{self.minor_version}"

    def supports(self, command) -> bool:
        opcode = command.opcode if isinstance(command, CommandCode) else command
        return opcode in self.commands


@dataclass(frozen=True)
class VersionAndReadProtectionStatus:
    """Result of Get Version & Read Protection Status."""
    version: int
    option_byte1: int
    option_byte2: int

    @property
    def major_version(self) -> int:
        return _version_nibbles(self.version)[0]

    @property
    def minor_version(self) -> int:
        return _version_nibbles(self.version)[1]


class USARTBootloader:
    """
    Connector for the STM32 USART bootloader.

    Not thread-safe: the protocol is half-duplex request/response, so one
    caller must own the instance and serialize every call.

    Example:
        loader = USARTBootloader(SerialTransport("/dev/ttyUSB0"))
        loader.open()
        loader.init()
        info = loader.get()
        data = loader.read_memory(0x08000000, 256)
        loader.close()
    """

    def __init__(
        self,
        transport: Transport,
        init_attempts: int = INIT_ATTEMPTS,
        init_retry_delay: float = 0.0,
        legacy_extended_erase: bool = False,
    ):
        """
        Args:
            transport: Open or closed Transport
            init_attempts: Total handshake attempts before giving up
            init_retry_delay: Seconds to wait between handshake attempts
            legacy_extended_erase: Encode extended-erase page counts with the
                (value >> 4, value & 0xFF) split of older clients
        """
        if init_attempts < 1:
            raise ValueError("init_attempts must be at least 1")
        self.transport = transport
        self.init_attempts = init_attempts
        self.init_retry_delay = init_retry_delay
        self.legacy_extended_erase = legacy_extended_erase
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def open(self) -> None:
        if not self.is_open():
            self.transport.open()

    def close(self) -> None:
        self.is_initialized = False
        self.transport.close()

    def is_open(self) -> bool:
        return self.transport.is_open()

    @property
    def is_ready(self) -> bool:
        return self.is_open() and self.is_initialized

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _check_ready(self) -> None:
        if not self.is_ready:
            raise NotInitializedError("Device is not initialized yet")

    # ------------------------------------------------------------------
    # Acknowledgement primitives
    # ------------------------------------------------------------------

    def _receive_byte(self) -> int:
        return self.transport.receive(1)[0]

    def _receive_ack(self, step: str = "") -> Ack:
        """Read one answer byte; NACK is returned, not raised."""
        answer = self._receive_byte()
        try:
            return Ack(answer)
        except ValueError:
            raise UnexpectedAnswerError(answer, step)

    def _expect_ack(self, step: str) -> None:
        if self._receive_ack(step) is Ack.NACK:
            raise BootloaderNackError(f"NACK received after {step}")

    def _command(self, command: CommandCode) -> None:
        logger.debug(f"*** Command: {command.name} (0x{command.opcode:02X})")
        self.transport.send(command.to_bytes())
        self._expect_ack(command.name)

    @staticmethod
    def _address_frame(address: int) -> bytes:
        try:
            return address_frame(address)
        except ValueError as e:
            raise BootloaderArgumentError(str(e))

    def _send_address(self, frame: bytes, step: str) -> None:
        self.transport.send(frame)
        self._expect_ack(f"{step} address 0x{frame[:4].hex().upper()}")

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def init(self) -> None:
        """
        Synchronize with the bootloader (0x7F).

        Raises:
            NotOpenError: If the transport is closed
            InitializationError: If every attempt failed
        """
        if not self.is_open():
            raise NotOpenError("Connection is not opened yet")

        last_error: Optional[Exception] = None
        for attempt in range(1, self.init_attempts + 1):
            try:
                self.transport.send(INIT)
                ack = self._receive_ack("Init")
            except (TransportError, UnexpectedAnswerError) as e:
                last_error = e
                if attempt < self.init_attempts:
                    logger.warning(
                        f"Handshake attempt {attempt} failed: {e}, retrying..."
                    )
                    if self.init_retry_delay:
                        time.sleep(self.init_retry_delay)
                continue

            if ack is Ack.NACK:
                logger.info("Bootloader already synchronized (NACK on init)")
            else:
                logger.info("Bootloader synchronized")
            self.is_initialized = True
            return

        raise InitializationError(
            f"Device is in illegal state. Failed to initialize after "
            f"{self.init_attempts} attempts: {last_error}",
            attempts=self.init_attempts,
        ) from last_error

    # ------------------------------------------------------------------
    # Query commands
    # ------------------------------------------------------------------

    def get(self) -> SupportedCommands:
        """Get the bootloader version and the list of supported commands."""
        self._check_ready()
        self._command(Commands.GET)

        count = self._receive_byte()
        payload = self.transport.receive(count + 1)
        self._expect_ack("Get data")

        result = SupportedCommands(version=payload[0], commands=tuple(payload[1:]))
        logger.debug(
            f"Bootloader {result.version_string}, commands: "
            + " ".join(f"{c:02X}" for c in result.commands)
        )
        return result

    def get_version_and_read_protection_status(self) -> VersionAndReadProtectionStatus:
        self._check_ready()
        self._command(Commands.GET_VERSION)

        version, option1, option2 = self.transport.receive(3)
        self._expect_ack("Get Version data")
        return VersionAndReadProtectionStatus(version, option1, option2)

    def get_id(self) -> int:
        """Get the 16-bit product ID."""
        self._check_ready()
        self._command(Commands.GET_ID)

        count = self._receive_byte()
        payload = self.transport.receive(count + 1)
        if len(payload) < 2:
            raise UnexpectedAnswerError(count, "Get ID length")
        pid = (payload[0] << 8) | payload[1]
        self._expect_ack("Get ID data")
        return pid

    # ------------------------------------------------------------------
    # Memory operations
    # ------------------------------------------------------------------

    def read_memory(self, address: int, size: int) -> bytes:
        """
        Read 1..256 bytes starting at address.

        Raises:
            BootloaderArgumentError: If size is out of range (nothing is sent)
        """
        self._check_ready()
        if not 1 <= size <= MAX_TRANSFER_SIZE:
            raise BootloaderArgumentError(f"Read size is 1 to 256. size={size}")

        frame = self._address_frame(address)
        self._command(Commands.READ_MEMORY)
        self._send_address(frame, Commands.READ_MEMORY.name)

        self.transport.send(length_frame(size))
        self._expect_ack("Read Memory length")

        return self.transport.receive(size)

    def write_memory(self, address: int, data: bytes) -> None:
        """
        Write data starting at address.

        The caller keeps len(data) within 1..256; the bootloader also expects
        the length to be a multiple of 4 on most parts.
        """
        self._check_ready()
        frame = self._address_frame(address)
        self._command(Commands.WRITE_MEMORY)
        self._send_address(frame, Commands.WRITE_MEMORY.name)

        self.transport.send(data_frame(data))
        self._expect_ack(f"Write Memory data ({len(data)} bytes)")

    def go(self, address: int) -> None:
        """Jump to address. No answer is awaited after the address ACK."""
        self._check_ready()
        frame = self._address_frame(address)
        self._command(Commands.GO)
        self._send_address(frame, Commands.GO.name)
        logger.info(f"Jumped to 0x{address:08X}")

    def erase_memory(self, selector: int) -> None:
        """
        Legacy erase of a single page, or all pages with ERASE_ALL_PAGES.

        Args:
            selector: Page index 0..254, or 0xFF for a global erase
        """
        self._check_ready()
        if not 0 <= selector <= ERASE_ALL_PAGES:
            raise BootloaderArgumentError(f"Page index is 0 to 255. index={selector}")

        self._command(Commands.ERASE)
        if selector == ERASE_ALL_PAGES:
            self.transport.send(GLOBAL_ERASE_REQUEST)
            self._expect_ack("Global Erase")
        else:
            self.transport.send(page_erase_frame(selector))
            self._expect_ack(f"Erase page {selector}")

    def extended_erase_memory(self, selector: int) -> None:
        """
        Extended erase by special selector (mass, bank 1, bank 2) or page count.

        Raises:
            BootloaderArgumentError: For reserved selectors 0xFFF0..0xFFFC
        """
        self._check_ready()
        if selector in EXTENDED_ERASE_RESERVED:
            raise BootloaderArgumentError(
                f"0xFFF0 to 0xFFFC are reserved. index=0x{selector:04X}"
            )
        if not 1 <= selector <= 0xFFFF:
            raise BootloaderArgumentError(
                f"Extended erase selector is 1 to 0xFFFF. index={selector}"
            )

        self._command(Commands.EXTENDED_ERASE)
        self.transport.send(
            extended_erase_frame(selector, legacy_split=self.legacy_extended_erase)
        )
        self._expect_ack(f"Extended Erase 0x{selector:04X}")

    # ------------------------------------------------------------------
    # Protection commands
    # ------------------------------------------------------------------

    def write_protect(self) -> None:
        raise NotImplementedError("WriteProtect is not implemented.")

    def write_unprotect(self) -> None:
        raise NotImplementedError("WriteUnprotect is not implemented.")

    def readout_protect(self) -> None:
        raise NotImplementedError("ReadoutProtect is not implemented.")

    def readout_unprotect(self) -> None:
        raise NotImplementedError("ReadoutUnprotect is not implemented.")

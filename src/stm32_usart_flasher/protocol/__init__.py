"""Bootloader protocol layer - frame codec, engine and transports."""

from .transport import (
    Transport,
    SerialTransport,
    TransportError,
    TransportNotOpenError,
    ShortWriteError,
    ShortReadError,
    TransportCloseError,
    open_serial,
)
from .ftdi_transport import (
    FtdiTransport,
    Ft232rTransport,
    CbusConfig,
    CbusBits,
    CBUS_IOMODE,
)
from .frames import (
    ACK,
    NACK,
    Ack,
    CommandCode,
    Commands,
    ERASE_ALL_PAGES,
    EXTENDED_ERASE_MASS,
    EXTENDED_ERASE_BANK1,
    EXTENDED_ERASE_BANK2,
    MAX_TRANSFER_SIZE,
    checksum,
    address_frame,
    length_frame,
)
from .bootloader import (
    USARTBootloader,
    SupportedCommands,
    VersionAndReadProtectionStatus,
    BootloaderError,
    NotOpenError,
    NotInitializedError,
    BootloaderNackError,
    UnexpectedAnswerError,
    InitializationError,
    BootloaderArgumentError,
)

__all__ = [
    # Transport
    "Transport",
    "SerialTransport",
    "FtdiTransport",
    "Ft232rTransport",
    "CbusConfig",
    "CbusBits",
    "CBUS_IOMODE",
    "TransportError",
    "TransportNotOpenError",
    "ShortWriteError",
    "ShortReadError",
    "TransportCloseError",
    "open_serial",
    # Frames
    "ACK",
    "NACK",
    "Ack",
    "CommandCode",
    "Commands",
    "ERASE_ALL_PAGES",
    "EXTENDED_ERASE_MASS",
    "EXTENDED_ERASE_BANK1",
    "EXTENDED_ERASE_BANK2",
    "MAX_TRANSFER_SIZE",
    "checksum",
    "address_frame",
    "length_frame",
    # Engine
    "USARTBootloader",
    "SupportedCommands",
    "VersionAndReadProtectionStatus",
    "BootloaderError",
    "NotOpenError",
    "NotInitializedError",
    "BootloaderNackError",
    "UnexpectedAnswerError",
    "InitializationError",
    "BootloaderArgumentError",
]

"""
STM32 USART bootloader frame codec.

Wire primitives shared by the protocol engine:
- Command catalog (opcode + complement pairs)
- XOR checksum and the ReadMemory length-field exception
- Address and erase frames
- Acknowledgement bytes
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterable


ACK = 0x79
NACK = 0x1F

# Legacy Erase (0x43): request every page
GLOBAL_ERASE_REQUEST = bytes([0xFF, 0x00])

# Extended Erase (0x44) special selectors
EXTENDED_ERASE_MASS = 0xFFFF
EXTENDED_ERASE_BANK1 = 0xFFFE
EXTENDED_ERASE_BANK2 = 0xFFFD
EXTENDED_ERASE_SPECIALS = (
    EXTENDED_ERASE_MASS,
    EXTENDED_ERASE_BANK1,
    EXTENDED_ERASE_BANK2,
)
EXTENDED_ERASE_RESERVED = range(0xFFF0, 0xFFFD)

# Legacy Erase page selector that means "all pages"
ERASE_ALL_PAGES = 0xFF

MAX_TRANSFER_SIZE = 256


class Ack(Enum):
    """Recognised acknowledgement bytes."""
    ACK = ACK
    NACK = NACK


@dataclass(frozen=True)
class CommandCode:
    """A bootloader command: opcode byte sent with its bitwise complement."""
    name: str
    opcode: int

    @property
    def complement(self) -> int:
        return self.opcode ^ 0xFF

    def to_bytes(self) -> bytes:
        return bytes([self.opcode, self.complement])


class Commands:
    """Fixed command catalog."""
    GET = CommandCode("Get", 0x00)
    GET_VERSION = CommandCode("Get Version & Read Protection Status", 0x01)
    GET_ID = CommandCode("Get ID", 0x02)
    READ_MEMORY = CommandCode("Read Memory", 0x11)
    GO = CommandCode("Go", 0x21)
    WRITE_MEMORY = CommandCode("Write Memory", 0x31)
    ERASE = CommandCode("Erase", 0x43)
    EXTENDED_ERASE = CommandCode("Extended Erase", 0x44)
    WRITE_PROTECT = CommandCode("Write Protect", 0x63)
    WRITE_UNPROTECT = CommandCode("Write Unprotect", 0x73)
    READOUT_PROTECT = CommandCode("Readout Protect", 0x82)
    READOUT_UNPROTECT = CommandCode("Readout Unprotect", 0x92)

    @classmethod
    def all(cls):
        return [v for v in vars(cls).values() if isinstance(v, CommandCode)]

    @classmethod
    def by_opcode(cls, opcode: int):
        for command in cls.all():
            if command.opcode == opcode:
                return command
        return None


# Handshake byte; sent alone, without a complement
INIT = bytes([0x7F])


def checksum(data: Iterable[int]) -> int:
    """
    XOR of every byte in data.

    Appending the result to data makes the XOR of the whole frame 0x00.
    """
    value = 0
    for byte in data:
        value ^= byte
    return value & 0xFF


def length_frame(size: int) -> bytes:
    """
    Build the ReadMemory "number of bytes" field for a 1..256 byte read.

    This single byte is checked with its complement rather than the plain XOR,
    so the two bytes XOR to 0xFF. The device NACKs the plain checksum here.
    """
    n = (size - 1) & 0xFF
    return bytes([n, n ^ 0xFF])


def address_frame(address: int) -> bytes:
    """Encode a 32-bit address as 4 big-endian bytes plus checksum."""
    if not 0 <= address <= 0xFFFFFFFF:
        raise ValueError(f"Address out of 32-bit range: 0x{address:X}")
    raw = struct.pack(">I", address)
    return raw + bytes([checksum(raw)])


def decode_address_frame(frame: bytes) -> int:
    """Inverse of address_frame(); raises ValueError on a bad checksum."""
    if len(frame) != 5:
        raise ValueError(f"Address frame must be 5 bytes, got {len(frame)}")
    if checksum(frame) != 0:
        raise ValueError(f"Address frame checksum mismatch: {frame.hex()}")
    return struct.unpack(">I", frame[:4])[0]


def data_frame(data: bytes) -> bytes:
    """WriteMemory payload: [N-1, data..., xor of everything before]."""
    body = bytes([(len(data) - 1) & 0xFF]) + bytes(data)
    return body + bytes([checksum(body)])


def page_erase_frame(page: int) -> bytes:
    """Legacy Erase request for a single page: [0x00, page, checksum]."""
    body = bytes([0x00, page & 0xFF])
    return body + bytes([checksum(body)])


def extended_erase_frame(selector: int, legacy_split: bool = False) -> bytes:
    """
    Extended Erase request for a special selector or a page count.

    Special selectors go out verbatim. A page count is sent as count - 1.
    With legacy_split the high byte is (value >> 4) instead of (value >> 8),
    matching clients deployed against the old encoder byte for byte.
    """
    if selector in EXTENDED_ERASE_SPECIALS:
        value = selector
    else:
        value = (selector - 1) & 0xFFFF

    if legacy_split and selector not in EXTENDED_ERASE_SPECIALS:
        body = bytes([(value >> 4) & 0xFF, value & 0xFF])
    else:
        body = struct.pack(">H", value)
    return body + bytes([checksum(body)])

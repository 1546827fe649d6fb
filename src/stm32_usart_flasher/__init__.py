"""
STM32 USART Flasher - program STM32 parts through the system-memory bootloader

Handshake, erase, write, verify and jump over a serial port or FTDI D2XX.
"""

__version__ = "0.1.0"

from stm32_usart_flasher.protocol import USARTBootloader, SerialTransport, FtdiTransport
from stm32_usart_flasher.firmware import FirmwareImage, load_firmware

__all__ = [
    "USARTBootloader",
    "SerialTransport",
    "FtdiTransport",
    "FirmwareImage",
    "load_firmware",
    "__version__",
]

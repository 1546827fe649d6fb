"""
Serial Transport Layer

Handles low-level byte I/O between the host and the STM32 system-memory
bootloader.

This module provides:
- The Transport contract consumed by the protocol engine
- A pyserial-backed implementation (8E1, 250 ms timeouts)
- Transport error types
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200
DEFAULT_TIMEOUT = 0.25


class TransportError(Exception):
    """Base exception for transport layer errors"""
    pass


class TransportNotOpenError(TransportError):
    """Operation attempted on a closed port"""
    pass


class ShortWriteError(TransportError):
    """Fewer bytes were written than requested"""
    pass


class ShortReadError(TransportError):
    """Fewer bytes arrived than requested before the read timeout"""
    pass


class TransportCloseError(TransportError):
    """Releasing the port failed"""
    pass


class Transport(ABC):
    """
    Byte-oriented duplex channel to the bootloader.

    Implementations must clear pending input and output immediately before
    every send, so a stale byte is never taken as the answer to the next
    command. send() is all-or-fail and receive() returns exactly n bytes or
    raises.
    """

    @abstractmethod
    def open(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def clear_buffer(self) -> None:
        """Discard pending input and output."""

    @abstractmethod
    def send(self, data: bytes) -> None:
        ...

    @abstractmethod
    def receive(self, length: int) -> bytes:
        ...

    @abstractmethod
    def set_rts(self, enable: bool) -> None:
        ...

    @abstractmethod
    def set_dtr(self, enable: bool) -> None:
        ...

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class SerialTransport(Transport):
    """
    pyserial transport for the native serial port or a VCP bridge driver.

    Example:
        transport = SerialTransport(port="/dev/ttyUSB0")
        transport.open()
        transport.send(b"\\x7F")
        answer = transport.receive(1)
        transport.close()
    """

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUDRATE,
        parity: str = serial.PARITY_EVEN,
        stopbits: float = serial.STOPBITS_ONE,
        timeout: float = DEFAULT_TIMEOUT,
        write_timeout: Optional[float] = None,
    ):
        """
        Initialize transport layer.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            baudrate: Serial baud rate (default 115200)
            parity: Parity setting; the bootloader expects even parity
            stopbits: Stop bits (default 1)
            timeout: Read timeout in seconds (default 0.25)
            write_timeout: Write timeout in seconds (defaults to timeout)
        """
        self.port = port
        self.baudrate = baudrate
        self.parity = parity
        self.stopbits = stopbits
        self.timeout = timeout
        self.write_timeout = timeout if write_timeout is None else write_timeout
        self.ser: Optional[serial.Serial] = None

    def open(self) -> None:
        """
        Open serial port.

        Raises:
            TransportError: If port cannot be opened
        """
        if self.is_open():
            return
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=self.timeout,
                write_timeout=self.write_timeout,
            )
            logger.debug(
                f"Opened {self.port} at {self.baudrate} bps "
                f"(parity={self.parity}, timeout={self.timeout}s)"
            )
        except serial.SerialException as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")

    def close(self) -> None:
        """
        Clear buffers (best effort) and close the serial port.

        Raises:
            TransportCloseError: If the port cannot be released
        """
        if not self.is_open():
            return
        try:
            self.clear_buffer()
        except TransportError as e:
            logger.warning(f"Could not clear buffers before close: {e}")
        try:
            self.ser.close()
        except serial.SerialException as e:
            raise TransportCloseError(f"Cannot close port {self.port}: {e}")
        logger.debug(f"Closed {self.port}")

    def is_open(self) -> bool:
        return self.ser is not None and self.ser.is_open

    def _require_open(self) -> None:
        if not self.is_open():
            raise TransportNotOpenError("Serial port not open")

    def clear_buffer(self) -> None:
        self._require_open()
        try:
            self.ser.reset_output_buffer()
            self.ser.reset_input_buffer()
        except serial.SerialException as e:
            raise TransportError(f"Buffer reset error: {e}")

    def send(self, data: bytes) -> None:
        """
        Clear buffers, then write data in one call.

        Raises:
            ShortWriteError: If the port accepted fewer bytes
            TransportError: If write fails
        """
        self._require_open()
        self.clear_buffer()
        try:
            written = self.ser.write(data)
        except serial.SerialTimeoutException as e:
            raise ShortWriteError(f"Write timeout after {self.write_timeout}s: {e}")
        except serial.SerialException as e:
            raise TransportError(f"Write error: {e}")
        if written != len(data):
            raise ShortWriteError(
                f"Incomplete write: sent {written}/{len(data)} bytes"
            )
        logger.debug(f">>> {data.hex().upper()}")

    def receive(self, length: int) -> bytes:
        """
        Block until exactly length bytes arrive.

        Raises:
            ShortReadError: If the read timeout expires first
            TransportError: If read fails
        """
        self._require_open()
        try:
            data = self.ser.read(length)
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")
        if len(data) != length:
            raise ShortReadError(
                f"Incomplete read: expected {length} bytes, got {len(data)}"
                + (f" ({data.hex().upper()})" if data else " (timeout)")
            )
        logger.debug(f"<<< {data.hex().upper()}")
        return bytes(data)

    def set_rts(self, enable: bool) -> None:
        self._require_open()
        self.ser.rts = enable

    def set_dtr(self, enable: bool) -> None:
        self._require_open()
        self.ser.dtr = enable


def open_serial(
    port: str,
    baudrate: int = DEFAULT_BAUDRATE,
    timeout: float = DEFAULT_TIMEOUT,
) -> SerialTransport:
    """
    Open a serial transport.

    Returns:
        SerialTransport instance (already open)
    """
    transport = SerialTransport(port, baudrate=baudrate, timeout=timeout)
    transport.open()
    return transport

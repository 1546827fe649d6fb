"""
FTDI D2XX transport.

Talks to FTDI USB-to-serial bridges through the D2XX driver instead of the
virtual COM port, which gives control over the latency timer and, on the
FT232R, the CBUS auxiliary pins.

NOTE: requires the optional 'ftdi' extra and the vendor D2XX library:
    pip install -e ".[ftdi]"
"""

import logging
from dataclasses import dataclass
from typing import Optional

try:
    import ftd2xx
    import ftd2xx.defines
except (ImportError, OSError):
    # OSError: package installed but the D2XX shared library is missing
    ftd2xx = None

from .transport import (
    Transport,
    TransportError,
    TransportNotOpenError,
    ShortWriteError,
    ShortReadError,
    TransportCloseError,
    DEFAULT_BAUDRATE,
    DEFAULT_TIMEOUT,
)

logger = logging.getLogger(__name__)

DEFAULT_LATENCY_MS = 16

# FT232R CBUS function codes (FT_CBUS_OPTIONS)
CBUS_TXDEN = 0x00
CBUS_PWRON = 0x01
CBUS_RXLED = 0x02
CBUS_TXLED = 0x03
CBUS_TXRXLED = 0x04
CBUS_SLEEP = 0x05
CBUS_CLK48 = 0x06
CBUS_CLK24 = 0x07
CBUS_CLK12 = 0x08
CBUS_CLK6 = 0x09
CBUS_IOMODE = 0x0A
CBUS_BITBANG_WR = 0x0B
CBUS_BITBANG_RD = 0x0C

# setBitMode() mode selecting CBUS bit-bang
BITMODE_CBUS_BITBANG = 0x20


def _require_driver():
    if ftd2xx is None:
        raise TransportError(
            "ftd2xx not available: pip install ftd2xx and install the FTDI D2XX driver"
        )


class FtdiTransport(Transport):
    """
    D2XX transport for FTDI bridges.

    The device is located either by serial number or by scanning every
    attached FTDI device for the one bound to the given COM port name.
    """

    def __init__(
        self,
        port: Optional[str] = None,
        baudrate: int = DEFAULT_BAUDRATE,
        parity: str = "E",
        stopbits: int = 1,
        timeout: float = DEFAULT_TIMEOUT,
        write_timeout: Optional[float] = None,
        latency_ms: int = DEFAULT_LATENCY_MS,
        serial_number: Optional[str] = None,
    ):
        if port is None and serial_number is None:
            raise ValueError("Either port or serial_number is required")
        self.port = port
        self.baudrate = baudrate
        self.parity = parity.upper()
        self.stopbits = stopbits
        self.timeout = timeout
        self.write_timeout = timeout if write_timeout is None else write_timeout
        self.latency_ms = latency_ms
        self.serial_number = serial_number
        self.device = None

    def _open_device(self):
        if self.serial_number:
            return ftd2xx.openEx(self.serial_number.encode("ascii"))

        devices = ftd2xx.listDevices() or []
        for index in range(len(devices)):
            device = ftd2xx.open(index)
            try:
                com = device.getComPortNumber()
            except ftd2xx.DeviceError:
                com = -1
            if f"COM{com}" == self.port:
                return device
            device.close()
        return None

    def _configure(self) -> None:
        defines = ftd2xx.defines
        parity = {
            "N": defines.PARITY_NONE,
            "O": defines.PARITY_ODD,
            "E": defines.PARITY_EVEN,
        }[self.parity]
        stopbits = defines.STOP_BITS_2 if self.stopbits == 2 else defines.STOP_BITS_1

        self.device.setBaudRate(self.baudrate)
        self.device.setDataCharacteristics(defines.BITS_8, stopbits, parity)
        self.device.setTimeouts(
            int(self.timeout * 1000),
            int(self.write_timeout * 1000),
        )
        self.device.setLatencyTimer(self.latency_ms)

    def open(self) -> None:
        """
        Locate and configure the FTDI device.

        Raises:
            TransportError: If no matching device exists or setup fails
        """
        if self.is_open():
            return
        _require_driver()
        target = self.serial_number or self.port
        try:
            self.device = self._open_device()
            if self.device is None:
                raise TransportError(f"Could not find FTDI device for port {self.port}")
            self._configure()
        except ftd2xx.DeviceError as e:
            self._release_quietly()
            raise TransportError(f"Cannot open FTDI device {target}: {e}")
        except TransportError:
            self._release_quietly()
            raise
        logger.debug(
            f"Opened FTDI {target} at {self.baudrate} bps "
            f"(latency={self.latency_ms}ms)"
        )

    def _release_quietly(self) -> None:
        if self.device is not None:
            try:
                self.device.close()
            except ftd2xx.DeviceError as e:
                logger.debug(f"Ignoring close error during failed open: {e}")
        self.device = None

    def close(self) -> None:
        """
        Purge buffers (best effort), reset and release the device.

        Raises:
            TransportCloseError: If reset or close fails
        """
        if not self.is_open():
            return
        try:
            self.clear_buffer()
        except TransportError as e:
            logger.warning(f"Could not purge buffers before close: {e}")
        try:
            self.device.resetPort()
        except ftd2xx.DeviceError as e:
            raise TransportCloseError(f"Reset failure: {e}")
        try:
            self.device.close()
        except ftd2xx.DeviceError as e:
            raise TransportCloseError(f"Close failure: {e}")
        self.device = None
        logger.debug("Closed FTDI device")

    def is_open(self) -> bool:
        return self.device is not None

    def _require_open(self) -> None:
        if not self.is_open():
            raise TransportNotOpenError("FTDI device not open")

    def clear_buffer(self) -> None:
        self._require_open()
        try:
            self.device.purge(ftd2xx.defines.PURGE_RX)
            self.device.purge(ftd2xx.defines.PURGE_TX)
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Purge error: {e}")

    def send(self, data: bytes) -> None:
        self._require_open()
        self.clear_buffer()
        try:
            written = self.device.write(bytes(data))
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Write error: {e}")
        if written != len(data):
            raise ShortWriteError(
                f"Failed to send: requested {len(data)} bytes, sent {written}"
            )
        logger.debug(f">>> {bytes(data).hex().upper()}")

    def receive(self, length: int) -> bytes:
        self._require_open()
        try:
            data = self.device.read(length)
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Read error: {e}")
        if len(data) < length:
            raise ShortReadError(
                f"Failed receiving frame: requested {length} bytes, received {len(data)}"
            )
        logger.debug(f"<<< {bytes(data).hex().upper()}")
        return bytes(data)

    def set_rts(self, enable: bool) -> None:
        self._require_open()
        try:
            if enable:
                self.device.setRts()
            else:
                self.device.clrRts()
        except ftd2xx.DeviceError as e:
            raise TransportError(f"RTS error: {e}")

    def set_dtr(self, enable: bool) -> None:
        self._require_open()
        try:
            if enable:
                self.device.setDtr()
            else:
                self.device.clrDtr()
        except ftd2xx.DeviceError as e:
            raise TransportError(f"DTR error: {e}")


@dataclass
class CbusConfig:
    """CBUS0..3 pin functions; defaults match a factory-fresh FT232R."""
    cbus0: int = CBUS_TXLED
    cbus1: int = CBUS_RXLED
    cbus2: int = CBUS_TXDEN
    cbus3: int = CBUS_PWRON

    def as_tuple(self):
        return (self.cbus0, self.cbus1, self.cbus2, self.cbus3)


@dataclass
class CbusBits:
    """High/low level for CBUS0..3."""
    cbus0: bool = False
    cbus1: bool = False
    cbus2: bool = False
    cbus3: bool = False

    def as_tuple(self):
        return (self.cbus0, self.cbus1, self.cbus2, self.cbus3)


class Ft232rTransport(FtdiTransport):
    """
    FT232R transport with CBUS pins usable as GPIO.

    Pins must first be switched to I/O mode in the EEPROM with
    set_cbus_config(); the change takes effect after the device re-enumerates.

    Example:
        transport = Ft232rTransport(port="COM5")
        transport.open()
        transport.set_cbus_config(CbusConfig(CBUS_IOMODE, CBUS_IOMODE))
        transport.set_cbus_bits(CbusBits(cbus0=True))
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.eeprom = None

    def close(self) -> None:
        super().close()
        self.eeprom = None

    def _read_eeprom(self):
        self._require_open()
        try:
            return self.device.eeRead()
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Failed to read EEPROM: {e}")

    def read_cbus_config(self) -> CbusConfig:
        """Load the CBUS pin functions stored in the EEPROM."""
        self.eeprom = self._read_eeprom()
        return CbusConfig(
            self.eeprom.Cbus0,
            self.eeprom.Cbus1,
            self.eeprom.Cbus2,
            self.eeprom.Cbus3,
        )

    def set_cbus_config(self, config: CbusConfig) -> bool:
        """
        Program CBUS pin functions into the EEPROM.

        The EEPROM is only rewritten when the stored functions differ.

        Returns:
            True if the EEPROM was reprogrammed
        """
        eeprom = self._read_eeprom()
        current = (eeprom.Cbus0, eeprom.Cbus1, eeprom.Cbus2, eeprom.Cbus3)
        changed = current != config.as_tuple()
        if changed:
            eeprom.Cbus0, eeprom.Cbus1, eeprom.Cbus2, eeprom.Cbus3 = config.as_tuple()
            try:
                self.device.eeProgram(eeprom)
            except ftd2xx.DeviceError as e:
                raise TransportError(f"Failed to write EEPROM: {e}")
            logger.info(f"CBUS configuration written: {config.as_tuple()}")
        self.eeprom = eeprom
        return changed

    def _require_cbus(self) -> None:
        self._require_open()
        if self.eeprom is None:
            raise TransportError("CBUS is not configured yet")

    def cbus_mask(self, bits: CbusBits) -> int:
        """
        Build the setBitMode() mask: upper nibble selects output pins,
        lower nibble holds their levels. Pins not in I/O mode are left alone.
        """
        self._require_cbus()
        functions = (
            self.eeprom.Cbus0,
            self.eeprom.Cbus1,
            self.eeprom.Cbus2,
            self.eeprom.Cbus3,
        )
        mask = 0
        for pin, (function, level) in enumerate(zip(functions, bits.as_tuple())):
            if function == CBUS_IOMODE:
                mask |= 0x10 << pin
                if level:
                    mask |= 0x01 << pin
        return mask

    def set_cbus_bits(self, bits: CbusBits) -> None:
        mask = self.cbus_mask(bits)
        try:
            self.device.setBitMode(mask, BITMODE_CBUS_BITBANG)
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Failed to set CBUS bits: {e}")
        logger.debug(f"CBUS mask 0x{mask:02X}")

    def get_cbus_bits(self) -> CbusBits:
        self._require_cbus()
        try:
            state = self.device.getBitMode()
        except ftd2xx.DeviceError as e:
            raise TransportError(f"Failed to read CBUS bits: {e}")
        return CbusBits(
            cbus0=bool(state & 0x01),
            cbus1=bool(state & 0x02),
            cbus2=bool(state & 0x04),
            cbus3=bool(state & 0x08),
        )

"""Tests for the FTDI D2XX transport using a fake ftd2xx module."""

from types import SimpleNamespace

import pytest

from stm32_usart_flasher.protocol import ftdi_transport
from stm32_usart_flasher.protocol.ftdi_transport import (
    BITMODE_CBUS_BITBANG,
    CBUS_IOMODE,
    CBUS_PWRON,
    CBUS_TXDEN,
    CbusBits,
    CbusConfig,
    Ft232rTransport,
    FtdiTransport,
)
from stm32_usart_flasher.protocol.transport import (
    ShortReadError,
    ShortWriteError,
    TransportCloseError,
    TransportError,
)


class DeviceError(Exception):
    pass


DEFINES = SimpleNamespace(
    BITS_8=8,
    STOP_BITS_1=0,
    STOP_BITS_2=2,
    PARITY_NONE=0,
    PARITY_ODD=1,
    PARITY_EVEN=2,
    PURGE_RX=1,
    PURGE_TX=2,
)


class FakeDevice:
    def __init__(self, com: int, serial_number: bytes = b""):
        self.com = com
        self.serial_number = serial_number
        self.calls = []
        self.incoming = bytearray()
        self.closed = False
        self.eeprom = SimpleNamespace(Cbus0=0x03, Cbus1=0x02, Cbus2=0x00, Cbus3=0x01)
        self.programmed = []
        self.bitmode = 0
        self.fail_reset = False

    def getComPortNumber(self):
        return self.com

    def __getattr__(self, name):
        # setBaudRate, setTimeouts, setRts, clrDtr, ...
        def record(*args):
            self.calls.append((name, args))
        return record

    def purge(self, mask):
        self.calls.append(("purge", (mask,)))

    def write(self, data):
        self.calls.append(("write", (data,)))
        return len(data)

    def read(self, size):
        data = bytes(self.incoming[:size])
        del self.incoming[:size]
        return data

    def resetPort(self):
        if self.fail_reset:
            raise DeviceError("reset failed")
        self.calls.append(("resetPort", ()))

    def close(self):
        self.closed = True

    def eeRead(self):
        return SimpleNamespace(**vars(self.eeprom))

    def eeProgram(self, eeprom):
        self.programmed.append(eeprom)
        self.eeprom = eeprom

    def setBitMode(self, mask, mode):
        self.calls.append(("setBitMode", (mask, mode)))
        self.bitmode = mask & 0x0F

    def getBitMode(self):
        return self.bitmode


@pytest.fixture
def devices(monkeypatch):
    """Two attached FTDI devices on COM3 and COM7."""
    attached = [FakeDevice(3, b"A1"), FakeDevice(7, b"B2")]

    def open_by_index(index):
        attached[index].closed = False
        return attached[index]

    def open_by_serial(serial_number):
        for device in attached:
            if device.serial_number == serial_number:
                return device
        raise DeviceError("DEVICE_NOT_FOUND")

    fake = SimpleNamespace(
        DeviceError=DeviceError,
        defines=DEFINES,
        listDevices=lambda: [d.serial_number for d in attached],
        open=open_by_index,
        openEx=open_by_serial,
    )
    monkeypatch.setattr(ftdi_transport, "ftd2xx", fake)
    return attached


def names(device):
    return [name for name, _ in device.calls]


def test_opens_device_matching_com_port(devices) -> None:
    transport = FtdiTransport("COM7", baudrate=57600)
    transport.open()

    assert transport.device is devices[1]
    assert devices[0].closed
    assert ("setBaudRate", (57600,)) in devices[1].calls
    assert ("setDataCharacteristics", (8, 0, 2)) in devices[1].calls
    assert ("setTimeouts", (250, 250)) in devices[1].calls
    assert ("setLatencyTimer", (16,)) in devices[1].calls


def test_opens_by_serial_number(devices) -> None:
    transport = FtdiTransport(serial_number="A1", latency_ms=2)
    transport.open()

    assert transport.device is devices[0]
    assert ("setLatencyTimer", (2,)) in devices[0].calls


def test_missing_port_raises(devices) -> None:
    transport = FtdiTransport("COM9")

    with pytest.raises(TransportError, match="Could not find"):
        transport.open()
    assert not transport.is_open()


def test_driver_missing(monkeypatch) -> None:
    monkeypatch.setattr(ftdi_transport, "ftd2xx", None)

    with pytest.raises(TransportError, match="ftd2xx"):
        FtdiTransport("COM3").open()


def test_port_or_serial_number_required() -> None:
    with pytest.raises(ValueError):
        FtdiTransport()


def test_send_purges_then_writes(devices) -> None:
    transport = FtdiTransport("COM3")
    transport.open()
    devices[0].calls.clear()

    transport.send(b"\x7F")

    assert names(devices[0]) == ["purge", "purge", "write"]


def test_short_write(devices, monkeypatch) -> None:
    transport = FtdiTransport("COM3")
    transport.open()
    monkeypatch.setattr(devices[0], "write", lambda data: 0)

    with pytest.raises(ShortWriteError):
        transport.send(b"\x7F")


def test_receive_and_short_read(devices) -> None:
    transport = FtdiTransport("COM3")
    transport.open()
    devices[0].incoming.extend(b"\x79")

    assert transport.receive(1) == b"\x79"
    with pytest.raises(ShortReadError):
        transport.receive(1)


def test_modem_lines(devices) -> None:
    transport = FtdiTransport("COM3")
    transport.open()
    devices[0].calls.clear()

    transport.set_rts(True)
    transport.set_dtr(False)

    assert names(devices[0]) == ["setRts", "clrDtr"]


def test_modem_line_failure_becomes_transport_error(devices) -> None:
    transport = FtdiTransport("COM3")
    transport.open()

    def unplugged():
        raise DeviceError("DEVICE_NOT_OPENED")

    devices[0].setRts = unplugged
    devices[0].clrDtr = unplugged

    with pytest.raises(TransportError, match="RTS"):
        transport.set_rts(True)
    with pytest.raises(TransportError, match="DTR"):
        transport.set_dtr(False)


def test_close_purges_resets_and_releases(devices) -> None:
    transport = FtdiTransport("COM3")
    transport.open()
    devices[0].calls.clear()

    transport.close()

    assert names(devices[0]) == ["purge", "purge", "resetPort"]
    assert devices[0].closed
    assert not transport.is_open()


def test_close_failure(devices) -> None:
    transport = FtdiTransport("COM3")
    transport.open()
    devices[0].fail_reset = True

    with pytest.raises(TransportCloseError):
        transport.close()


class TestCbus:
    """FT232R CBUS configuration and bit-bang."""

    def test_config_unchanged_skips_eeprom_write(self, devices) -> None:
        transport = Ft232rTransport("COM3")
        transport.open()

        assert transport.set_cbus_config(CbusConfig()) is False
        assert devices[0].programmed == []

    def test_config_change_programs_eeprom(self, devices) -> None:
        transport = Ft232rTransport("COM3")
        transport.open()

        config = CbusConfig(CBUS_IOMODE, CBUS_IOMODE, CBUS_TXDEN, CBUS_PWRON)
        assert transport.set_cbus_config(config) is True
        assert devices[0].eeprom.Cbus0 == CBUS_IOMODE
        assert transport.read_cbus_config() == config

    def test_bits_require_config(self, devices) -> None:
        transport = Ft232rTransport("COM3")
        transport.open()

        with pytest.raises(TransportError, match="not configured"):
            transport.set_cbus_bits(CbusBits(cbus0=True))

    def test_mask_only_drives_io_pins(self, devices) -> None:
        transport = Ft232rTransport("COM3")
        transport.open()
        transport.set_cbus_config(CbusConfig(CBUS_IOMODE, CBUS_IOMODE, CBUS_TXDEN, CBUS_PWRON))

        mask = transport.cbus_mask(CbusBits(cbus0=True, cbus1=False, cbus2=True, cbus3=True))

        assert mask == 0x31

    def test_set_and_get_bits(self, devices) -> None:
        transport = Ft232rTransport("COM3")
        transport.open()
        transport.read_cbus_config()
        devices[0].eeprom.Cbus1 = CBUS_IOMODE
        transport.read_cbus_config()

        transport.set_cbus_bits(CbusBits(cbus1=True))

        assert ("setBitMode", (0x22, BITMODE_CBUS_BITBANG)) in devices[0].calls
        assert transport.get_cbus_bits() == CbusBits(cbus1=True)

    def test_close_forgets_config(self, devices) -> None:
        transport = Ft232rTransport("COM3")
        transport.open()
        transport.read_cbus_config()
        transport.close()

        assert transport.eeprom is None

"""Tests for the pyserial transport using a fake serial.Serial."""

import pytest
import serial

from stm32_usart_flasher.protocol import transport as transport_module
from stm32_usart_flasher.protocol.transport import (
    SerialTransport,
    ShortReadError,
    ShortWriteError,
    TransportCloseError,
    TransportError,
    TransportNotOpenError,
    open_serial,
)


class FakeSerial:
    """Stand-in for serial.Serial recording configuration and traffic."""

    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.is_open = True
        self.written = []
        self.incoming = bytearray()
        self.resets = 0
        self.rts = None
        self.dtr = None
        self.short_write = False
        self.fail_close = False
        FakeSerial.instances.append(self)

    def write(self, data):
        self.written.append(bytes(data))
        return len(data) - 1 if self.short_write else len(data)

    def read(self, size):
        data = bytes(self.incoming[:size])
        del self.incoming[:size]
        return data

    def reset_input_buffer(self):
        self.resets += 1

    def reset_output_buffer(self):
        self.resets += 1

    def close(self):
        if self.fail_close:
            raise serial.SerialException("device gone")
        self.is_open = False


@pytest.fixture
def fake_serial(monkeypatch):
    FakeSerial.instances = []
    monkeypatch.setattr(transport_module.serial, "Serial", FakeSerial)
    return FakeSerial


def test_open_uses_8e1_and_timeouts(fake_serial) -> None:
    """Default framing matches the bootloader: 8 data bits, even parity, 1 stop bit."""
    transport = SerialTransport("/dev/ttyUSB0")
    transport.open()

    kwargs = fake_serial.instances[0].kwargs
    assert kwargs["port"] == "/dev/ttyUSB0"
    assert kwargs["baudrate"] == 115200
    assert kwargs["bytesize"] == serial.EIGHTBITS
    assert kwargs["parity"] == serial.PARITY_EVEN
    assert kwargs["stopbits"] == serial.STOPBITS_ONE
    assert kwargs["timeout"] == 0.25
    assert kwargs["write_timeout"] == 0.25
    assert transport.is_open()


def test_open_failure_becomes_transport_error(monkeypatch) -> None:
    def boom(**kwargs):
        raise serial.SerialException("no such port")

    monkeypatch.setattr(transport_module.serial, "Serial", boom)
    transport = SerialTransport("/dev/missing")

    with pytest.raises(TransportError, match="Cannot open port"):
        transport.open()
    assert not transport.is_open()


def test_send_clears_buffers_then_writes(fake_serial) -> None:
    transport = open_serial("/dev/ttyUSB0")
    ser = fake_serial.instances[0]

    transport.send(b"\x7F")

    assert ser.written == [b"\x7F"]
    assert ser.resets == 2


def test_short_write_raises(fake_serial) -> None:
    transport = open_serial("/dev/ttyUSB0")
    fake_serial.instances[0].short_write = True

    with pytest.raises(ShortWriteError):
        transport.send(b"\x00\xFF")


def test_write_timeout_raises_short_write(fake_serial) -> None:
    transport = open_serial("/dev/ttyUSB0")
    ser = fake_serial.instances[0]

    def timeout(data):
        raise serial.SerialTimeoutException("write timeout")

    ser.write = timeout
    with pytest.raises(ShortWriteError):
        transport.send(b"\x00\xFF")


def test_receive_exact_length(fake_serial) -> None:
    transport = open_serial("/dev/ttyUSB0")
    fake_serial.instances[0].incoming.extend(b"\x79\x01\x02")

    assert transport.receive(3) == b"\x79\x01\x02"


def test_short_read_raises(fake_serial) -> None:
    """Fewer bytes than requested means the read timeout expired."""
    transport = open_serial("/dev/ttyUSB0")
    fake_serial.instances[0].incoming.extend(b"\x79")

    with pytest.raises(ShortReadError):
        transport.receive(2)


def test_operations_require_open_port() -> None:
    transport = SerialTransport("/dev/ttyUSB0")

    with pytest.raises(TransportNotOpenError):
        transport.send(b"\x7F")
    with pytest.raises(TransportNotOpenError):
        transport.receive(1)
    with pytest.raises(TransportNotOpenError):
        transport.set_rts(True)


def test_modem_lines(fake_serial) -> None:
    transport = open_serial("/dev/ttyUSB0")
    ser = fake_serial.instances[0]

    transport.set_rts(True)
    transport.set_dtr(False)

    assert ser.rts is True
    assert ser.dtr is False


def test_close_clears_buffers_and_releases(fake_serial) -> None:
    transport = open_serial("/dev/ttyUSB0")
    ser = fake_serial.instances[0]

    transport.close()

    assert ser.resets == 2
    assert not transport.is_open()
    transport.close()


def test_close_failure_raises_close_error(fake_serial) -> None:
    transport = open_serial("/dev/ttyUSB0")
    fake_serial.instances[0].fail_close = True

    with pytest.raises(TransportCloseError):
        transport.close()


def test_context_manager(fake_serial) -> None:
    with SerialTransport("/dev/ttyUSB0", baudrate=57600) as transport:
        assert transport.is_open()
    assert not transport.is_open()
    assert fake_serial.instances[0].kwargs["baudrate"] == 57600

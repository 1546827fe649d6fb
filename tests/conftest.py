"""Shared fixtures: a scripted transport and a simulated bootloader device."""

from typing import List, Optional

import pytest

from stm32_usart_flasher.models import DEFAULT_FLASH_BASE
from stm32_usart_flasher.protocol import (
    ACK,
    NACK,
    ShortReadError,
    Transport,
    TransportNotOpenError,
    USARTBootloader,
)

FLASH_BASE = DEFAULT_FLASH_BASE
FLASH_SIZE = 64 * 1024
PAGE_SIZE = 1024


class FakeTransport(Transport):
    """
    In-memory transport that replays scripted answers.

    Every send() is recorded in `sent`; receive() pops from `answers` and
    raises ShortReadError when the script runs dry, like a read timeout.
    """

    def __init__(self, answers: bytes = b"", opened: bool = True):
        self.answers = bytearray(answers)
        self.sent: List[bytes] = []
        self.opened = opened
        self.rts: List[bool] = []
        self.dtr: List[bool] = []
        self.close_calls = 0

    def script(self, *chunks) -> None:
        for chunk in chunks:
            if isinstance(chunk, int):
                self.answers.append(chunk)
            else:
                self.answers.extend(chunk)

    @property
    def sent_bytes(self) -> bytes:
        return b"".join(self.sent)

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.close_calls += 1
        self.opened = False

    def is_open(self) -> bool:
        return self.opened

    def clear_buffer(self) -> None:
        pass

    def send(self, data: bytes) -> None:
        if not self.opened:
            raise TransportNotOpenError("closed")
        self.sent.append(bytes(data))

    def receive(self, length: int) -> bytes:
        if not self.opened:
            raise TransportNotOpenError("closed")
        if len(self.answers) < length:
            got = bytes(self.answers)
            self.answers.clear()
            raise ShortReadError(f"Incomplete read: expected {length} bytes, got {len(got)}")
        data = bytes(self.answers[:length])
        del self.answers[:length]
        return data

    def set_rts(self, enable: bool) -> None:
        self.rts.append(enable)

    def set_dtr(self, enable: bool) -> None:
        self.dtr.append(enable)


class SimulatedDevice(FakeTransport):
    """
    Transport that behaves like an STM32 bootloader with 64 KiB of flash.

    Answers are generated from the frames the host sends, so whole
    erase/write/verify sequences can run against it.
    """

    def __init__(
        self,
        commands=(0x00, 0x01, 0x02, 0x11, 0x21, 0x31, 0x43, 0x63, 0x73, 0x82, 0x92),
        version: int = 0x22,
        product_id: int = 0x410,
        corrupt_reads: int = 0,
        stuck_address: Optional[int] = None,
    ):
        super().__init__()
        self.commands = tuple(commands)
        self.version = version
        self.product_id = product_id
        self.flash = bytearray(b"\x00" * FLASH_SIZE)
        self.corrupt_reads = corrupt_reads
        self.stuck_address = stuck_address
        self.synchronized = False
        self.state = "idle"
        self.command = None
        self.address = 0
        self.erased_pages: List[int] = []
        self.mass_erases: List[str] = []
        self.writes: List[tuple] = []
        self.go_address: Optional[int] = None

    def send(self, data: bytes) -> None:
        super().send(data)
        handler = getattr(self, f"_on_{self.state}")
        handler(bytes(data))

    def _reply(self, *chunks) -> None:
        self.script(*chunks)

    def _on_idle(self, data: bytes) -> None:
        if data == b"\x7F":
            self._reply(NACK if self.synchronized else ACK)
            self.synchronized = True
            return
        opcode = data[0]
        if len(data) != 2 or data[1] != opcode ^ 0xFF or opcode not in self.commands:
            self._reply(NACK)
            return
        self._reply(ACK)
        self.command = opcode
        if opcode == 0x00:
            self._reply(len(self.commands), self.version, bytes(self.commands), ACK)
        elif opcode == 0x01:
            self._reply(self.version, 0x00, 0x00, ACK)
        elif opcode == 0x02:
            self._reply(1, self.product_id >> 8, self.product_id & 0xFF, ACK)
        elif opcode in (0x11, 0x21, 0x31):
            self.state = "address"
        elif opcode == 0x43:
            self.state = "erase"
        elif opcode == 0x44:
            self.state = "extended_erase"

    def _offset(self, address: int) -> int:
        return address - FLASH_BASE

    def _on_address(self, data: bytes) -> None:
        checksum = data[0] ^ data[1] ^ data[2] ^ data[3]
        if len(data) != 5 or checksum != data[4]:
            self.state = "idle"
            self._reply(NACK)
            return
        self.address = int.from_bytes(data[:4], "big")
        self._reply(ACK)
        if self.command == 0x11:
            self.state = "read_length"
        elif self.command == 0x31:
            self.state = "write_data"
        else:
            self.go_address = self.address
            self.state = "idle"

    def _on_read_length(self, data: bytes) -> None:
        self.state = "idle"
        if data[1] != data[0] ^ 0xFF:
            self._reply(NACK)
            return
        size = data[0] + 1
        offset = self._offset(self.address)
        chunk = bytearray(self.flash[offset:offset + size])
        if self.corrupt_reads or self.address == self.stuck_address:
            chunk[0] ^= 0xFF
            self.corrupt_reads = max(0, self.corrupt_reads - 1)
        self._reply(ACK, bytes(chunk))

    def _on_write_data(self, data: bytes) -> None:
        self.state = "idle"
        size = data[0] + 1
        payload = data[1:1 + size]
        checksum = 0
        for byte in data[:-1]:
            checksum ^= byte
        if len(payload) != size or checksum != data[-1]:
            self._reply(NACK)
            return
        offset = self._offset(self.address)
        self.flash[offset:offset + size] = payload
        self.writes.append((self.address, size))
        self._reply(ACK)

    def _erase_page(self, page: int) -> None:
        start = page * PAGE_SIZE
        self.flash[start:start + PAGE_SIZE] = b"\xFF" * PAGE_SIZE
        self.erased_pages.append(page)

    def _on_erase(self, data: bytes) -> None:
        self.state = "idle"
        if data == b"\xFF\x00":
            self.flash[:] = b"\xFF" * FLASH_SIZE
            self.mass_erases.append("legacy")
        else:
            count = data[0] + 1
            for page in data[1:1 + count]:
                self._erase_page(page)
        self._reply(ACK)

    def _on_extended_erase(self, data: bytes) -> None:
        self.state = "idle"
        selector = (data[0] << 8) | data[1]
        if selector == 0xFFFF:
            self.flash[:] = b"\xFF" * FLASH_SIZE
            self.mass_erases.append("extended")
        self._reply(ACK)


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Open transport with an empty answer script."""
    return FakeTransport()


@pytest.fixture
def ready_loader(fake_transport) -> USARTBootloader:
    """Engine in the Ready state; the handshake bytes are cleared."""
    fake_transport.script(ACK)
    loader = USARTBootloader(fake_transport)
    loader.init()
    fake_transport.sent.clear()
    return loader


@pytest.fixture
def device() -> SimulatedDevice:
    return SimulatedDevice()


@pytest.fixture
def device_loader(device) -> USARTBootloader:
    """Ready engine wired to a SimulatedDevice."""
    loader = USARTBootloader(device)
    loader.init()
    return loader


@pytest.fixture
def closed_transport() -> FakeTransport:
    """Transport that has not been opened yet."""
    return FakeTransport(opened=False)


@pytest.fixture
def make_device():
    """Factory for devices with custom commands, product IDs or faults."""
    return SimulatedDevice

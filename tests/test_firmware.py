"""Tests for firmware image loading (Intel-HEX and raw binary)."""

import hashlib

import pytest

from stm32_usart_flasher.firmware import (
    FirmwareError,
    FirmwareImage,
    image_from_bin,
    load_firmware,
)
from stm32_usart_flasher.core.parsing import parse_address


def hex_record(record_type: int, address: int, data: bytes = b"") -> str:
    body = bytes([len(data), (address >> 8) & 0xFF, address & 0xFF, record_type]) + data
    return ":" + (body + bytes([(-sum(body)) & 0xFF])).hex().upper()


def write_hex(path, records) -> None:
    path.write_text("\n".join(records + [hex_record(0x01, 0)]) + "\n")


def test_hex_with_extended_linear_address(tmp_path) -> None:
    """Upper address from type-04 records gives absolute flash addresses; gaps are filled."""
    path = tmp_path / "app.hex"
    write_hex(path, [
        hex_record(0x04, 0, b"\x08\x00"),
        hex_record(0x00, 0x0000, b"\x01\x02\x03\x04"),
        hex_record(0x00, 0x0010, b"\xAA\xBB"),
    ])

    image = load_firmware(path)

    assert image.start_address == 0x08000000
    assert image.end_address == 0x08000012
    assert image.size == 0x12
    assert image.data[:4] == b"\x01\x02\x03\x04"
    assert image.data[4:0x10] == b"\xFF" * 12
    assert image.data[0x10:] == b"\xAA\xBB"
    assert image.source == str(path)


def test_hex_custom_fill(tmp_path) -> None:
    path = tmp_path / "app.ihex"
    write_hex(path, [
        hex_record(0x00, 0x0100, b"\x11"),
        hex_record(0x00, 0x0103, b"\x22"),
    ])

    image = load_firmware(path, fill=0x00)

    assert image.start_address == 0x0100
    assert image.data == b"\x11\x00\x00\x22"


def test_hex_without_data_rejected(tmp_path) -> None:
    path = tmp_path / "empty.hex"
    write_hex(path, [])

    with pytest.raises(FirmwareError, match="no data"):
        load_firmware(path)


def test_malformed_hex_rejected(tmp_path) -> None:
    path = tmp_path / "broken.hex"
    path.write_text(":10000000ZZ\n")

    with pytest.raises(FirmwareError):
        load_firmware(path)


def test_bin_placed_at_base_address(tmp_path) -> None:
    path = tmp_path / "app.bin"
    path.write_bytes(b"\x00\x01\x02")

    image = load_firmware(path, base_address=0x08004000)

    assert image.start_address == 0x08004000
    assert image.data == b"\x00\x01\x02"


def test_bin_blank_base_address_uses_flash_start(tmp_path) -> None:
    """A blank base field parses to None and must not reach the formatter."""
    path = tmp_path / "app.bin"
    path.write_bytes(b"\x00\x01")

    image = load_firmware(path, base_address=parse_address(""))

    assert image.start_address == 0x08000000


def test_empty_bin_rejected(tmp_path) -> None:
    path = tmp_path / "empty.bin"
    path.write_bytes(b"")

    with pytest.raises(FirmwareError):
        image_from_bin(path)


def test_missing_file(tmp_path) -> None:
    with pytest.raises(FirmwareError, match="not found"):
        load_firmware(tmp_path / "nope.hex")


def test_firmware_error_is_value_error() -> None:
    assert issubclass(FirmwareError, ValueError)


def test_blocks_split_with_short_tail() -> None:
    image = FirmwareImage(data=bytes(600), start_address=0x08000000)

    blocks = list(image.blocks(256))

    assert [addr for addr, _ in blocks] == [0x08000000, 0x08000100, 0x08000200]
    assert [len(chunk) for _, chunk in blocks] == [256, 256, 88]
    assert image.block_count(256) == 3


def test_blocks_reject_zero_size() -> None:
    image = FirmwareImage(data=b"\x00", start_address=0)
    with pytest.raises(ValueError):
        list(image.blocks(0))


def test_sha256() -> None:
    image = FirmwareImage(data=b"firmware", start_address=0)
    assert image.sha256 == hashlib.sha256(b"firmware").hexdigest()

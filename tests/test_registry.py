"""Tests for the product-ID registry."""

import pytest

from stm32_usart_flasher.models import (
    DEFAULT_PAGE_SIZE,
    describe_product_id,
    get_target,
    is_sector_organised,
    list_targets,
)


def test_known_medium_density_part() -> None:
    target = get_target(0x410)
    assert target is not None
    assert target.name == "STM32F10x Medium-density"
    assert target.page_size == 1024


def test_high_density_page_size() -> None:
    assert get_target(0x414).page_size == 2048


def test_unknown_part() -> None:
    assert get_target(0x999) is None
    assert describe_product_id(0x999) == "Unknown (0x999)"


def test_sector_parts_are_named_but_have_no_page_geometry() -> None:
    assert get_target(0x413) is None
    assert is_sector_organised(0x413)
    assert "STM32F405" in describe_product_id(0x413)


def test_page_of() -> None:
    target = get_target(0x414)
    assert target.page_of(0x08000000) == 0
    assert target.page_of(0x080007FF) == 0
    assert target.page_of(0x08000800) == 1
    with pytest.raises(ValueError):
        target.page_of(0x07FFFFFF)


def test_list_targets_sorted_and_unique() -> None:
    ids = [t.product_id for t in list_targets()]
    assert ids == sorted(set(ids))
    assert DEFAULT_PAGE_SIZE == 1024

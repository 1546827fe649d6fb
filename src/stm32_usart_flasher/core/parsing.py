"""
Centralized parsing helpers for addresses, sizes and erase selectors.

Both CLI and Streamlit must import these helpers rather than re-implement.
"""

from typing import Optional

from stm32_usart_flasher.protocol.frames import (
    ERASE_ALL_PAGES,
    EXTENDED_ERASE_MASS,
    EXTENDED_ERASE_BANK1,
    EXTENDED_ERASE_BANK2,
)

ERASE_SELECTOR_ALIASES = {
    "all": ERASE_ALL_PAGES,
    "global": ERASE_ALL_PAGES,
    "mass": EXTENDED_ERASE_MASS,
    "bank1": EXTENDED_ERASE_BANK1,
    "bank2": EXTENDED_ERASE_BANK2,
}

_SIZE_SUFFIXES = {"k": 1024, "kb": 1024, "kib": 1024, "m": 1024 * 1024, "mb": 1024 * 1024}


def parse_int(value: Optional[str], label: str = "value") -> Optional[int]:
    """
    Parse an integer from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or blank for "not given"

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            result = int(value, 16)
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid {label} '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )
    if result < 0:
        raise ValueError(f"Invalid {label} '{value}'. Must not be negative.")
    return result


def parse_address(value: Optional[str]) -> Optional[int]:
    """Parse a 32-bit flash address."""
    address = parse_int(value, "address")
    if address is not None and address > 0xFFFFFFFF:
        raise ValueError(f"Address '{value}' exceeds 32 bits.")
    return address


def parse_size(value: Optional[str]) -> Optional[int]:
    """
    Parse a byte count; accepts the forms of parse_int plus K/M suffixes.

    Examples: "256", "0x100", "64K", "1M"
    """
    if value is None:
        return None
    text = value.strip().lower()
    for suffix, factor in sorted(_SIZE_SUFFIXES.items(), key=lambda kv: -len(kv[0])):
        if text.endswith(suffix) and text[:-len(suffix)].strip().isdigit():
            return int(text[:-len(suffix)]) * factor
    return parse_int(value, "size")


def parse_erase_selector(value: str, extended: bool = False) -> int:
    """
    Parse an erase selector.

    Legacy erase accepts a page index (0..254) or "all".
    Extended erase accepts "mass", "bank1", "bank2" or a page count.

    Raises:
        ValueError: If the selector does not fit the chosen erase command.
    """
    text = value.strip().lower()
    if text in ERASE_SELECTOR_ALIASES:
        selector = ERASE_SELECTOR_ALIASES[text]
        if extended and selector == ERASE_ALL_PAGES:
            selector = EXTENDED_ERASE_MASS
        if not extended and selector != ERASE_ALL_PAGES:
            raise ValueError(f"'{value}' requires extended erase (--extended).")
        return selector

    selector = parse_int(value, "erase selector")
    if selector is None:
        raise ValueError("Erase selector is required.")
    if extended:
        if not 1 <= selector <= 0xFFFF:
            raise ValueError(f"Page count '{value}' must be 1 to 0xFFFF.")
    elif selector > ERASE_ALL_PAGES:
        raise ValueError(f"Page index '{value}' must be 0 to 254, or 'all'.")
    return selector

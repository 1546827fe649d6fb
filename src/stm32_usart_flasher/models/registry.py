"""
Target registry for STM32 parts.

Maps the product ID returned by Get ID to a chip description and the flash
geometry the erase step needs.

Usage:
    from stm32_usart_flasher.models import get_target, describe_product_id

    target = get_target(0x410)
    target.page_size          # 1024
    describe_product_id(0x999)  # "Unknown (0x999)"
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

DEFAULT_FLASH_BASE = 0x08000000
DEFAULT_PAGE_SIZE = 1024


@dataclass(frozen=True)
class TargetConfig:
    """Flash geometry for one product ID."""
    product_id: int
    name: str
    page_size: int = DEFAULT_PAGE_SIZE
    flash_base: int = DEFAULT_FLASH_BASE

    def page_of(self, address: int) -> int:
        """Index of the page holding address."""
        if address < self.flash_base:
            raise ValueError(
                f"Address 0x{address:08X} is below flash base 0x{self.flash_base:08X}"
            )
        return (address - self.flash_base) // self.page_size


# Product IDs from ST AN2606 "Bootloader device-dependent parameters".
# Sector-organised parts (F2/F4/F7) erase by sector index, so no page size
# is listed for them.
_TARGETS: Dict[int, TargetConfig] = {
    t.product_id: t
    for t in [
        TargetConfig(0x412, "STM32F10x Low-density", 1024),
        TargetConfig(0x410, "STM32F10x Medium-density", 1024),
        TargetConfig(0x420, "STM32F10x Medium-density value line", 1024),
        TargetConfig(0x414, "STM32F10x High-density", 2048),
        TargetConfig(0x428, "STM32F10x High-density value line", 2048),
        TargetConfig(0x418, "STM32F105/107 Connectivity line", 2048),
        TargetConfig(0x430, "STM32F10x XL-density", 2048),
        TargetConfig(0x444, "STM32F03xx4/6", 1024),
        TargetConfig(0x440, "STM32F030x8", 1024),
        TargetConfig(0x445, "STM32F070x6", 1024),
        TargetConfig(0x448, "STM32F070xB", 2048),
        TargetConfig(0x442, "STM32F030xC", 2048),
        TargetConfig(0x422, "STM32F302xB(C)/303xB(C)/358xx", 2048),
        TargetConfig(0x432, "STM32F373xx/378xx", 2048),
        TargetConfig(0x438, "STM32F303x4(6/8)/334xx/328xx", 2048),
        TargetConfig(0x439, "STM32F301xx/302x4(6/8)/318xx", 2048),
        TargetConfig(0x446, "STM32F302xD(E)/303xD(E)/398xx", 2048),
        TargetConfig(0x460, "STM32G0x1", 2048),
        TargetConfig(0x435, "STM32L4xx", 2048),
        TargetConfig(0x416, "STM32L1xxx6(8/B) Medium-density", 256),
        TargetConfig(0x417, "STM32L05xxx/06xxx", 128),
        TargetConfig(0x457, "STM32L01xxx/02xxx", 128),
    ]
}

_SECTOR_PARTS: Dict[int, str] = {
    0x411: "STM32F2xxx",
    0x413: "STM32F405xx/07xx and STM32F415xx/17xx",
    0x419: "STM32F42xxx and STM32F43xxx",
    0x433: "STM32F4xxD/E",
    0x449: "STM32F74xxx/75xxx",
    0x451: "STM32F76xxx/77xxx",
}


def get_target(product_id: int) -> Optional[TargetConfig]:
    """Return the page-organised target for product_id, or None."""
    return _TARGETS.get(product_id)


def describe_product_id(product_id: int) -> str:
    """Human-readable chip name for product_id."""
    target = _TARGETS.get(product_id)
    if target:
        return target.name
    if product_id in _SECTOR_PARTS:
        return _SECTOR_PARTS[product_id]
    return f"Unknown (0x{product_id:03X})"


def is_sector_organised(product_id: int) -> bool:
    return product_id in _SECTOR_PARTS


def list_targets() -> List[TargetConfig]:
    return sorted(_TARGETS.values(), key=lambda t: t.product_id)

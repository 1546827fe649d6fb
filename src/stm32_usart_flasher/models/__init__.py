"""
Target registry for STM32 parts.

Provides product-id lookup and flash geometry for the erase step.
"""

from .registry import (
    TargetConfig,
    DEFAULT_FLASH_BASE,
    DEFAULT_PAGE_SIZE,
    get_target,
    describe_product_id,
    is_sector_organised,
    list_targets,
)

__all__ = [
    "TargetConfig",
    "DEFAULT_FLASH_BASE",
    "DEFAULT_PAGE_SIZE",
    "get_target",
    "describe_product_id",
    "is_sector_organised",
    "list_targets",
]

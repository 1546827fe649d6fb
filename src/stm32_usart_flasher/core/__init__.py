"""
Core module for STM32 USART Flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Address, size and erase selector parsing (parsing.py)
- Result objects (results.py)
- Erase/write/verify workflows (actions.py)
- Standardized warnings/messages (messages.py)

Both CLI and Streamlit UI should call into this module rather than
implementing their own logic.
"""

from .safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    require_write_permission,
    WritePermissionError,
    create_cli_safety_context,
    create_streamlit_safety_context,
)
from .parsing import parse_int, parse_address, parse_size, parse_erase_selector
from .results import OperationResult, format_region
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    classify_message,
    result_to_warnings,
)
from .actions import (
    create_transport,
    enter_bootloader,
    exit_bootloader,
    open_bootloader,
    read_device_info,
    pages_for_image,
    erase_pages,
    mass_erase,
    erase_image_region,
    write_image,
    verify_image,
    flash_image,
    read_memory_region,
    dump_memory,
    erase_flash,
    start_application,
)

__all__ = [
    # Safety
    "CONFIRMATION_TOKEN",
    "SafetyContext",
    "require_write_permission",
    "WritePermissionError",
    "create_cli_safety_context",
    "create_streamlit_safety_context",
    # Parsing
    "parse_int",
    "parse_address",
    "parse_size",
    "parse_erase_selector",
    # Results
    "OperationResult",
    "format_region",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "classify_message",
    "result_to_warnings",
    # Actions
    "create_transport",
    "enter_bootloader",
    "exit_bootloader",
    "open_bootloader",
    "read_device_info",
    "pages_for_image",
    "erase_pages",
    "mass_erase",
    "erase_image_region",
    "write_image",
    "verify_image",
    "flash_image",
    "read_memory_region",
    "dump_memory",
    "erase_flash",
    "start_application",
]

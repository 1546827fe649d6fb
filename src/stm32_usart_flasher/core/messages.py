"""
Standardized warning and message system.

Provides structured warning items with stable codes that both CLI and
Streamlit can display consistently.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device warnings
    W_TARGET_UNKNOWN = "W_TARGET_UNKNOWN"
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_COMMAND_UNSUPPORTED = "W_COMMAND_UNSUPPORTED"

    # Safety warnings
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"
    W_WRITE_DISABLED = "W_WRITE_DISABLED"

    # Connection warnings
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_HANDSHAKE_FAILED = "W_HANDSHAKE_FAILED"
    W_NACK = "W_NACK"

    # Data warnings
    W_DATA_PADDED = "W_DATA_PADDED"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_TARGET_UNKNOWN:
        "Product ID not in the registry. Pass --page-size explicitly.",
    WarningCode.W_DEVICE_NOT_FOUND:
        "Check USB connection, try 'ports' command to list available ports.",
    WarningCode.W_COMMAND_UNSUPPORTED:
        "The bootloader does not list this command. Check 'info' output.",
    WarningCode.W_VERIFY_MISMATCH:
        "Data read back does not match what was written. Check connection stability.",
    WarningCode.W_WRITE_DISABLED:
        "Add --write flag (CLI) or enable write mode (UI) to perform actual writes.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check BOOT0 level and wiring. Try a lower baud rate or use --reset.",
    WarningCode.W_HANDSHAKE_FAILED:
        "Device may not be in bootloader mode. Hold BOOT0 high and reset the MCU.",
    WarningCode.W_NACK:
        "The device refused the command. Flash may be read- or write-protected.",
    WarningCode.W_DATA_PADDED:
        "The last block was padded to a 4-byte boundary.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def classify_message(message: str) -> WarningCode:
    """Map a plain warning/error string to a stable code."""
    msg = message.lower()
    if "verify" in msg or "mismatch" in msg:
        return WarningCode.W_VERIFY_MISMATCH
    if "initialize" in msg or "handshake" in msg:
        return WarningCode.W_HANDSHAKE_FAILED
    if "timeout" in msg or "incomplete read" in msg:
        return WarningCode.W_SERIAL_TIMEOUT
    if "nack" in msg:
        return WarningCode.W_NACK
    if "cannot open port" in msg or "could not find" in msg:
        return WarningCode.W_DEVICE_NOT_FOUND
    if "unknown" in msg and ("target" in msg or "product" in msg):
        return WarningCode.W_TARGET_UNKNOWN
    if "not supported" in msg:
        return WarningCode.W_COMMAND_UNSUPPORTED
    if "padded" in msg:
        return WarningCode.W_DATA_PADDED
    if "permission" in msg or "--write" in msg:
        return WarningCode.W_WRITE_DISABLED
    return WarningCode.W_UNKNOWN


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert Result object's warnings and errors to WarningItem list.

    Args:
        result: OperationResult from core operations

    Returns:
        List of WarningItem objects
    """
    items = [WarningItem.warn(classify_message(w), w) for w in result.warnings]
    items.extend(WarningItem.error(classify_message(e), e) for e in result.errors)
    return items

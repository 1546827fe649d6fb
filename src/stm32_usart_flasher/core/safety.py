"""
Safety context and write gating for flash-modifying operations.

Centralizes the confirmation rules so both CLI and Streamlit enforce
identical checks before erase or write.
"""

import sys
from dataclasses import dataclass
from typing import Optional, Callable

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (target, region, etc.)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Safety context for flash-modifying operations.

    Attributes:
        write_enabled: Whether --write was given (CLI) or risk acknowledged (UI)
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the UI can prompt for confirmation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True

    # CLI sets these to prompt functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def to_details_dict(self, operation: str, target_region: str, bytes_length: int) -> dict:
        return {
            "operation": operation,
            "target_region": target_region,
            "bytes_length": bytes_length,
        }


def require_write_permission(
    ctx: SafetyContext,
    operation: str,
    target_region: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. Write must be explicitly enabled
    2. If a confirmation token is present it must match exactly
    3. Otherwise an interactive prompt must return the token

    Raises:
        WritePermissionError: If the operation is not permitted
    """
    details = ctx.to_details_dict(operation, target_region, bytes_length)

    if not ctx.write_enabled:
        raise WritePermissionError(
            f"{operation} requires explicit permission. "
            "CLI: use --write flag. "
            "UI: acknowledge risk checkbox.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires confirmation_token.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set.",
            details=details,
        )

    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError(
            "Confirmation failed. Write aborted by user.",
            details=details,
        )


def create_cli_safety_context(
    write_flag: bool,
    confirmation_token: Optional[str] = None,
    prompt_confirmation: Optional[Callable[[str], str]] = None,
    show_details: Optional[Callable[[dict], None]] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    Prompts are only used when no token was given and stdin is a TTY.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )


def create_streamlit_safety_context(risk_acknowledged: bool) -> SafetyContext:
    """
    Create a SafetyContext configured for Streamlit usage.

    Streamlit confirms with a checkbox instead of a prompt.
    """
    return SafetyContext(
        write_enabled=risk_acknowledged,
        confirmation_token=CONFIRMATION_TOKEN if risk_acknowledged else None,
        interactive=False,
    )

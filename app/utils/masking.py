"""Helpers for masking payer data before it reaches the logs."""
from __future__ import annotations

from typing import Any


def mask_phone(value: Any) -> str:
    """Keep only the last three digits of an MSISDN."""

    text = "" if value is None else str(value)
    digits = "".join(ch for ch in text if ch.isdigit())
    if not digits:
        return "***"
    tail = digits[-3:] if len(digits) >= 3 else digits
    return f"***{tail}"


def mask_reference(value: Any) -> str | None:
    """Mask provider references (receipt numbers, request ids) down to their last four chars."""

    if value is None:
        return None
    text = str(value)
    if len(text) <= 6:
        return "***"
    return f"***{text[-4:]}"


__all__ = ["mask_phone", "mask_reference"]

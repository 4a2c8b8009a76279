"""Display helpers shared by the CLI, exports and invoices."""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Optional, Union

INVOICE_PREFIX = "Sassle_Invoice"
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_usd(amount: Optional[float]) -> str:
    """``1234.5`` → ``$1,234.50``."""
    value = amount or 0.0
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def _whole_seconds(seconds: Optional[float]) -> int:
    return max(0, math.floor(seconds or 0))


def format_seconds(seconds: Optional[float]) -> str:
    """``225`` → ``03:45`` (hours roll into minutes)."""
    minutes, secs = divmod(_whole_seconds(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def format_duration_short(seconds: Optional[float]) -> str:
    """``225`` → ``3m 45s``, ``45`` → ``45s``, ``180`` → ``3m``."""
    minutes, secs = divmod(_whole_seconds(seconds), 60)
    if minutes == 0:
        return f"{secs}s"
    if secs == 0:
        return f"{minutes}m"
    return f"{minutes}m {secs}s"


def format_percent(fraction: Optional[float], digits: int = 1) -> str:
    return f"{(fraction or 0.0) * 100:.{digits}f}%"


def mask_key(key: str) -> str:
    """``sk-or-v1-abcdef1234`` → ``sk-or-…1234``; short keys are fully hidden."""
    trimmed = (key or "").strip()
    if len(trimmed) <= 10:
        return "•" * len(trimmed)
    return f"{trimmed[:6]}…{trimmed[-4:]}"


def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def invoice_file_name(counter: int, issued: Union[date, datetime], prefix: str = INVOICE_PREFIX) -> str:
    """``Sassle_Invoice_001_5th_Jan_2026.pdf``."""
    return f"{prefix}_{counter:03d}_{ordinal(issued.day)}_{_MONTHS[issued.month - 1]}_{issued.year}.pdf"

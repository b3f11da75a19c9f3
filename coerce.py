"""Numeric coercion shared by the snapshot models and the transformer.

Policy: a value that is absent, non-numeric, NaN or infinite is treated as
missing. The transformer turns missing into zero for every field except the
ones a row cannot exist without (expiration, strike, representative price).
"""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Any


def float_or_none(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except Exception:
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


def zero_if_missing(value: Any) -> float:
    out = float_or_none(value)
    return 0.0 if out is None else out


def int_or_none(value: Any) -> int | None:
    out = float_or_none(value)
    if out is None:
        return None
    return int(out)


def int_or_zero(value: Any) -> int:
    out = int_or_none(value)
    return 0 if out is None else out


def date_or_none(value: Any) -> date | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip()[:10]).date()
        except ValueError:
            return None
    return None


def round_half_up(value: float, digits: int = 2) -> float:
    """Round like JavaScript's Math.round on a scaled value (ties go up)."""
    scale = 10**digits
    return math.floor(value * scale + 0.5) / scale

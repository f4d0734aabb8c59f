# wxconsensus/utils/numeric.py
from __future__ import annotations

import math
from typing import Any, Optional


def finite_float(value: Any) -> Optional[float]:
    """
    Return value as a float when it is a finite real number, else None.
    Booleans and numeric strings are rejected; upstream arrays carry real numbers or nulls.
    """
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, (int, float)):
        return None
    f = float(value)
    if not math.isfinite(f):
        return None
    return f


def scale(value: Optional[float], divisor: float) -> Optional[float]:
    """
    Divide while passing None through untouched.
    """
    if value is None:
        return None
    return value / divisor


__all__ = ["finite_float", "scale"]

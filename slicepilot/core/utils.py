from __future__ import annotations

import math
from typing import Any, Sequence


def safe_str(x: Any) -> str:
    try:
        return str(x)
    except Exception:
        return ""


def opt_float(x: Any) -> float | None:
    """Coerce to a finite float or None."""
    if x is None or isinstance(x, bool):
        return None
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def opt_int(x: Any) -> int | None:
    v = opt_float(x)
    if v is None:
        return None
    return int(round_half_up(v))


def round_half_up(x: float) -> int:
    # Python's round() is banker's rounding; index math needs .5 -> up.
    return int(math.floor(x + 0.5))


def float_list(value: Any, count: int) -> list[float] | None:
    """Parse a DICOM multi-value (sequence or backslash string) into `count` floats."""
    if value is None:
        return None
    if isinstance(value, str):
        parts: Sequence[Any] = value.split("\\")
    else:
        try:
            parts = list(value)
        except TypeError:
            return None
    if len(parts) < count:
        return None
    out: list[float] = []
    for p in parts[:count]:
        v = opt_float(p)
        if v is None:
            return None
        out.append(v)
    return out


def fmt_kb(n_bytes: int) -> str:
    return f"{n_bytes / 1024:.0f}KB"

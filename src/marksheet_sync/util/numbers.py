from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union


_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")


def parse_number(value: Union[str, int, float, None]) -> Optional[float]:
    """
    Parse a table cell into a number, or `None` when it does not hold one.

    - "12.5 pts" -> 12.5
    - "" / "N/A" / None -> None
    - 17 -> 17 (numbers pass through unchanged)

    Everything except digits, "." and "-" is stripped before parsing. Like a lenient float parse,
    the longest leading numeric prefix wins ("12.5.3" -> 12.5).
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if value is None:
        return None

    s = str(value).strip()
    if not s:
        return None

    cleaned = _NON_NUMERIC_RE.sub("", s)
    m = re.match(r"-?(?:\d+\.?\d*|\.\d+)", cleaned)
    if not m:
        return None
    try:
        return float(m.group(0))
    except ValueError:
        return None


def round_half_up(value: Union[int, float]) -> int:
    """
    Round to the nearest integer, halves away from zero (2.5 -> 3, 74.5 -> 75).
    """
    try:
        dec = Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"round_half_up: not a finite number: {value!r}") from e
    return int(dec)

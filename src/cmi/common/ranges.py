from __future__ import annotations

import re
from typing import Any, Optional, Tuple

_NUM = r"-?\d+(?:\.\d+)?"
_TWO_SIDED_RE = re.compile(rf"^\s*({_NUM})\s*-\s*({_NUM})\s*(.*?)\s*$")
_LOW_ONLY_RE = re.compile(rf"^\s*>=\s*({_NUM})\s*(.*?)\s*$")
_HIGH_ONLY_RE = re.compile(rf"^\s*<=\s*({_NUM})\s*(.*?)\s*$")

Bounds = Tuple[Optional[float], Optional[float], str]


def format_number(value: Any) -> str:
    # 5.0 -> "5", 6.9 -> "6.9"
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def format_reference_range(low: Any = None, high: Any = None, unit: Optional[str] = None) -> str:
    lo = format_number(low)
    hi = format_number(high)
    u = (unit or "").strip()
    if lo and hi:
        text = f"{lo}-{hi} {u}"
    elif lo:
        text = f">= {lo} {u}"
    elif hi:
        text = f"<= {hi} {u}"
    else:
        return ""
    return text.strip()


def parse_reference_range(text: Optional[str]) -> Optional[Bounds]:
    """Inverse of format_reference_range; None when the text is not in one of its shapes."""
    if not text:
        return None
    m = _TWO_SIDED_RE.match(text)
    if m:
        return float(m.group(1)), float(m.group(2)), m.group(3)
    m = _LOW_ONLY_RE.match(text)
    if m:
        return float(m.group(1)), None, m.group(2)
    m = _HIGH_ONLY_RE.match(text)
    if m:
        return None, float(m.group(1)), m.group(2)
    return None

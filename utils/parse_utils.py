from __future__ import annotations

import math
import re
from typing import Any, Optional


def to_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    try:
        num = float(str(value).replace(",", "").strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def normalize_code(code: Any) -> str:
    """只保留数字，不足 6 位左侧补 0；例如 '  1632' -> '001632'"""
    digits = "".join(re.findall(r"\d+", str(code or "")))
    if not digits:
        return ""
    return digits.zfill(6)


def round2(x: float) -> float:
    return round(float(x), 2)


def round4(x: float) -> float:
    return round(float(x), 4)

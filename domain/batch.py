from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import constants
from domain.errors import InvalidTradeInput
from utils.parse_utils import to_number


def timing_from_time(time_str: Optional[str]) -> str:
    """15:00 及之后算 15:00 后下单；无时间默认 15:00 前"""
    if not time_str:
        return constants.TIMING_BEFORE
    try:
        hh, _ = str(time_str).strip().split(":")[:2]
        h = int(hh)
    except ValueError:
        return constants.TIMING_BEFORE
    return constants.TIMING_AFTER if h >= 15 else constants.TIMING_BEFORE


@dataclass(frozen=True)
class BatchTradeInput:
    """批量导入的一条交易（由截图识别等上游产出，这里只校验形状）"""
    type: str
    date: str
    amount: Optional[float] = None
    shares: Optional[float] = None
    time: Optional[str] = None
    timing: str = constants.TIMING_BEFORE

    @property
    def sort_key(self) -> str:
        return f"{self.date or ''} {self.time or ''}".strip()

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BatchTradeInput":
        if not isinstance(data, dict):
            raise InvalidTradeInput("batch item must be an object")

        op_type = str(data.get("type", "")).strip().lower()
        if op_type not in constants.TRADE_TYPES:
            raise InvalidTradeInput(f"batch item type must be add/reduce, got {op_type!r}")

        amount = to_number(data.get("amount"))
        shares = to_number(data.get("shares"))
        if amount is None and shares is None:
            raise InvalidTradeInput("batch item needs amount or shares")

        time_str = str(data.get("time") or "").strip() or None
        timing = str(data.get("timing") or "").strip().lower()
        if not timing:
            timing = timing_from_time(time_str)
        if timing not in constants.TIMINGS:
            raise InvalidTradeInput(f"batch item timing must be before/after, got {timing!r}")

        return BatchTradeInput(
            type=op_type,
            date=str(data.get("date") or "").strip()[:10],
            amount=amount,
            shares=shares,
            time=time_str,
            timing=timing,
        )

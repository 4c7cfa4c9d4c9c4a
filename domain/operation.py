from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional

from config import constants
from domain.holding import Holding
from utils.parse_utils import normalize_code, to_number
from utils.time_utils import parse_timestamp


@dataclass(frozen=True)
class Operation:
    """
    持仓操作流水（不可变）
    - prev/next 是完整的持仓快照（不是增量），撤销时直接恢复 prev
    - 只允许两种“修改”：status 翻转、净值回填；都通过 replace 生成新对象
    """
    id: str
    code: str
    status: str
    created_at: datetime
    apply_at: datetime
    date: str                        # 下单日 YYYY-MM-DD
    prev: Optional[Holding] = None
    next: Optional[Holding] = None

    type: ClassVar[str] = ""

    @property
    def is_confirmed(self) -> bool:
        return self.status == constants.STATUS_CONFIRMED

    def confirmed(self) -> "Operation":
        return replace(self, status=constants.STATUS_CONFIRMED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "type": self.type,
            "status": self.status,
            "created_at": self.created_at.isoformat(timespec="microseconds"),
            "apply_at": self.apply_at.isoformat(timespec="microseconds"),
            "date": self.date,
            "prev": self.prev.to_dict() if self.prev else None,
            "next": self.next.to_dict() if self.next else None,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Operation":
        if not data:
            raise ValueError("Operation.from_dict: empty data")
        op_type = str(data.get("type", "")).strip()
        cls = _OPERATION_TYPES.get(op_type)
        if cls is None:
            raise ValueError(f"Operation.from_dict: unknown type {op_type!r}")
        return cls._from_dict(data)

    @classmethod
    def _base_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        created_at = parse_timestamp(data.get("created_at", data.get("createdAt")))
        apply_at = parse_timestamp(data.get("apply_at", data.get("applyAt")), default=created_at)
        status = str(data.get("status") or constants.STATUS_PENDING)
        if status not in (constants.STATUS_PENDING, constants.STATUS_CONFIRMED):
            status = constants.STATUS_PENDING
        prev = data.get("prev")
        nxt = data.get("next")
        return {
            "id": str(data.get("id", "")).strip(),
            "code": normalize_code(data.get("code", "")),
            "status": status,
            "created_at": created_at,
            "apply_at": apply_at,
            "date": str(data.get("date") or "").strip()[:10],
            "prev": Holding.from_dict(prev) if isinstance(prev, dict) and prev else None,
            "next": Holding.from_dict(nxt) if isinstance(nxt, dict) and nxt else None,
        }


@dataclass(frozen=True)
class TradeOperation(Operation):
    method: str = constants.METHOD_AMOUNT
    amount: Optional[float] = None
    shares: Optional[float] = None
    nav: Optional[float] = None        # 成交净值，可能稍后回填
    fee_rate: Optional[float] = None   # 百分比，例如 0.15 表示 0.15%
    fee: Optional[float] = 0.0
    timing: str = constants.TIMING_BEFORE
    is_qdii: bool = False

    def with_nav(self, nav: float, amount: Optional[float], shares: Optional[float]) -> "TradeOperation":
        return replace(self, nav=nav, amount=amount, shares=shares)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update(
            {
                "method": self.method,
                "amount": self.amount,
                "shares": self.shares,
                "nav": self.nav,
                "fee_rate": self.fee_rate,
                "fee": self.fee,
                "timing": self.timing,
                "is_qdii": self.is_qdii,
            }
        )
        return d

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "TradeOperation":
        timing = str(data.get("timing") or constants.TIMING_BEFORE)
        if timing not in constants.TIMINGS:
            timing = constants.TIMING_BEFORE
        fee = to_number(data.get("fee"))
        return cls(
            **cls._base_kwargs(data),
            method=str(data.get("method") or constants.METHOD_AMOUNT),
            amount=to_number(data.get("amount")),
            shares=to_number(data.get("shares")),
            nav=to_number(data.get("nav")),
            fee_rate=to_number(data.get("fee_rate", data.get("feeRate"))),
            # 旧数据没有 fee 字段，按 0 处理
            fee=fee if fee is not None else 0.0,
            timing=timing,
            is_qdii=bool(data.get("is_qdii", data.get("isQdii", False))),
        )


@dataclass(frozen=True)
class AddOperation(TradeOperation):
    type: ClassVar[str] = constants.OP_ADD


@dataclass(frozen=True)
class ReduceOperation(TradeOperation):
    type: ClassVar[str] = constants.OP_REDUCE


@dataclass(frozen=True)
class EditOperation(Operation):
    method: str = constants.METHOD_AMOUNT
    amount: Optional[float] = None
    shares: Optional[float] = None

    type: ClassVar[str] = constants.OP_EDIT

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d.update({"method": self.method, "amount": self.amount, "shares": self.shares})
        return d

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "EditOperation":
        return cls(
            **cls._base_kwargs(data),
            method=str(data.get("method") or constants.METHOD_AMOUNT),
            amount=to_number(data.get("amount")),
            shares=to_number(data.get("shares")),
        )


_OPERATION_TYPES = {
    constants.OP_ADD: AddOperation,
    constants.OP_REDUCE: ReduceOperation,
    constants.OP_EDIT: EditOperation,
}


def operation_class(op_type: str) -> type:
    cls = _OPERATION_TYPES.get(op_type)
    if cls is None:
        raise ValueError(f"unknown operation type: {op_type!r}")
    return cls

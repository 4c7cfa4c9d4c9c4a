from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from config import constants, settings
from domain.holding import Holding
from domain.operation import EditOperation, Operation, TradeOperation, operation_class
from services.timing_service import compute_apply_at, refresh_status, status_at
from utils.time_utils import now_cn, today_cn

logger = logging.getLogger(__name__)


def new_operation_id() -> str:
    return uuid.uuid4().hex


class OperationLedger:
    """
    操作流水：新的在前，最多保留 LEDGER_MAX_OPERATIONS 条（超出直接丢弃最旧的）。
    """

    def __init__(self, operations: Optional[Iterable[Operation]] = None, max_items: Optional[int] = None) -> None:
        self.max_items = int(max_items or getattr(settings, "LEDGER_MAX_OPERATIONS", 200))
        self._ops: List[Operation] = list(operations or [])[: self.max_items]

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self):
        return iter(list(self._ops))

    @property
    def operations(self) -> List[Operation]:
        return list(self._ops)

    def record(self, op: Operation) -> None:
        self.record_many([op])

    def record_many(self, ops: List[Operation]) -> None:
        """整批插到最前面（批内顺序保持不变）"""
        if not ops:
            return
        self._ops = list(ops) + self._ops
        if len(self._ops) > self.max_items:
            dropped = len(self._ops) - self.max_items
            self._ops = self._ops[: self.max_items]
            logger.debug("ledger truncated, dropped %s oldest operations", dropped)

    def get(self, op_id: str) -> Optional[Operation]:
        for op in self._ops:
            if op.id == op_id:
                return op
        return None

    def replace(self, op: Operation) -> bool:
        for i, cur in enumerate(self._ops):
            if cur.id == op.id:
                self._ops[i] = op
                return True
        return False

    def remove(self, op_id: str) -> Optional[Operation]:
        for i, op in enumerate(self._ops):
            if op.id == op_id:
                return self._ops.pop(i)
        return None

    def remove_by_code(self, code: str) -> int:
        before = len(self._ops)
        self._ops = [op for op in self._ops if op.code != code]
        return before - len(self._ops)

    def for_code(self, code: str) -> List[Operation]:
        return [op for op in self._ops if op.code == code]

    def refresh_statuses(self, now: Optional[datetime] = None) -> int:
        """到点的 pending 翻为 confirmed，返回翻转条数"""
        now = now or now_cn()
        changed = 0
        for i, op in enumerate(self._ops):
            nxt = refresh_status(op, now)
            if nxt is not op:
                self._ops[i] = nxt
                changed += 1
        return changed

    # ---------- persistence ----------
    def to_list(self) -> List[dict]:
        return [op.to_dict() for op in self._ops]

    @classmethod
    def from_list(cls, items: object, max_items: Optional[int] = None) -> "OperationLedger":
        ops: List[Operation] = []
        if isinstance(items, list):
            for it in items:
                if not isinstance(it, dict) or not it:
                    continue
                try:
                    ops.append(Operation.from_dict(it))
                except ValueError as e:
                    logger.warning("skip unreadable operation %s: %s", it.get("id"), e)
        return cls(ops, max_items=max_items)


def build_trade_operation(
    op_type: str,
    prev: Optional[Holding],
    next: Optional[Holding],
    *,
    timing: str,
    is_qdii: bool,
    method: str,
    date: Optional[str] = None,
    amount: Optional[float] = None,
    shares: Optional[float] = None,
    nav: Optional[float] = None,
    fee_rate: Optional[float] = None,
    fee: Optional[float] = None,
    now: Optional[datetime] = None,
    code: Optional[str] = None,
) -> TradeOperation:
    """
    生成加仓/减仓流水：created_at=now，apply_at 按确认规则计算；
    如果下单日足够早、确认时间已过，生成时直接就是 confirmed。
    """
    now = now or now_cn()
    d = date or today_cn()
    apply_at = compute_apply_at(d, timing, is_qdii)
    cls = operation_class(op_type)
    return cls(
        id=new_operation_id(),
        code=code or (prev.code if prev else "") or (next.code if next else ""),
        status=status_at(apply_at, now),
        created_at=now,
        apply_at=apply_at,
        date=d,
        prev=prev,
        next=next,
        method=method,
        amount=amount,
        shares=shares,
        nav=nav,
        fee_rate=fee_rate,
        fee=fee,
        timing=timing,
        is_qdii=is_qdii,
    )


def build_edit_operation(prev: Optional[Holding], next: Holding, now: Optional[datetime] = None) -> EditOperation:
    now = now or now_cn()
    return EditOperation(
        id=new_operation_id(),
        code=next.code,
        status=constants.STATUS_CONFIRMED,
        created_at=now,
        apply_at=now,
        date=now.date().isoformat(),
        prev=prev,
        next=next,
        method=next.method,
        amount=next.amount,
        shares=next.shares,
    )


async def run_status_poller(
    ledger: OperationLedger,
    *,
    interval_sec: Optional[float] = None,
    on_change: Optional[Callable[[int], None]] = None,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """后台定时把到点的 pending 翻成 confirmed（分钟级精度足够）"""
    interval = float(interval_sec or getattr(settings, "STATUS_POLL_INTERVAL_SEC", 60))
    stop = stop or asyncio.Event()
    while not stop.is_set():
        changed = ledger.refresh_statuses()
        if changed:
            logger.info("confirmed %s operations", changed)
            if on_change is not None:
                on_change(changed)
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

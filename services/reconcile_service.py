from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from config import constants
from domain.errors import FetchFailure
from domain.holding import Holding
from domain.operation import EditOperation, Operation, TradeOperation
from services.nav_resolver import NavResolver
from services.portfolio_service import PortfolioState
from utils.parse_utils import normalize_code, round2, round4
from utils.time_utils import today_cn

logger = logging.getLogger(__name__)

Resolve = Callable[[str, str, str], Awaitable[Optional[float]]]


@dataclass
class ReconcileResult:
    holding: Optional[Holding]
    warnings: List[str] = field(default_factory=list)


def _fmt(x: object) -> str:
    return "" if x is None else str(x)


def build_sync_key(ops: Sequence[Operation], latest_nav: Optional[float]) -> str:
    """流水身份（按给定顺序）+ 最新净值，用来判断是否需要重算"""
    parts = [
        ":".join(
            [
                op.id,
                op.type,
                _fmt(op.date),
                _fmt(getattr(op, "timing", "")),
                _fmt(getattr(op, "amount", None)),
                _fmt(getattr(op, "shares", None)),
            ]
        )
        for op in ops
    ]
    parts.append(f"nav:{_fmt(latest_nav)}")
    return "|".join(parts)


def sort_for_replay(ops: Sequence[Operation]) -> List[Operation]:
    """按下单日升序；同一天按创建时间（即录入顺序）"""
    return sorted(ops, key=lambda op: (op.date or "", op.created_at))


async def _trade_nav(op: TradeOperation, resolve: Resolve) -> Optional[float]:
    if op.nav:
        return op.nav
    return await resolve(op.code, op.date, op.timing)


async def _share_delta(op: TradeOperation, resolve: Resolve, latest_nav: Optional[float]) -> Optional[float]:
    if op.shares is not None:
        return float(op.shares)
    if op.amount is None:
        return None
    nav = await _trade_nav(op, resolve)
    if nav:
        return round2(op.amount / nav)
    if latest_nav:
        # 回放历史流水时允许用最新净值兜底（新交易不允许，见 trade_service）
        return round2(op.amount / latest_nav)
    return None


async def reconcile_safe(
    code: str,
    operations: Sequence[Operation],
    latest_nav: Optional[float],
    resolve: Resolve,
) -> ReconcileResult:
    """
    用流水回放出当前持仓（容错版本）：
    - edit：直接覆盖份额/成本
    - add：份额、成本（金额+手续费）累加
    - reduce：份额减少，成本按剩余份额比例缩放；卖超截断到 0 并写 warning
    份额 <= 0 时 holding 为 None。
    """
    code = normalize_code(code)
    ops = sort_for_replay([op for op in operations if op.code == code and op.date])

    shares = 0.0
    cost = 0.0
    first_buy = ""
    warnings: List[str] = []

    for op in ops:
        date = op.date

        if isinstance(op, EditOperation):
            nxt = op.next
            if nxt is None:
                continue
            if nxt.method == constants.METHOD_SHARES and nxt.shares is not None:
                shares = float(nxt.shares or 0.0)
                if nxt.cost_price is not None:
                    cost = shares * float(nxt.cost_price)
                elif nxt.amount is not None and latest_nav:
                    cost = float(nxt.amount)
            elif nxt.method == constants.METHOD_AMOUNT and nxt.amount is not None:
                cost = float(nxt.amount) - float(nxt.profit or 0.0)
                nav = await resolve(code, date or today_cn(), constants.TIMING_BEFORE)
                if nav:
                    shares = round2(nxt.amount / nav)
                elif latest_nav:
                    shares = round2(nxt.amount / latest_nav)
            first_buy = nxt.first_buy or first_buy or date
            continue

        if not isinstance(op, TradeOperation):
            warnings.append(f"未知流水类型：{op.type}（已跳过） id={op.id}")
            continue

        delta = await _share_delta(op, resolve, latest_nav)
        if delta is None or delta <= 0:
            warnings.append(f"无法确定份额，已跳过：type={op.type}, date={date}, id={op.id}")
            continue

        if op.type == constants.OP_ADD:
            amount = op.amount
            if amount is None and latest_nav:
                amount = round2(delta * latest_nav)
            shares += delta
            cost += float(amount or 0.0) + float(op.fee or 0.0)
            if not first_buy:
                first_buy = date

        elif op.type == constants.OP_REDUCE:
            if shares <= 0:
                warnings.append(f"减仓时无持仓，已忽略：date={date}, id={op.id}")
                continue
            if delta > shares + 1e-9:
                warnings.append(f"减仓超过持仓，已截断：sell={delta}, hold={shares}, date={date}, id={op.id}")
            prev_shares = shares
            shares = max(0.0, round2(shares - delta))
            cost = cost * (shares / prev_shares)

    if shares <= 0:
        return ReconcileResult(holding=None, warnings=warnings)

    amount = round2(shares * latest_nav) if latest_nav else None
    holding = Holding(
        code=code,
        method=constants.METHOD_SHARES,
        amount=amount,
        profit=round2(amount - cost) if amount is not None else None,
        shares=round2(shares),
        cost_price=round4(cost / shares),
        first_buy=first_buy,
    )
    return ReconcileResult(holding=holding, warnings=warnings)


async def reconcile(
    code: str,
    operations: Sequence[Operation],
    latest_nav: Optional[float],
    resolve: Resolve,
) -> Optional[Holding]:
    # 兼容调用：只返回 holding
    return (await reconcile_safe(code, operations, latest_nav, resolve)).holding


def _backfill_values(op: TradeOperation, nav: float) -> Optional[Tuple[Optional[float], Optional[float]]]:
    """按成交净值补齐 amount/shares；无需修改返回 None"""
    amount, shares = op.amount, op.shares
    if op.type == constants.OP_REDUCE:
        if shares is not None:
            amount = round2(shares * nav)
        elif amount is not None:
            shares = round2(amount / nav)
    elif op.type == constants.OP_ADD:
        if amount is not None and shares is None:
            shares = round2(amount / nav)
        elif shares is not None and amount is None:
            amount = round2(shares * nav)

    if op.nav == nav and amount == op.amount and shares == op.shares:
        return None
    return amount, shares


class ReconcileCoordinator:
    """
    按基金串行化回放：
    - 同一基金正在回放时，新触发只记一次“需要重跑”，当前这轮结束后再跑
    - 回放前后各算一次 sync key，不一致说明期间流水变了，丢弃结果并重跑
    - 拉净值失败：持仓保持原样，忘掉 sync key 以便下次重试
    """

    def __init__(self, state: PortfolioState, resolver: NavResolver) -> None:
        self.state = state
        self.resolver = resolver
        self._sync_keys: Dict[str, str] = {}
        self._running: Set[str] = set()
        self._rerun: Set[str] = set()

    def is_running(self, code: str) -> bool:
        return normalize_code(code) in self._running

    def forget(self, code: Optional[str] = None) -> None:
        if code is None:
            self._sync_keys.clear()
        else:
            self._sync_keys.pop(normalize_code(code), None)

    def trigger(self, code: str) -> "asyncio.Future[bool]":
        return asyncio.ensure_future(self.sync(code))

    async def sync(self, code: str, *, backfill: bool = True) -> bool:
        """返回本次是否改动了持仓；被合并到进行中的回放时返回 False"""
        code = normalize_code(code)
        if code in self._running:
            self._rerun.add(code)
            return False

        self._running.add(code)
        changed = False
        try:
            while True:
                self._rerun.discard(code)
                if backfill:
                    await self.backfill_operation_navs(code)
                changed = await self._pass(code) or changed
                if code not in self._rerun:
                    return changed
        finally:
            self._running.discard(code)

    async def sync_all(self) -> List[str]:
        changed: List[str] = []
        codes = sorted({op.code for op in self.state.ledger})
        for code in codes:
            if await self.sync(code):
                changed.append(code)
        return changed

    def _ops_for(self, code: str) -> List[Operation]:
        return [op for op in self.state.ledger.for_code(code) if op.date]

    async def _pass(self, code: str) -> bool:
        ops = self._ops_for(code)
        if not ops:
            return False
        latest_nav = self.state.latest_nav(code)
        key = build_sync_key(ops, latest_nav)
        if self._sync_keys.get(code) == key:
            return False
        self._sync_keys[code] = key

        try:
            result = await reconcile_safe(code, ops, latest_nav, self.resolver.resolve)
        except FetchFailure as e:
            logger.warning("reconcile %s postponed: %s", code, e)
            self._sync_keys.pop(code, None)
            return False

        if build_sync_key(self._ops_for(code), self.state.latest_nav(code)) != key:
            logger.debug("reconcile %s discarded: ledger changed during replay", code)
            self._sync_keys.pop(code, None)
            self._rerun.add(code)
            return False

        for w in result.warnings:
            logger.warning("reconcile %s: %s", code, w)

        existing = self.state.get_holding(code)
        if result.holding is None:
            if existing is None:
                return False
            self.state.delete_holding(code)
            logger.info("holding %s closed by replay", code)
            return True
        if existing == result.holding:
            return False
        self.state.put_holding(result.holding)
        return True

    async def backfill_operation_navs(self, code: str) -> int:
        """给加减仓流水回填成交净值及缺失的金额/份额，返回修改条数"""
        code = normalize_code(code)
        related = [op for op in self._ops_for(code) if isinstance(op, TradeOperation)]
        navs: Dict[Tuple[str, str], Optional[float]] = {}
        patched = 0
        for op in related:
            k = (op.date, op.timing)
            if k not in navs:
                try:
                    navs[k] = await self.resolver.resolve(code, op.date, op.timing)
                except FetchFailure as e:
                    logger.warning("nav backfill %s stopped: %s", code, e)
                    return patched
            nav = navs[k]
            if nav is None:
                continue
            values = _backfill_values(op, nav)
            if values is None:
                continue
            if self.state.ledger.replace(op.with_nav(nav, *values)):
                patched += 1
        return patched

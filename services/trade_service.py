from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple, Union

from config import constants
from domain.batch import BatchTradeInput
from domain.errors import HoldingNotFound, InvalidTradeInput, NavUnavailable
from domain.holding import Holding
from domain.operation import EditOperation, Operation, TradeOperation
from services.holding_service import build_holding_payload, holding_ready
from services.ledger_service import build_edit_operation, build_trade_operation
from services.nav_resolver import NavResolver
from services.portfolio_service import PortfolioState
from services.timing_service import is_qdii_fund
from utils.parse_utils import normalize_code, round2
from utils.time_utils import normalize_date, now_cn, today_cn

logger = logging.getLogger(__name__)

# code -> 申购费率(%)，查不到返回 None
FeeRateSource = Callable[[str], Awaitable[Optional[float]]]


def _base_values(prev: Optional[Holding], latest_nav: Optional[float]) -> Tuple[float, float, float]:
    """(金额, 收益, 份额)：优先取持仓里的值，缺的用最新净值推导，推不出来按 0"""
    if prev is None:
        return 0.0, 0.0, 0.0

    if prev.amount is not None:
        amount = float(prev.amount)
    elif prev.shares and latest_nav:
        amount = prev.shares * latest_nav
    else:
        amount = 0.0

    if prev.profit is not None:
        profit = float(prev.profit)
    elif prev.shares and prev.cost_price is not None and latest_nav:
        profit = (latest_nav - prev.cost_price) * prev.shares
    else:
        profit = 0.0

    if prev.shares is not None:
        shares = float(prev.shares)
    elif prev.amount and latest_nav:
        shares = prev.amount / latest_nav
    else:
        shares = 0.0

    return amount, profit, shares


def next_holding_after_trade(
    op_type: str,
    code: str,
    prev: Optional[Holding],
    *,
    amount: Optional[float],
    shares: Optional[float],
    nav: Optional[float],
    date: str,
    latest_nav: Optional[float],
) -> Tuple[str, Optional[Holding]]:
    """
    在原持仓口径下推算交易后的持仓，返回 (method, next_holding)。
    - shares 口径：份额加减，成本价不变
    - amount 口径：金额加减；减仓时收益按剩余金额比例缩放
    结果 <= 0 时 next_holding 为 None（清仓）。
    减仓但没有可减的持仓时抛 InvalidTradeInput。
    """
    if prev is not None:
        method = prev.method
    else:
        method = constants.METHOD_SHARES if shares is not None else constants.METHOD_AMOUNT

    base_amount, base_profit, base_shares = _base_values(prev, latest_nav)

    if op_type == constants.OP_REDUCE:
        if method == constants.METHOD_SHARES and base_shares <= 0:
            raise InvalidTradeInput(f"no shares to reduce for {code}")
        if method == constants.METHOD_AMOUNT and base_amount <= 0:
            raise InvalidTradeInput(f"no amount to reduce for {code}")

    sign = 1.0 if op_type == constants.OP_ADD else -1.0
    first_buy = (prev.first_buy if prev else "") or date

    if method == constants.METHOD_SHARES:
        delta = shares if shares is not None else (amount / nav if (amount is not None and nav) else 0.0)
        next_shares = round2(base_shares + sign * delta)
        if next_shares <= 0:
            return method, None
        return method, build_holding_payload(
            code,
            constants.METHOD_SHARES,
            shares=next_shares,
            cost_price=prev.cost_price if prev else None,
            first_buy=first_buy,
            latest_nav=latest_nav,
        )

    delta = amount if amount is not None else (shares * nav if (shares is not None and nav) else 0.0)
    next_amount = round2(base_amount + sign * delta)
    if next_amount <= 0:
        return method, None
    next_profit = base_profit
    if op_type == constants.OP_REDUCE and base_amount > 0:
        next_profit = base_profit * (next_amount / base_amount)
    return method, build_holding_payload(
        code,
        constants.METHOD_AMOUNT,
        amount=next_amount,
        profit=round2(next_profit),
        first_buy=first_buy,
        latest_nav=latest_nav,
    )


def _positive(value: Optional[float], name: str) -> float:
    if value is None or value <= 0:
        raise InvalidTradeInput(f"{name} must be > 0, got {value!r}")
    return float(value)


def _check_timing(timing: str) -> str:
    timing = (timing or constants.TIMING_BEFORE).strip().lower()
    if timing not in constants.TIMINGS:
        raise InvalidTradeInput(f"timing must be before/after, got {timing!r}")
    return timing


class TradeOrchestrator:
    """
    把用户的加仓/减仓/编辑/批量导入翻译成持仓变更 + 流水。
    成交净值一律走 NavResolver；解析不到就拒绝交易（不拿最新净值顶替）。
    """

    def __init__(
        self,
        state: PortfolioState,
        resolver: NavResolver,
        *,
        clock: Callable[[], datetime] = now_cn,
        fee_rates: Optional[FeeRateSource] = None,
    ) -> None:
        self.state = state
        self.resolver = resolver
        self._clock = clock
        self.fee_rates = fee_rates

    def _is_qdii(self, code: str) -> bool:
        return is_qdii_fund(self.state.fund_name(code))

    def _commit(self, code: str, holding: Optional[Holding], ops: List[Operation]) -> None:
        if holding is not None:
            self.state.put_holding(holding)
        else:
            self.state.delete_holding(code)
        self.state.ledger.record_many(ops)

    async def _settlement_nav(self, code: str, date: str, timing: str) -> float:
        nav = await self.resolver.resolve(code, date, timing)
        if nav is None:
            raise NavUnavailable(code, date, timing)
        return nav

    async def _purchase_fee_rate(self, code: str, fee_rate: Optional[float]) -> Optional[float]:
        """显式给了费率就用；否则问费率源（没配置就不收手续费）"""
        if fee_rate is not None or self.fee_rates is None:
            return fee_rate
        rate = await self.fee_rates(code)
        logger.info("fee rate %s: %s", code, rate)
        return rate

    # ---------- single trades ----------
    async def trade_add(
        self,
        code: str,
        amount: float,
        *,
        fee_rate: Optional[float] = None,
        date: Optional[str] = None,
        timing: str = constants.TIMING_BEFORE,
    ) -> TradeOperation:
        code = normalize_code(code)
        amount = _positive(amount, "amount")
        timing = _check_timing(timing)
        d = normalize_date(date) or today_cn()

        nav = await self._settlement_nav(code, d, timing)
        shares = round2(amount / nav)
        fee_rate = await self._purchase_fee_rate(code, fee_rate)
        fee = round2(amount * fee_rate / 100) if fee_rate is not None else 0.0
        return self.apply_trade(
            constants.OP_ADD,
            code,
            amount=amount,
            shares=shares,
            nav=nav,
            fee_rate=fee_rate,
            fee=fee,
            date=d,
            timing=timing,
        )

    async def trade_reduce(
        self,
        code: str,
        shares: float,
        *,
        fee: Optional[float] = None,
        date: Optional[str] = None,
        timing: str = constants.TIMING_BEFORE,
    ) -> TradeOperation:
        code = normalize_code(code)
        shares = _positive(shares, "shares")
        timing = _check_timing(timing)
        d = normalize_date(date) or today_cn()
        if self.state.get_holding(code) is None:
            raise HoldingNotFound(code)

        nav = await self._settlement_nav(code, d, timing)
        return self.apply_trade(
            constants.OP_REDUCE,
            code,
            amount=round2(shares * nav),
            shares=shares,
            nav=nav,
            fee=fee if fee is not None else 0.0,
            date=d,
            timing=timing,
        )

    def apply_trade(
        self,
        op_type: str,
        code: str,
        *,
        amount: Optional[float],
        shares: Optional[float],
        nav: Optional[float],
        fee_rate: Optional[float] = None,
        fee: Optional[float] = 0.0,
        date: Optional[str] = None,
        timing: str = constants.TIMING_BEFORE,
    ) -> TradeOperation:
        """已知成交净值时直接落账：算下一版持仓、生成流水、写回"""
        if op_type not in constants.TRADE_TYPES:
            raise InvalidTradeInput(f"trade type must be add/reduce, got {op_type!r}")
        code = normalize_code(code)
        d = normalize_date(date) or today_cn()
        prev = self.state.get_holding(code)
        if op_type == constants.OP_REDUCE and prev is None:
            raise HoldingNotFound(code)

        method, nxt = next_holding_after_trade(
            op_type,
            code,
            prev,
            amount=amount,
            shares=shares,
            nav=nav,
            date=d,
            latest_nav=self.state.latest_nav(code),
        )
        op = build_trade_operation(
            op_type,
            prev,
            nxt,
            timing=timing,
            is_qdii=self._is_qdii(code),
            method=method,
            date=d,
            amount=amount,
            shares=shares,
            nav=nav,
            fee_rate=fee_rate,
            fee=fee,
            now=self._clock(),
            code=code,
        )
        self._commit(code, nxt, [op])
        logger.info("%s %s: amount=%s shares=%s nav=%s (%s)", op_type, code, amount, shares, nav, op.status)
        return op

    # ---------- edit ----------
    def update_holding(
        self,
        code: str,
        method: str,
        *,
        amount: Optional[float] = None,
        profit: Optional[float] = None,
        shares: Optional[float] = None,
        cost_price: Optional[float] = None,
        first_buy: str = "",
    ) -> Optional[EditOperation]:
        code = normalize_code(code)
        if method not in constants.METHODS:
            raise InvalidTradeInput(f"method must be amount/shares, got {method!r}")
        first_buy = normalize_date(first_buy)
        if not holding_ready(
            method, amount=amount, profit=profit, shares=shares, cost_price=cost_price, first_buy=first_buy
        ):
            raise InvalidTradeInput(f"incomplete holding for method={method} (need both values and first_buy)")

        payload = build_holding_payload(
            code,
            method,
            amount=amount,
            profit=profit,
            shares=shares,
            cost_price=cost_price,
            first_buy=first_buy,
            latest_nav=self.state.latest_nav(code),
        )
        existing = self.state.get_holding(code)
        if existing == payload:
            return None

        op = build_edit_operation(existing, payload, now=self._clock())
        self._commit(code, payload, [op])
        self.state.add_to_watchlist(code)
        logger.info("edit %s: %s", code, payload)
        return op

    # ---------- batch ----------
    async def apply_batch_import(
        self,
        code: str,
        items: Iterable[Union[BatchTradeInput, dict]],
        *,
        fee_rate: Optional[float] = None,
    ) -> List[TradeOperation]:
        """
        批量导入：按 日期+时间 排序后逐条推算，临时持仓串起来（第 2 条能看到第 1 条的结果），
        最后一次性写回持仓和全部流水。净值解析不到的条目跳过。
        """
        code = normalize_code(code)
        parsed = [it if isinstance(it, BatchTradeInput) else BatchTradeInput.from_dict(it) for it in items]
        if not code or not parsed:
            return []

        latest_nav = self.state.latest_nav(code)
        is_qdii = self._is_qdii(code)
        temp = self.state.get_holding(code)
        if any(it.type == constants.OP_ADD for it in parsed):
            fee_rate = await self._purchase_fee_rate(code, fee_rate)
        new_ops: List[TradeOperation] = []

        for item in sorted(parsed, key=lambda x: x.sort_key):
            d = normalize_date(item.date) or today_cn()
            nav = await self.resolver.resolve(code, d, item.timing)
            if not nav:
                logger.warning("batch item skipped, nav unavailable: %s %s %s", code, d, item.timing)
                continue

            amount, shares = item.amount, item.shares
            if amount is None and shares is not None:
                amount = round2(shares * nav)
            if shares is None and amount is not None:
                shares = round2(amount / nav)

            try:
                method, nxt = next_holding_after_trade(
                    item.type, code, temp, amount=amount, shares=shares, nav=nav, date=d, latest_nav=latest_nav
                )
            except InvalidTradeInput as e:
                logger.warning("batch item skipped: %s", e)
                continue

            is_add = item.type == constants.OP_ADD
            fee = round2(amount * fee_rate / 100) if (is_add and fee_rate is not None and amount is not None) else 0.0
            op = build_trade_operation(
                item.type,
                temp,
                nxt,
                timing=item.timing,
                is_qdii=is_qdii,
                method=method,
                date=d,
                amount=amount,
                shares=shares,
                nav=nav,
                fee_rate=fee_rate if is_add else None,
                fee=fee,
                now=self._clock(),
                code=code,
            )
            new_ops.append(op)
            temp = nxt

        if not new_ops:
            return []
        self._commit(code, temp, list(new_ops))
        logger.info("batch import %s: %s operations committed", code, len(new_ops))
        return new_ops

    # ---------- undo / remove ----------
    def undo(self, operation_id: str) -> Optional[Operation]:
        """恢复该条流水的 prev 快照并删除这条流水；之后的流水不重放"""
        op = self.state.ledger.get(operation_id)
        if op is None:
            return None
        if op.prev is not None:
            self.state.put_holding(op.prev)
        else:
            self.state.delete_holding(op.code)
        self.state.ledger.remove(operation_id)
        logger.info("undo %s %s (%s)", op.type, op.code, op.id)
        return op

    def remove_fund(self, code: str) -> int:
        code = normalize_code(code)
        self.state.delete_holding(code)
        purged = self.state.ledger.remove_by_code(code)
        self.state.remove_from_watchlist(code)
        self.state.quotes.pop(code, None)
        self.resolver.invalidate(code)
        self.resolver.cache.clear(code)
        logger.info("removed fund %s, purged %s operations", code, purged)
        return purged


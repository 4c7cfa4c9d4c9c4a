from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config import constants
from domain.holding import Holding
from utils.parse_utils import round2


def compute_cost_unit(amount: Optional[float], profit: Optional[float], nav: Optional[float]) -> Optional[float]:
    """按金额口径反推成本单价：(金额 - 收益) / (金额 / 净值)"""
    if not amount or not nav:
        return None
    units = amount / nav
    if not units:
        return None
    return (amount - (profit or 0.0)) / units


def build_holding_payload(
    code: str,
    method: str,
    *,
    amount: Optional[float] = None,
    profit: Optional[float] = None,
    shares: Optional[float] = None,
    cost_price: Optional[float] = None,
    first_buy: str = "",
    latest_nav: Optional[float] = None,
) -> Holding:
    """
    按录入口径生成持仓，另一组字段在有净值时推导出来：
    - shares：amount = shares*nav，profit = (nav-cost_price)*shares
    - amount：shares = amount/nav，cost_price 由 amount/profit 反推
    """
    if method == constants.METHOD_SHARES:
        derived_amount = round2(shares * latest_nav) if (latest_nav and shares) else None
        derived_profit = (
            round2((latest_nav - cost_price) * shares)
            if (latest_nav and shares and cost_price is not None)
            else None
        )
        return Holding(
            code=code,
            method=constants.METHOD_SHARES,
            amount=derived_amount,
            profit=derived_profit,
            shares=shares,
            cost_price=cost_price,
            first_buy=first_buy,
        )

    derived_shares = round2(amount / latest_nav) if (latest_nav and amount) else None
    derived_cost = compute_cost_unit(amount, profit, latest_nav) if latest_nav else None
    return Holding(
        code=code,
        method=constants.METHOD_AMOUNT,
        amount=amount,
        profit=profit,
        shares=derived_shares,
        cost_price=derived_cost,
        first_buy=first_buy,
    )


def holding_ready(method: str, *, amount, profit, shares, cost_price, first_buy: str) -> bool:
    """编辑持仓时的最低要求：主口径两项 + 首次买入日"""
    if not first_buy:
        return False
    if method == constants.METHOD_AMOUNT:
        return amount is not None and profit is not None
    return shares is not None and cost_price is not None


@dataclass
class HoldingView:
    method: str
    amount: Optional[float]
    profit: Optional[float]
    cost_unit: Optional[float]


def holding_view(holding: Holding, latest_nav: Optional[float]) -> HoldingView:
    """展示口径：用最新净值重新推导金额/收益/成本单价"""
    if holding.method == constants.METHOD_SHARES:
        shares = holding.shares
        amount = shares * latest_nav if (shares and latest_nav) else None
        profit = (
            (latest_nav - holding.cost_price) * shares
            if (shares and latest_nav and holding.cost_price is not None)
            else None
        )
        return HoldingView(constants.METHOD_SHARES, amount, profit, holding.cost_price)

    cost_basis: Optional[float] = None
    if holding.shares is not None and holding.cost_price is not None:
        cost_basis = holding.shares * holding.cost_price
    elif holding.amount is not None and holding.profit is not None:
        cost_basis = holding.amount - holding.profit

    if holding.shares is not None and latest_nav is not None:
        amount = round2(holding.shares * latest_nav)
        profit = round2(amount - cost_basis) if cost_basis is not None else holding.profit
        if cost_basis is not None and holding.shares:
            cost_unit = cost_basis / holding.shares
        else:
            cost_unit = compute_cost_unit(amount, profit, latest_nav)
        return HoldingView(constants.METHOD_AMOUNT, amount, profit, cost_unit)

    cost_unit = compute_cost_unit(holding.amount, holding.profit, latest_nav) if latest_nav else None
    return HoldingView(constants.METHOD_AMOUNT, holding.amount, holding.profit, cost_unit)

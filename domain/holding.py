from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

from config import constants
from utils.parse_utils import normalize_code, to_number


@dataclass(frozen=True)
class Holding:
    """
    单只基金的持仓快照
    - method=amount：amount/profit 为主口径，shares/cost_price 由净值推导
    - method=shares：shares/cost_price 为主口径，amount/profit 由净值推导
    """
    code: str
    method: str = constants.METHOD_AMOUNT
    amount: Optional[float] = None
    profit: Optional[float] = None
    shares: Optional[float] = None
    cost_price: Optional[float] = None
    first_buy: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Holding":
        if not data:
            raise ValueError("Holding.from_dict: empty data")

        shares = to_number(data.get("shares"))
        cost_price = to_number(data.get("cost_price", data.get("costPrice")))
        method = str(data.get("method") or "").strip()
        if method not in constants.METHODS:
            # 旧数据没有 method：有份额/成本价就按份额口径
            method = constants.METHOD_SHARES if (shares or cost_price) else constants.METHOD_AMOUNT

        return Holding(
            code=normalize_code(data.get("code", "")),
            method=method,
            amount=to_number(data.get("amount")),
            profit=to_number(data.get("profit")),
            shares=shares,
            cost_price=cost_price,
            first_buy=str(data.get("first_buy", data.get("firstBuy")) or "").strip(),
        )

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class NavRecord:
    date: str   # 交易日 YYYY-MM-DD
    nav: float  # 单位净值


@dataclass
class HistoryPage:
    """历史净值表的一页（lsjz 接口按页返回，第 1 页是最新的）"""
    code: str
    page: int
    rows: List[NavRecord] = field(default_factory=list)
    total_pages: int = 1
    total_records: Optional[int] = None


@dataclass
class LatestQuote:
    code: str
    name: str
    nav: Optional[float]        # 最新公布净值 dwjz
    nav_date: str               # 净值日期 jzrq
    est_nav: Optional[float]    # 盘中估值 gsz
    est_pct: Optional[float]    # 估算涨跌幅（%）
    update_time: str = ""

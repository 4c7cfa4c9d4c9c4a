from __future__ import annotations

import re
from datetime import date, datetime, time as dtime, timedelta
from typing import Iterable, List, Optional, Sequence

from config import constants, settings
from domain.nav import NavRecord
from domain.operation import Operation
from utils.time_utils import CN_TZ, normalize_date, now_cn

_QDII_RE = re.compile(r"QDII|海外|美股|全球|国际", re.I)


def is_qdii_fund(name: Optional[str]) -> bool:
    """按基金名称粗略判断是否 QDII（跨境基金确认更慢）"""
    if not name:
        return False
    return bool(_QDII_RE.search(name))


def compute_apply_at(date_str: Optional[str], timing: str, is_qdii: bool) -> datetime:
    """
    确认时间：下单日 15:00（北京时间）+ 1 天（15:00 前）/ + 2 天（15:00 后），QDII 再 + 1 天。
    日期缺失或非法时按今天计算。
    """
    d = normalize_date(date_str) or now_cn().date().isoformat()
    base = datetime.combine(
        date.fromisoformat(d),
        dtime(getattr(settings, "SETTLEMENT_CUTOFF_HOUR", 15), 0),
        tzinfo=CN_TZ,
    )
    delay = 1 if timing == constants.TIMING_BEFORE else 2
    extra = getattr(settings, "QDII_EXTRA_DAYS", 1) if is_qdii else 0
    return base + timedelta(days=delay + extra)


def status_at(apply_at: datetime, now: Optional[datetime] = None) -> str:
    now = now or now_cn()
    return constants.STATUS_CONFIRMED if now >= apply_at else constants.STATUS_PENDING


def refresh_status(op: Operation, now: Optional[datetime] = None) -> Operation:
    """pending -> confirmed 单向翻转；已确认的永不回退"""
    if op.is_confirmed:
        return op
    if status_at(op.apply_at, now) == constants.STATUS_CONFIRMED:
        return op.confirmed()
    return op


def sort_history(history: Iterable[NavRecord]) -> List[NavRecord]:
    """按日期去重（后出现的覆盖）并升序"""
    by_date = {}
    for item in history:
        d = normalize_date(item.date)
        if d:
            by_date[d] = NavRecord(date=d, nav=item.nav)
    return [by_date[d] for d in sorted(by_date)]


def find_nav_in_history(date_str: str, timing: str, history: Sequence[NavRecord]) -> Optional[float]:
    """
    成交净值规则：
    - 15:00 前：只认下单日当天的净值，没有就是“尚未公布”，不拿相邻日期顶替
    - 15:00 后：下单日之后的第一个净值
    """
    target = normalize_date(date_str)
    if not target or not history:
        return None

    rows = sort_history(history)
    if timing == constants.TIMING_BEFORE:
        for item in rows:
            if item.date == target:
                return item.nav
        return None

    for item in rows:
        if item.date > target:
            return item.nav
    return None

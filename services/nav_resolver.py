from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from config import constants, settings
from datasources.history_api import fetch_history_page_async
from domain.errors import FetchFailure
from domain.nav import HistoryPage, NavRecord
from services.nav_cache import NavTableCache
from services.timing_service import find_nav_in_history
from utils.parse_utils import normalize_code
from utils.time_utils import normalize_date

logger = logging.getLogger(__name__)

FetchPage = Callable[[str, int], Awaitable[HistoryPage]]
ResolveKey = Tuple[str, str, str]


@dataclass
class _Resolution:
    nav: Optional[float]
    cacheable: bool


class NavResolver:
    """
    成交净值解析：(code, date, timing) -> nav | None

    查找顺序：
    1) 结果缓存
    2) 已拉取的历史净值分页
    3) 拉第 1 页，再按需往后翻页，直到命中或翻完

    同一个 key 的并发调用共享同一个进行中的任务。
    “没找到”返回 None 并短期缓存；第 1 页拉取失败抛 FetchFailure（不缓存，下次重试）。
    """

    def __init__(
        self,
        fetch_page: FetchPage = fetch_history_page_async,
        cache: Optional[NavTableCache] = None,
        *,
        miss_ttl_sec: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.fetch_page = fetch_page
        self.cache = cache if cache is not None else NavTableCache()
        self.miss_ttl_sec = float(
            miss_ttl_sec if miss_ttl_sec is not None else getattr(settings, "NAV_MISS_TTL_SEC", 300)
        )
        self._clock = clock
        self._results: Dict[ResolveKey, Tuple[Optional[float], float]] = {}
        self._pending: Dict[ResolveKey, "asyncio.Future[_Resolution]"] = {}

    # ---------- public ----------
    async def resolve(self, code: str, date: str, timing: str) -> Optional[float]:
        code = normalize_code(code)
        d = normalize_date(date)
        if not code or not d:
            return None
        key = (code, d, timing)

        hit = self._cached(key)
        if hit is not None:
            return hit[0]

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._resolve_uncached(code, d, timing))
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._settle(k, t))

        # shield：单个调用方被取消时不影响其它共享该任务的调用方
        resolution = await asyncio.shield(task)
        return resolution.nav

    def is_pending(self, code: str, date: str, timing: str) -> bool:
        return (normalize_code(code), normalize_date(date), timing) in self._pending

    def invalidate(self, code: Optional[str] = None) -> None:
        """丢弃解析结果缓存（分页缓存保留）"""
        if code is None:
            self._results.clear()
            return
        code = normalize_code(code)
        for key in [k for k in self._results if k[0] == code]:
            del self._results[key]

    # ---------- internals ----------
    def _cached(self, key: ResolveKey) -> Optional[Tuple[Optional[float]]]:
        """命中返回 (nav,)，未命中返回 None"""
        item = self._results.get(key)
        if item is None:
            return None
        nav, ts = item
        if nav is None and (self._clock() - ts) > self.miss_ttl_sec:
            del self._results[key]
            return None
        return (nav,)

    def _settle(self, key: ResolveKey, task: "asyncio.Future[_Resolution]") -> None:
        self._pending.pop(key, None)
        if task.cancelled() or task.exception() is not None:
            return
        resolution = task.result()
        if resolution.cacheable:
            self._results[key] = (resolution.nav, self._clock())

    async def _fetch(self, code: str, page_no: int) -> HistoryPage:
        page = await self.fetch_page(code, page_no)
        self.cache.put_page(page)
        return page

    def _covers(self, code: str, history: List[NavRecord], date: str) -> bool:
        """已拉取的历史是否已覆盖到下单日（或者全部分页都已拉过）"""
        if history and history[0].date <= date:
            return True
        total = self.cache.total_pages(code)
        return total is not None and all(self.cache.get_page(code, n) is not None for n in range(1, total + 1))

    def _lookup(self, code: str, date: str, timing: str) -> Optional[float]:
        """
        在已拉取的分页上套用成交净值规则。
        15:00 后规则取“下单日之后的第一个净值”，历史还没覆盖到下单日时，
        更早的分页里可能有更近的日期，此时不能下结论。
        """
        history = self.cache.combined_history(code)
        if timing != constants.TIMING_BEFORE and not self._covers(code, history, date):
            return None
        return find_nav_in_history(date, timing, history)

    async def _refresh_first_page(self, code: str) -> HistoryPage:
        cached = self.cache.get_page(code, 1)
        first = await self.fetch_page(code, 1)
        if cached is not None and cached.rows != first.rows:
            # 新净值公布后分页边界整体后移，旧的后续分页会和新第 1 页之间缺行
            self.cache.clear(code)
        self.cache.put_page(first)
        return first

    async def _resolve_uncached(self, code: str, date: str, timing: str) -> _Resolution:
        nav = self._lookup(code, date, timing)
        if nav is not None:
            return _Resolution(nav, True)

        # 第 1 页总是重新拉：新公布的净值只会出现在第 1 页
        first = await self._refresh_first_page(code)
        nav = self._lookup(code, date, timing)
        if nav is not None:
            return _Resolution(nav, True)

        complete = True
        oldest = _oldest_date(first)
        for page_no in range(2, first.total_pages + 1):
            if oldest and oldest <= date:
                # 已经翻过下单日，更早的分页不可能再命中
                break
            page = self.cache.get_page(code, page_no)
            if page is None:
                try:
                    page = await self._fetch(code, page_no)
                except FetchFailure as e:
                    # 中间缺页时不能继续往后找（15:00 后规则会跳过缺失的日期）
                    logger.warning("nav history scan stopped: %s", e)
                    complete = False
                    break
            nav = self._lookup(code, date, timing)
            if nav is not None:
                return _Resolution(nav, True)
            oldest = min(filter(None, [oldest, _oldest_date(page)]), default="")

        logger.info("nav not found: code=%s date=%s timing=%s", code, date, timing)
        return _Resolution(None, complete)


def _oldest_date(page: HistoryPage) -> str:
    return min((r.date for r in page.rows if r.date), default="")

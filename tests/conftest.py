"""
Shared fixtures: isolated runtime dir, in-memory store, scripted NAV history.
"""
from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

import pytest

from config import settings
from domain.errors import FetchFailure
from domain.nav import HistoryPage, LatestQuote, NavRecord
from services.nav_resolver import NavResolver
from services.portfolio_service import PortfolioState
from storage.json_store import MemoryKeyValueStore
from utils.time_utils import CN_TZ


@pytest.fixture(autouse=True)
def _isolated_runtime(tmp_path, monkeypatch):
    monkeypatch.setenv("FUND_LEDGER_HOME", str(tmp_path / "home"))
    monkeypatch.setattr(settings, "USE_REAL_DATASOURCE", False)


class FakeHistory:
    """
    Serves the historical NAV table newest-first, `per` rows per page.
    Records every (code, page) call; pages in `fail_pages` raise FetchFailure.
    """

    def __init__(
        self,
        rows: Iterable[Tuple[str, float]],
        per: int = 3,
        fail_pages: Iterable[int] = (),
        delay: float = 0.0,
    ) -> None:
        self.rows = sorted(rows, key=lambda r: r[0], reverse=True)
        self.per = per
        self.fail_pages = set(fail_pages)
        self.delay = delay
        self.calls: List[Tuple[str, int]] = []

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(len(self.rows) / self.per))

    async def __call__(self, code: str, page: int) -> HistoryPage:
        self.calls.append((code, page))
        if self.delay:
            await asyncio.sleep(self.delay)
        if page in self.fail_pages:
            raise FetchFailure(code, "boom", page=page)
        chunk = self.rows[(page - 1) * self.per : page * self.per]
        return HistoryPage(
            code=code,
            page=page,
            rows=[NavRecord(date=d, nav=n) for d, n in chunk],
            total_pages=self.total_pages,
        )


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t


def cn(y: int, m: int, d: int, hh: int = 0, mm: int = 0) -> datetime:
    return datetime(y, m, d, hh, mm, tzinfo=CN_TZ)


# A week of NAVs around 2024-05-10 (a Friday); 2024-05-10 itself is missing.
MAY_HISTORY = [
    ("2024-05-06", 1.00),
    ("2024-05-07", 1.01),
    ("2024-05-08", 1.02),
    ("2024-05-09", 1.03),
    ("2024-05-13", 1.05),
    ("2024-05-14", 1.06),
]


@pytest.fixture
def history() -> FakeHistory:
    return FakeHistory(MAY_HISTORY, per=3)


@pytest.fixture
def resolver(history) -> NavResolver:
    return NavResolver(history)


@pytest.fixture
def store() -> MemoryKeyValueStore:
    # 三个 key 都写过：不是首次运行，不会塞默认自选
    return MemoryKeyValueStore({"holdings": [], "watchlist": [], "operations": []})


@pytest.fixture
def state(store) -> PortfolioState:
    return PortfolioState.load(store)


def set_latest_nav(state: PortfolioState, code: str, nav: Optional[float], name: str = "测试基金") -> None:
    state.quotes[code] = LatestQuote(code=code, name=name, nav=nav, nav_date="", est_nav=None, est_pct=None)

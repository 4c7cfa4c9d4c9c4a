from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from config import constants, settings
from datasources.quote_api import fetch_latest_quote_async
from domain.holding import Holding
from domain.nav import LatestQuote
from services.ledger_service import OperationLedger
from utils.parse_utils import normalize_code

logger = logging.getLogger(__name__)

FetchQuote = Callable[[str], Awaitable[Optional[LatestQuote]]]


class KeyValueStore(Protocol):
    def load(self, key: str) -> Any: ...

    def save(self, key: str, data: Any) -> None: ...


def _parse_holdings(raw: Any) -> Dict[str, Holding]:
    out: Dict[str, Holding] = {}
    if not isinstance(raw, list):
        return out
    for it in raw:
        if not isinstance(it, dict):
            continue
        try:
            h = Holding.from_dict(it)
        except ValueError:
            continue
        if h.code:
            out[h.code] = h
    return out


def _parse_watchlist(raw: Any) -> List[str]:
    out: List[str] = []
    if not isinstance(raw, list):
        return out
    for x in raw:
        code = normalize_code(x)
        if code and code not in out:
            out.append(code)
    return out


class PortfolioState:
    """
    持仓 / 自选 / 操作流水 / 最新行情 的状态容器。
    只有 load/save 触碰存储；其余都是内存操作。
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        holdings: Optional[Dict[str, Holding]] = None,
        watchlist: Optional[List[str]] = None,
        ledger: Optional[OperationLedger] = None,
    ) -> None:
        self.store = store
        self.holdings: Dict[str, Holding] = dict(holdings or {})
        self.watchlist: List[str] = list(watchlist or [])
        self.ledger = ledger if ledger is not None else OperationLedger()
        self.quotes: Dict[str, LatestQuote] = {}

    # ---------- persistence ----------
    @classmethod
    def load(cls, store: KeyValueStore) -> "PortfolioState":
        raw_holdings = store.load(constants.KEY_HOLDINGS)
        raw_watchlist = store.load(constants.KEY_WATCHLIST)
        raw_ops = store.load(constants.KEY_OPERATIONS)

        holdings = _parse_holdings(raw_holdings)
        watchlist = _parse_watchlist(raw_watchlist)

        # key 不存在 = 首次运行（和“存了空列表”不同）
        first_run = raw_holdings is None and raw_watchlist is None
        if first_run and not holdings and not watchlist:
            watchlist = list(getattr(settings, "DEFAULT_WATCHLIST", []))
            logger.info("first run, seeded default watchlist: %s", watchlist)

        return cls(
            store,
            holdings=holdings,
            watchlist=watchlist,
            ledger=OperationLedger.from_list(raw_ops or []),
        )

    def save(self) -> None:
        self.store.save(constants.KEY_HOLDINGS, [h.to_dict() for h in self.holdings_list()])
        self.store.save(constants.KEY_WATCHLIST, list(self.watchlist))
        self.store.save(constants.KEY_OPERATIONS, self.ledger.to_list())

    # ---------- holdings ----------
    def get_holding(self, code: str) -> Optional[Holding]:
        return self.holdings.get(normalize_code(code))

    def put_holding(self, holding: Holding) -> None:
        self.holdings[holding.code] = holding

    def delete_holding(self, code: str) -> Optional[Holding]:
        return self.holdings.pop(normalize_code(code), None)

    def holdings_list(self) -> List[Holding]:
        return [self.holdings[c] for c in sorted(self.holdings)]

    # ---------- watchlist ----------
    def add_to_watchlist(self, code: str) -> bool:
        code = normalize_code(code)
        if not code or code in self.watchlist:
            return False
        self.watchlist.append(code)
        return True

    def remove_from_watchlist(self, code: str) -> bool:
        code = normalize_code(code)
        if code not in self.watchlist:
            return False
        self.watchlist.remove(code)
        return True

    def tracked_codes(self) -> List[str]:
        out: List[str] = []
        for code in list(self.holdings) + self.watchlist:
            if code not in out:
                out.append(code)
        return out

    # ---------- quotes ----------
    def latest_nav(self, code: str) -> Optional[float]:
        q = self.quotes.get(normalize_code(code))
        return q.nav if q else None

    def fund_name(self, code: str) -> str:
        q = self.quotes.get(normalize_code(code))
        return q.name if q else ""

    async def refresh_quotes(
        self,
        codes: Optional[Iterable[str]] = None,
        fetch_quote: FetchQuote = fetch_latest_quote_async,
    ) -> Dict[str, LatestQuote]:
        """并发刷新行情；单只失败不影响其它（保留上一次的行情）"""
        targets = [normalize_code(c) for c in (codes if codes is not None else self.tracked_codes())]
        targets = [c for c in targets if c]
        if not targets:
            return {}

        results = await asyncio.gather(*(fetch_quote(c) for c in targets), return_exceptions=True)
        updated: Dict[str, LatestQuote] = {}
        for code, res in zip(targets, results):
            if isinstance(res, Exception):
                logger.warning("quote refresh failed for %s: %s", code, res)
                continue
            if res is None:
                continue
            self.quotes[code] = res
            updated[code] = res
        return updated

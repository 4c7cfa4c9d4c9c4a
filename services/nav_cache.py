from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from domain.nav import HistoryPage, NavRecord
from services.timing_service import sort_history


class NavTableCache:
    """已拉取的历史净值表分页，key=(code, page)"""

    def __init__(self) -> None:
        self._pages: Dict[Tuple[str, int], HistoryPage] = {}

    def put_page(self, page: HistoryPage) -> None:
        self._pages[(page.code, page.page)] = page

    def get_page(self, code: str, page_no: int) -> Optional[HistoryPage]:
        return self._pages.get((code, int(page_no)))

    def pages(self, code: str) -> List[HistoryPage]:
        return [p for (c, _), p in sorted(self._pages.items()) if c == code]

    def has_pages(self, code: str) -> bool:
        return any(c == code for c, _ in self._pages)

    def total_pages(self, code: str) -> Optional[int]:
        first = self.get_page(code, 1)
        if first is not None:
            return first.total_pages
        known = [p.total_pages for p in self.pages(code)]
        return max(known) if known else None

    def combined_history(self, code: str) -> List[NavRecord]:
        # 页码降序喂给 sort_history，保证同日期以第 1 页（最新拉取）的数据为准
        rows: List[NavRecord] = []
        for page in sorted(self.pages(code), key=lambda p: p.page, reverse=True):
            rows.extend(page.rows)
        return sort_history(rows)

    def clear(self, code: Optional[str] = None) -> None:
        if code is None:
            self._pages.clear()
            return
        for key in [k for k in self._pages if k[0] == code]:
            del self._pages[key]

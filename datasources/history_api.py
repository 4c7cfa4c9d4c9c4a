from __future__ import annotations

import asyncio
import html
import logging
import re
from datetime import date, timedelta
from typing import List, Optional

from config import settings
from datasources.http_client import default_headers, get_text
from domain.errors import FetchFailure
from domain.nav import HistoryPage, NavRecord
from utils.parse_utils import normalize_code, to_number
from utils.time_utils import normalize_date

logger = logging.getLogger(__name__)

HISTORY_TABLE_URL = "https://fund.eastmoney.com/f10/F10DataApi.aspx"

# var apidata={ content:"<table>...</table>",records:1234,pages:26,curpage:1};
_CONTENT_RE = re.compile(r"content\s*:\s*\"(?P<content>[\s\S]*?)\"\s*,\s*(?:records|pages|curpage)\s*:", re.M)
_ROW_RE = re.compile(r"<tr[^>]*>([\s\S]*?)</tr>", re.I)
_CELL_RE = re.compile(r"<td[^>]*>([\s\S]*?)</td>", re.I)
_TAG_RE = re.compile(r"<[^>]*>")


def _int_field(text: str, name: str) -> Optional[int]:
    m = re.search(rf"\b{name}\s*:\s*(\d+)", text)
    return int(m.group(1)) if m else None


def _cell_text(raw: str) -> str:
    return html.unescape(_TAG_RE.sub("", raw)).replace("\xa0", " ").strip()


def parse_history_rows(content: str) -> List[NavRecord]:
    """从 lsjz 表格 HTML 中取 (净值日期, 单位净值)；表头/“暂无数据”行会被跳过"""
    rows: List[NavRecord] = []
    for row_html in _ROW_RE.findall(content or ""):
        cells = _CELL_RE.findall(row_html)
        if len(cells) < 2:
            continue
        d = normalize_date(_cell_text(cells[0]))
        nav = to_number(_cell_text(cells[1]))
        if not d or nav is None:
            continue
        rows.append(NavRecord(date=d, nav=nav))
    return rows


def parse_history_response(code: str, page: int, text: str) -> HistoryPage:
    """
    解析 F10DataApi(type=lsjz) 返回的 `var apidata={...};` 脚本。
    找不到 content 视为解析失败（抛 FetchFailure，调用方可重试）。
    """
    m = _CONTENT_RE.search(text or "")
    if not m:
        raise FetchFailure(code, "unexpected history table response", page=page)

    content = m.group("content").replace('\\"', '"')
    pages = _int_field(text, "pages")
    return HistoryPage(
        code=code,
        page=_int_field(text, "curpage") or page,
        rows=parse_history_rows(content),
        total_pages=max(1, pages or 1),
        total_records=_int_field(text, "records"),
    )


def _mock_history_page(code: str, page: int, per: int) -> HistoryPage:
    # 最近的工作日在第 1 页，降序排列（与真实接口一致）
    rows: List[NavRecord] = []
    cur = date.today() - timedelta(days=1)
    skip = (page - 1) * per
    seen = 0
    while len(rows) < per:
        if cur.weekday() < 5:
            if seen >= skip:
                wiggle = ((cur.toordinal() * 7) % 13 - 6) / 1000.0
                rows.append(NavRecord(date=cur.isoformat(), nav=round(1.0 + wiggle, 4)))
            seen += 1
        cur -= timedelta(days=1)
    return HistoryPage(code=code, page=page, rows=rows, total_pages=3, total_records=3 * per)


def fetch_history_page(code: str, page: int = 1, per: Optional[int] = None) -> HistoryPage:
    """
    拉取历史净值表的一页（第 1 页为最近的净值）。
    网络/解析失败抛 FetchFailure；“没有数据”返回空 rows。
    """
    code = normalize_code(code)
    if not code:
        raise FetchFailure(str(code), "empty fund code", page=page)
    page = max(1, int(page))
    per = int(per or getattr(settings, "HISTORY_PAGE_SIZE", 49))

    if not getattr(settings, "USE_REAL_DATASOURCE", False):
        return _mock_history_page(code, page, per)

    params = {"type": "lsjz", "code": code, "page": page, "per": per}
    resp = get_text(
        cache_key=f"lsjz_{code}_{page}_{per}",
        url=HISTORY_TABLE_URL,
        params=params,
        headers=default_headers("https://fund.eastmoney.com/f10/"),
        ttl_sec=getattr(settings, "HISTORY_CACHE_TTL_SEC", 600),
    )
    if not resp.ok:
        raise FetchFailure(code, resp.error or "request failed", page=page)

    result = parse_history_response(code, page, resp.text)
    logger.debug("history %s page %s/%s rows=%s", code, result.page, result.total_pages, len(result.rows))
    return result


async def fetch_history_page_async(code: str, page: int = 1, per: Optional[int] = None) -> HistoryPage:
    return await asyncio.to_thread(fetch_history_page, code, page, per)

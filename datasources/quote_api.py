from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import List, Optional

from config import settings
from datasources.http_client import default_headers, get_text
from domain.nav import LatestQuote
from utils.parse_utils import normalize_code, to_number

logger = logging.getLogger(__name__)

FUND_GZ_URL = "https://fundgz.1234567.com.cn/js/{code}.js"
FEE_TABLE_URL = "https://fund.eastmoney.com/f10/F10DataApi.aspx"

_JSONPGZ_RE = re.compile(r"jsonpgz\((\{.*\})\)\s*;?\s*$", re.S)
_PCT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
_FEE_CONTENT_RE = re.compile(r"content\s*:\s*\"(?P<content>[\s\S]*?)\"\s*[,}]", re.M)
_FREE_RE = re.compile(r"免(费|收)")


def _mock_latest_quote(code: str) -> LatestQuote:
    today = datetime.now().date().isoformat()
    return LatestQuote(
        code=code,
        name=f"基金{code}",
        nav=1.0,
        nav_date=today,
        est_nav=1.0,
        est_pct=0.0,
        update_time=today,
    )


def parse_jsonpgz(code: str, text: str) -> Optional[LatestQuote]:
    m = _JSONPGZ_RE.search((text or "").strip())
    if not m:
        return None
    try:
        obj = json.loads(m.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    nav_date = str(obj.get("jzrq") or "").strip()
    return LatestQuote(
        code=code,
        name=str(obj.get("name") or "").strip() or code,
        nav=to_number(obj.get("dwjz")),
        nav_date=nav_date,
        est_nav=to_number(obj.get("gsz")),
        est_pct=to_number(obj.get("gszzl")),
        update_time=str(obj.get("gztime") or "").strip() or nav_date,
    )


def fetch_latest_quote(code: str) -> Optional[LatestQuote]:
    """
    当日估值/最新净值（仅用于展示口径的 latest_nav 与基金名称，不参与成交净值解析）。
    取不到返回 None。
    """
    code = normalize_code(code)
    if not code:
        return None

    if not getattr(settings, "USE_REAL_DATASOURCE", False):
        return _mock_latest_quote(code)

    resp = get_text(
        cache_key=f"gsz_{code}",
        url=FUND_GZ_URL.format(code=code),
        params={"rt": int(datetime.now().timestamp() * 1000)},
        headers=default_headers(),
    )
    if not resp.ok or not resp.text:
        return None
    quote = parse_jsonpgz(code, resp.text)
    if quote is None:
        logger.info("no gsz quote for %s", code)
    return quote


def extract_fee_rate(content: str) -> Optional[float]:
    """
    从费率表 HTML 中挑申购费率（百分比）：
    - 优先取 >=0.1% 的最小正值（跳过 0.01% 之类的尾部数字）
    - 没有百分比但写了“免费/免收”视为 0
    """
    if not content:
        return None
    values: List[float] = []
    for raw in _PCT_RE.findall(content):
        v = to_number(raw)
        if v is not None:
            values.append(v)
    if not values:
        return 0.0 if _FREE_RE.search(content) else None

    positive = [v for v in values if v > 0]
    if positive:
        preferred = [v for v in positive if v >= 0.1]
        return min(preferred or positive)
    return 0.0


def fetch_fee_rate(code: str) -> Optional[float]:
    code = normalize_code(code)
    if not code:
        return None

    if not getattr(settings, "USE_REAL_DATASOURCE", False):
        return 0.15

    resp = get_text(
        cache_key=f"jjfl_{code}",
        url=FEE_TABLE_URL,
        params={"type": "jjfl", "code": code},
        headers=default_headers("https://fund.eastmoney.com/f10/"),
        ttl_sec=24 * 60 * 60,  # 费率基本不变，给长一点缓存
    )
    if not resp.ok:
        return None
    m = _FEE_CONTENT_RE.search(resp.text)
    return extract_fee_rate(m.group("content") if m else resp.text)


async def fetch_latest_quote_async(code: str) -> Optional[LatestQuote]:
    return await asyncio.to_thread(fetch_latest_quote, code)


async def fetch_fee_rate_async(code: str) -> Optional[float]:
    return await asyncio.to_thread(fetch_fee_rate, code)

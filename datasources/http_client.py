from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import settings
from storage import paths
from storage.json_store import load_json, save_json

logger = logging.getLogger(__name__)


@dataclass
class CachedResponse:
    ok: bool
    text: str
    from_cache: bool
    ts: int
    error: str = ""


def _make_session() -> requests.Session:
    s = requests.Session()
    retries = Retry(
        total=getattr(settings, "HTTP_RETRIES", 3),
        backoff_factor=0.4,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


_SESSION = _make_session()


def default_headers(referer: str = "https://fund.eastmoney.com/") -> dict:
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) fund_ledger/0.1",
        "Referer": referer,
    }


def get_text(
    *,
    cache_key: str,
    url: str,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    ttl_sec: Optional[int] = None,
    timeout_sec: Optional[float] = None,
) -> CachedResponse:
    """
    带磁盘缓存 + 重试的 GET(text)。
    - cache_key：决定缓存文件名；ttl_sec<=0 表示不读缓存
    - 失败不抛异常，ok=False 且 error 说明原因（失败结果不缓存）
    """
    ttl = int(ttl_sec if ttl_sec is not None else getattr(settings, "HTTP_CACHE_TTL_SEC", 60))
    timeout = float(timeout_sec if timeout_sec is not None else getattr(settings, "HTTP_TIMEOUT_SEC", 8))

    cache_path = paths.file_http_cache(cache_key)
    now = int(time.time())

    # 1) cache hit
    if ttl > 0:
        cached = load_json(cache_path, default=None)
        if isinstance(cached, dict):
            ts = int(cached.get("ts", 0))
            text = str(cached.get("text", ""))
            if ts > 0 and (now - ts) <= ttl and text:
                return CachedResponse(ok=True, text=text, from_cache=True, ts=ts)

    # 2) fetch
    try:
        r = _SESSION.get(url, params=params, headers=headers or default_headers(), timeout=timeout)
    except requests.RequestException as e:
        logger.warning("GET %s failed: %s", url, e)
        return CachedResponse(ok=False, text="", from_cache=False, ts=now, error=str(e))

    if r.status_code >= 400:
        logger.warning("GET %s -> HTTP %s", url, r.status_code)
        return CachedResponse(ok=False, text=r.text or "", from_cache=False, ts=now, error=f"HTTP {r.status_code}")

    text = r.text or ""
    if ttl > 0 and text:
        save_json(cache_path, {"ts": now, "text": text})
    return CachedResponse(ok=True, text=text, from_cache=False, ts=now)

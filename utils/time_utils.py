from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

try:
    from zoneinfo import ZoneInfo
except Exception:  # pragma: no cover
    ZoneInfo = None


CN_TZ = ZoneInfo("Asia/Shanghai") if ZoneInfo is not None else timezone(timedelta(hours=8))


def now_cn() -> datetime:
    return datetime.now(CN_TZ)


def today_cn() -> str:
    return now_cn().date().isoformat()


def normalize_date(value: Any) -> str:
    """'2024-05-10 00:00' / '2024-05-10T..' -> '2024-05-10'；非法返回空串"""
    s = str(value or "").strip()[:10]
    if not s:
        return ""
    try:
        return date.fromisoformat(s).isoformat()
    except ValueError:
        return ""


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """
    解析持久化的时间戳：
    - ISO 字符串（无时区按北京时间）
    - 数字按毫秒级 epoch（旧数据格式）
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=CN_TZ)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=CN_TZ)
    s = str(value or "").strip()
    if s:
        try:
            dt = datetime.fromisoformat(s)
            return dt if dt.tzinfo else dt.replace(tzinfo=CN_TZ)
        except ValueError:
            pass
    return default if default is not None else now_cn()

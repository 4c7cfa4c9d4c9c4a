from __future__ import annotations

import os

# 数据源开关：True=真实接口，False=mock（断网/被限流时建议关）
USE_REAL_DATASOURCE = True

# 网络超时（秒）
HTTP_TIMEOUT_SEC = 8

# HTTP 磁盘缓存 TTL（秒）
HTTP_CACHE_TTL_SEC = 60

# 重试次数（requests adapter）
HTTP_RETRIES = 3

# 历史净值表：每页条数 / 缓存时长
HISTORY_PAGE_SIZE = 49
HISTORY_CACHE_TTL_SEC = 10 * 60

# 未找到净值的解析结果缓存多久（秒），之后允许重新拉取第一页
NAV_MISS_TTL_SEC = 5 * 60

# 操作流水最多保留条数（超出丢弃最旧的）
LEDGER_MAX_OPERATIONS = 200

# pending -> confirmed 轮询间隔（秒）
STATUS_POLL_INTERVAL_SEC = 60

# 15:00 前/后下单的分界；确认日在此基础上 T+1 / T+2
SETTLEMENT_CUTOFF_HOUR = 15
QDII_EXTRA_DAYS = 1

# 首次运行时的默认自选
DEFAULT_WATCHLIST = ["161725", "001632", "005963"]

LOG_LEVEL = os.getenv("FUND_LEDGER_LOG_LEVEL", "INFO").strip().upper() or "INFO"

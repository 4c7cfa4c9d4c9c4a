from __future__ import annotations

from typing import Final


# 操作类型
OP_ADD: Final[str] = "add"
OP_REDUCE: Final[str] = "reduce"
OP_EDIT: Final[str] = "edit"
TRADE_TYPES: Final[tuple] = (OP_ADD, OP_REDUCE)

# 操作状态
STATUS_PENDING: Final[str] = "pending"
STATUS_CONFIRMED: Final[str] = "confirmed"

# 15:00 前/后
TIMING_BEFORE: Final[str] = "before"
TIMING_AFTER: Final[str] = "after"
TIMINGS: Final[tuple] = (TIMING_BEFORE, TIMING_AFTER)

# 持仓录入口径
METHOD_AMOUNT: Final[str] = "amount"
METHOD_SHARES: Final[str] = "shares"
METHODS: Final[tuple] = (METHOD_AMOUNT, METHOD_SHARES)

# 本地存储 key
KEY_HOLDINGS: Final[str] = "holdings"
KEY_WATCHLIST: Final[str] = "watchlist"
KEY_OPERATIONS: Final[str] = "operations"

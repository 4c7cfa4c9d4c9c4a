from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for recoverable errors raised by the ledger core."""


class NavUnavailable(LedgerError):
    """No settlement NAV exists (yet) for a trade's date and timing."""

    def __init__(self, code: str, date: str, timing: str) -> None:
        self.code = code
        self.date = date
        self.timing = timing
        super().__init__(f"未找到该日期的净值数据：code={code}, date={date}, timing={timing}")


class FetchFailure(LedgerError):
    """Transient network or parse failure while fetching remote fund data."""

    def __init__(self, code: str, reason: str, page: Optional[int] = None) -> None:
        self.code = code
        self.page = page
        self.reason = reason
        where = f"{code} page={page}" if page is not None else code
        super().__init__(f"fetch failed ({where}): {reason}")


class HoldingNotFound(LedgerError):
    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"holding not found: {code}")


class InvalidTradeInput(LedgerError, ValueError):
    pass

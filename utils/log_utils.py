from __future__ import annotations

import logging

from config import settings
from storage import paths

_FORMAT = "[fund_ledger] %(asctime)s %(levelname)s %(name)s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str | None = None, *, to_file: bool = True) -> None:
    """
    Configure the root logger once: console + logs/fund_ledger.log.
    Safe to call repeatedly (handlers are replaced).
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if to_file:
        try:
            handlers.append(logging.FileHandler(paths.file_app_log(), encoding="utf-8"))
        except OSError:
            # 只读环境下退回仅控制台输出
            pass

    logging.basicConfig(
        format=_FORMAT,
        datefmt=_DATEFMT,
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )

    for name in ("urllib3", "requests"):
        logging.getLogger(name).setLevel(logging.WARNING)

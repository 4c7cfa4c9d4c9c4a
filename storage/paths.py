# storage/paths.py
from __future__ import annotations

import os
import re
from pathlib import Path


APP_NAME = "FundLedger"
_HOME_ENV = "FUND_LEDGER_HOME"


def runtime_root() -> Path:
    """
    Writable app root.
    - FUND_LEDGER_HOME has highest priority
    - Windows default: %LOCALAPPDATA%\\FundLedger
    - Fallback: ~/.fund_ledger
    """
    custom = os.getenv(_HOME_ENV, "").strip()
    if custom:
        return Path(custom).expanduser().resolve()

    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        if base:
            return Path(base).resolve() / APP_NAME

    return Path.home() / ".fund_ledger"


def data_dir() -> Path:
    d = runtime_root() / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _safe_filename(key: str) -> str:
    s = re.sub(r"[^A-Za-z0-9_.-]+", "_", str(key or "").strip())
    return s or "cache"


# ---------- key-value store ----------
def store_dir() -> Path:
    d = data_dir() / "store"
    d.mkdir(parents=True, exist_ok=True)
    return d


def store_filename(key: str) -> str:
    return f"{_safe_filename(key)}.json"


# ---------- http cache ----------
def file_http_cache(cache_key: str) -> Path:
    d = data_dir() / "http_cache"
    d.mkdir(parents=True, exist_ok=True)
    return d / f"{_safe_filename(cache_key)}.json"


# ---------- logs ----------
def logs_dir() -> Path:
    d = runtime_root() / "logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def file_app_log() -> Path:
    return logs_dir() / "fund_ledger.log"

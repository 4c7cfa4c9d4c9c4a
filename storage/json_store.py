# storage/json_store.py
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from storage import paths

logger = logging.getLogger(__name__)


def _ensure_parent(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def _read_text_with_fallback(path: Path) -> str:
    data = path.read_bytes()
    for enc in ("utf-8", "utf-8-sig", "gbk", "gb18030"):
        try:
            return data.decode(enc)
        except UnicodeDecodeError:
            continue
    return ""


def load_json(path: str | Path, default: Optional[Any] = None) -> Any:
    """
    读取 JSON 文件。
    - 文件不存在/为空：返回 default
    - 内容损坏：记录 warning 后返回 default
    """
    p = Path(path)
    if not p.exists():
        return default
    try:
        text = _read_text_with_fallback(p).strip()
    except OSError as e:
        logger.warning("read failed: %s (%s)", p, e)
        return default
    if not text:
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("corrupt json ignored: %s (%s)", p, e)
        return default


def save_json(path: str | Path, data: Any) -> None:
    """原子写：先写临时文件再 os.replace"""
    target = Path(path)
    _ensure_parent(target)
    text = json.dumps(data, ensure_ascii=False, indent=2)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{target.name}.", suffix=".tmp", dir=str(target.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.replace(str(tmp_path), str(target))
        except PermissionError:
            # Some Windows environments may deny atomic replace; fallback to direct write.
            target.write_text(text, encoding="utf-8")
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


class JsonKeyValueStore:
    """
    key -> 一个 JSON 文件。
    load 返回 None 表示该 key 从未写过（首次运行），与空列表区分开。
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else paths.store_dir()

    def _path(self, key: str) -> Path:
        return self.root / paths.store_filename(key)

    def load(self, key: str) -> Any:
        return load_json(self._path(key), default=None)

    def save(self, key: str, data: Any) -> None:
        save_json(self._path(key), data)


class MemoryKeyValueStore:
    """测试/临时会话用：不落盘"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, str] = {}
        for k, v in (initial or {}).items():
            self.save(k, v)

    def load(self, key: str) -> Any:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def save(self, key: str, data: Any) -> None:
        self._data[key] = json.dumps(data, ensure_ascii=False)

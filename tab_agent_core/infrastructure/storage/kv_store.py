import asyncio
import copy
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol
from uuid import uuid4

from tab_agent_core.config.settings import settings
from tab_agent_core.domain.exceptions import StorageError
from tab_agent_core.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class StorageChange:
    key: str
    old_value: Any
    new_value: Any


ChangeListener = Callable[[StorageChange], None]


class KeyValueStore(Protocol):
    """字符串键到 JSON 值的持久化映射，写入后通知监听者。"""

    async def get(self, key: str) -> Any:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    def add_listener(self, listener: ChangeListener) -> None:
        ...

    def remove_listener(self, listener: ChangeListener) -> None:
        ...


class _ListenerMixin:
    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, change: StorageChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                # 监听者的异常不能影响已经完成的写入
                logger.error(
                    "Storage listener failed",
                    extra={"extra": {"key": change.key, "error": str(exc)}},
                )


def _json_copy(key: str, value: Any) -> Any:
    try:
        return json.loads(json.dumps(value, ensure_ascii=False))
    except (TypeError, ValueError) as e:
        raise StorageError(code="STORE_WRITE_ERROR", message=f"Value for key {key!r} is not JSON-serializable: {e}")


class MemoryKeyValueStore(_ListenerMixin):
    """进程内实现，主要用于测试和嵌入场景。值在写入时做 JSON 往返以保证可序列化。"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._data: Dict[str, Any] = {k: _json_copy(k, v) for k, v in (initial or {}).items()}

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        new_value = _json_copy(key, value)
        old_value = self._data.get(key)
        self._data[key] = new_value
        self._notify(StorageChange(key, copy.deepcopy(old_value), copy.deepcopy(new_value)))

    async def delete(self, key: str) -> None:
        if key not in self._data:
            return
        old_value = self._data.pop(key)
        self._notify(StorageChange(key, old_value, None))


class JsonFileKeyValueStore(_ListenerMixin):
    """每个键一个 JSON 文件，写入走临时文件 + os.replace。

    文件 I/O 放到线程里执行，避免阻塞事件循环。
    """

    def __init__(self, root: str | Path | None = None):
        super().__init__()
        self._root = Path(root or settings.storage_root).resolve()
        self._kv_root = self._root / "kv"
        self._kv_root.mkdir(parents=True, exist_ok=True)

    async def get(self, key: str) -> Any:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any) -> None:
        payload = _json_copy(key, value)
        try:
            old_value = await asyncio.to_thread(self._read, key)
        except StorageError:
            # 旧文件损坏时允许直接覆盖
            old_value = None
        await asyncio.to_thread(self._write, key, payload)
        self._notify(StorageChange(key, old_value, payload))

    async def delete(self, key: str) -> None:
        path = self._path(key)
        old_value = await asyncio.to_thread(self._read, key)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageError(code="STORE_DELETE_ERROR", message=str(e))
        if old_value is not None:
            self._notify(StorageChange(key, old_value, None))

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise StorageError(code="STORE_KEY_ERROR", message=f"Invalid storage key: {key!r}")
        return self._kv_root / f"{key}.json"

    def _read(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e))

    def _write(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = self._kv_root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except Exception as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e))

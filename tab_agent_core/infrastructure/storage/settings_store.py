"""settings 文档的读写入口。

整份 settings 是一个读-改-写文档，不按标签页拆分。为了避免两个并发更新
（例如两个标签页同时追加对话）互相覆盖，所有写操作都必须经过
SettingsManager.update，它在一把 asyncio.Lock 下完成读取、修改和写回。
"""

import asyncio
from typing import Awaitable, Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from tab_agent_core.config.settings import settings as core_settings
from tab_agent_core.domain.exceptions import StorageError
from tab_agent_core.domain.extension_settings import ExtensionSettings, ProviderSettings
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.infrastructure.storage.kv_store import KeyValueStore
from tab_agent_core.providers.registry import get_preset


SETTINGS_KEY = "settings"

Mutator = Callable[[ExtensionSettings], Union[Optional[ExtensionSettings], Awaitable[Optional[ExtensionSettings]]]]


def default_settings(cfg=core_settings) -> ExtensionSettings:
    preset = get_preset(cfg.default_provider)
    return ExtensionSettings(
        provider=ProviderSettings(name=preset.name, endpoint=preset.endpoint, model=preset.model, api_key=""),
        truncation_limit=cfg.truncation_limit,
    )


class SettingsManager:
    def __init__(self, store: KeyValueStore, cfg=core_settings):
        self._store = store
        self._cfg = cfg
        self._lock = asyncio.Lock()

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def load(self) -> ExtensionSettings:
        """严格读取：存储不可读或文档损坏时抛出 StorageError。

        文档不存在时返回默认值（不写回，写回只发生在 update 中）。
        """

        raw = await self._store.get(SETTINGS_KEY)
        if raw is None:
            return default_settings(self._cfg)
        try:
            return ExtensionSettings.model_validate(raw)
        except PydanticValidationError as e:
            raise StorageError(code="STORE_READ_ERROR", message=f"Settings document is invalid: {e}")

    async def get_settings(self) -> ExtensionSettings:
        """读取 settings；读取失败时退回默认值，仅用于只读场景。"""

        try:
            return await self.load()
        except StorageError as e:
            logger.warning(
                "Settings unavailable, falling back to defaults",
                extra={"extra": {"code": e.code, "error": e.message}},
            )
            return default_settings(self._cfg)

    async def update(self, mutator: Mutator) -> ExtensionSettings:
        """在写锁内执行一次读-改-写。

        mutator 可以原地修改传入的对象，也可以返回一个新对象；
        可以是同步函数或协程函数。读取失败时不会用默认值覆盖存储。
        """

        async with self._lock:
            current = await self.load()
            outcome = mutator(current)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
            updated = outcome if isinstance(outcome, ExtensionSettings) else current
            await self._store.set(SETTINGS_KEY, updated.to_json())
            return updated

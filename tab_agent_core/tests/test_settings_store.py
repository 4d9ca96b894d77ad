import asyncio

import pytest

from tab_agent_core.domain.conversation import make_turn
from tab_agent_core.domain.exceptions import StorageError
from tab_agent_core.infrastructure.storage.kv_store import MemoryKeyValueStore
from tab_agent_core.infrastructure.storage.settings_store import SETTINGS_KEY, SettingsManager
from tab_agent_core.infrastructure.storage.tab_conversations import TabConversationStore


@pytest.mark.asyncio
async def test_missing_document_yields_defaults(cfg):
    manager = SettingsManager(MemoryKeyValueStore(), cfg)
    current = await manager.load()
    assert current.provider.name == "LM Studio"
    assert current.provider.endpoint == "http://localhost:1234/v1/chat/completions"
    assert current.tab_conversations == {}
    assert current.tools_enabled is True
    assert current.truncation_limit == 200


@pytest.mark.asyncio
async def test_invalid_document_load_vs_get_settings(cfg):
    store = MemoryKeyValueStore({SETTINGS_KEY: {"tabConversations": "not-a-map"}})
    manager = SettingsManager(store, cfg)
    with pytest.raises(StorageError):
        await manager.load()
    fallback = await manager.get_settings()
    assert fallback.tab_conversations == {}

    # 写操作不会用默认值覆盖无法读取的文档
    with pytest.raises(StorageError):
        await manager.update(lambda s: None)
    assert await store.get(SETTINGS_KEY) == {"tabConversations": "not-a-map"}


@pytest.mark.asyncio
async def test_document_uses_camel_case_on_the_wire(cfg):
    store = MemoryKeyValueStore()
    manager = SettingsManager(store, cfg)
    await TabConversationStore(manager).append_turn("7", make_turn("user", "hi"))

    raw = await store.get(SETTINGS_KEY)
    assert "tabConversations" in raw and "chatHistory" in raw and "toolsEnabled" in raw
    turn = raw["tabConversations"]["7"][0]
    assert turn["role"] == "user"
    assert turn["isStreaming"] is False
    assert isinstance(turn["timestamp"], int)


@pytest.mark.asyncio
async def test_concurrent_appends_to_different_tabs_are_not_lost(cfg):
    store = MemoryKeyValueStore()
    original_get = store.get

    async def slow_get(key):
        value = await original_get(key)
        await asyncio.sleep(0)  # 放大读-改-写之间的交错
        return value

    store.get = slow_get
    conversations = TabConversationStore(SettingsManager(store, cfg))

    await asyncio.gather(
        *[conversations.append_turn(str(tab), make_turn("user", f"msg {tab}-{i}")) for tab in range(5) for i in range(4)]
    )

    for tab in range(5):
        history = await conversations.get_history(str(tab))
        assert [t.content for t in history] == [f"msg {tab}-{i}" for i in range(4)]


@pytest.mark.asyncio
async def test_async_mutator_returning_new_object(cfg):
    manager = SettingsManager(MemoryKeyValueStore(), cfg)

    async def disable_tools(current):
        return current.model_copy(update={"tools_enabled": False})

    updated = await manager.update(disable_tools)
    assert updated.tools_enabled is False
    assert (await manager.load()).tools_enabled is False

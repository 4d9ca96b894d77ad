from typing import List, Optional, Sequence

from tab_agent_core.domain.conversation import ConversationStore, ConversationTurn, has_tool_turn
from tab_agent_core.domain.extension_settings import ExtensionSettings
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.infrastructure.storage.settings_store import SettingsManager


class TabConversationStore(ConversationStore):
    """把每个标签页的对话保存在 settings.tabConversations[tab_id] 中。

    tab_id 为 None 时读写旧版的单线程 chatHistory。
    每次修改都是一次完整的 settings 读-改-写，由 SettingsManager 串行化。
    """

    def __init__(self, settings_manager: SettingsManager):
        self._settings = settings_manager

    async def get_history(self, tab_id: Optional[str]) -> List[ConversationTurn]:
        current = await self._settings.load()
        if tab_id is None:
            return list(current.chat_history)
        return list(current.tab_conversations.get(str(tab_id), []))

    async def append_turn(self, tab_id: Optional[str], turn: ConversationTurn) -> None:
        await self.append_turns(tab_id, [turn])

    async def append_turns(self, tab_id: Optional[str], turns: Sequence[ConversationTurn]) -> None:
        if not turns:
            return
        new_turns = list(turns)

        def _append(current: ExtensionSettings) -> None:
            if tab_id is None:
                current.chat_history.extend(new_turns)
            else:
                current.tab_conversations.setdefault(str(tab_id), []).extend(new_turns)

        await self._settings.update(_append)

    async def clear(self, tab_id: str) -> ExtensionSettings:
        removed = {"turns": 0}

        def _clear(current: ExtensionSettings) -> None:
            history = current.tab_conversations.pop(str(tab_id), None)
            removed["turns"] = len(history or [])

        updated = await self._settings.update(_clear)
        logger.info(
            "Cleared tab conversation",
            extra={"extra": {"tab_id": str(tab_id), "removed_turns": removed["turns"]}},
        )
        return updated

    async def tools_offered(self, tab_id: Optional[str]) -> bool:
        return has_tool_turn(await self.get_history(tab_id))

"""持久化的 settings 文档模型。

整个扩展只有一份 settings 记录，保存在 KeyValueStore 的 "settings" 键下：
Provider 配置、旧版单线程 chatHistory、按标签页划分的 tabConversations
以及若干开关。JSON 中使用 camelCase，Python 侧使用 snake_case。
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tab_agent_core.domain.conversation import ConversationTurn


class ProviderSettings(BaseModel):
    """用户选择的 LLM 端点。endpoint 为完整的 chat/completions URL。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str = "Custom"
    endpoint: str = ""
    model: str = ""
    api_key: Optional[str] = None

    def cache_key(self) -> tuple:
        return (self.endpoint, self.model, self.api_key or "")


class ExtensionSettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    chat_history: List[ConversationTurn] = Field(default_factory=list)
    tab_conversations: Dict[str, List[ConversationTurn]] = Field(default_factory=dict)
    tools_enabled: bool = True
    screenshot_tool_enabled: bool = False
    debug_mode: bool = True
    truncation_limit: Optional[int] = Field(default=None, ge=100)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

"""LLM Client 集成层。

该包下的模块负责：
- 定义 LLM Client 抽象接口 (base)。
- 维护预置 Provider 列表 (registry)。
- 提供 OpenAI 兼容接口的具体实现 (openai_client)。
"""

from tab_agent_core.config.settings import settings
from tab_agent_core.domain.extension_settings import ProviderSettings
from tab_agent_core.providers.base import LlmClient
from tab_agent_core.providers.openai_client import OpenAICompatibleClient


def create_llm_client(provider: ProviderSettings) -> LlmClient:
    """根据 settings 文档中的 provider 配置创建 LLM Client。"""

    return OpenAICompatibleClient(provider, settings)

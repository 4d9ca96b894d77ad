"""Provider 预置配置。

面板里的 Provider 下拉框使用这些预置项；用户选择后 endpoint / model 会被
复制进 settings 文档的 provider 字段，之后只以 settings 中的值为准。"""

from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class ProviderPreset:
    """单个预置 Provider。endpoint 为完整的 chat/completions URL。"""

    name: str
    endpoint: str
    model: str


DEFAULT_PROVIDERS: List[ProviderPreset] = [
    ProviderPreset(
        name="LM Studio",
        endpoint="http://localhost:1234/v1/chat/completions",
        model="local-model",
    ),
    ProviderPreset(
        name="OpenAI",
        endpoint="https://api.openai.com/v1/chat/completions",
        model="gpt-4o",
    ),
    ProviderPreset(
        name="Anthropic Claude (via OpenRouter)",
        endpoint="https://openrouter.ai/api/v1/chat/completions",
        model="anthropic/claude-3.5-sonnet",
    ),
    ProviderPreset(name="Custom", endpoint="", model=""),
]


def get_preset(name: str) -> ProviderPreset:
    """根据名称获取预置 Provider，名称不区分大小写；找不到时返回第一个。"""

    key = (name or "").lower()
    for preset in DEFAULT_PROVIDERS:
        if preset.name.lower() == key:
            return preset
    return DEFAULT_PROVIDERS[0]

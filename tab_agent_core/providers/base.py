"""LLM Client 抽象接口。

协调器不直接依赖具体的 HTTP 实现，而是依赖此协议：

- chat(req): 一次完整的非流式调用，能解析工具调用结构。
- chat_stream(req): 流式调用，逐步产出增量。
- test_connection(): 面板 "测试连接" 按钮使用。
"""

from typing import AsyncIterator, Dict, Any, Protocol
from tab_agent_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk


class LlmClient(Protocol):
    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        ...

    async def test_connection(self) -> Dict[str, Any]:
        ...

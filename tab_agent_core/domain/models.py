"""统一的对话与结果数据模型。

本模块定义了协调器与 LLM Client 之间共享的标准数据结构：

- ChatMessage: 一条发往/来自模型的消息（system/user/assistant/tool）。
- ChatRequest: 发给 LLM Client 的完整请求。
- ChatResult: 从 Provider 响应解析出的统一结果。

LLM Client 适配器只依赖这些模型，并负责在 API JSON 和这些模型之间做转换；
持久化用的 ConversationTurn 由 orchestrator 负责转换成 ChatMessage。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Any, Dict, List, Union, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from tab_agent_core.tools.definitions import ToolCall, ToolDef


# LLM 消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant", "tool"]

MessageContent = Union[str, List[Dict[str, Any]]]


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    - tool_calls: role 为 "assistant" 且模型触发工具调用时的调用列表。
    - tool_call_id: role 为 "tool" 时，用于关联某一次工具调用。
    """

    role: Role
    content: MessageContent
    meta: Dict[str, Any] = field(default_factory=dict)
    tool_calls: Optional[List["ToolCall"]] = None
    tool_call_id: Optional[str] = None


@dataclass
class ChatRequest:
    """一次完整的聊天请求。"""

    model: str
    messages: List[ChatMessage]
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    # 工具定义列表：为 None 时请求体中不携带 tools 字段
    tools: Optional[List["ToolDef"]] = None
    tool_choice: Literal["auto", "none", "required"] = "auto"


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。raw 保存原始响应 JSON，便于调试。"""

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

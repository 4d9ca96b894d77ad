"""按标签页隔离的对话记录模型。

ConversationTurn 直接持久化在 settings 文档的 tabConversations 中，
字段名在 JSON 中与面板 UI 保持一致（isStreaming 等使用 camelCase）。
"""

import threading
import time
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field


TurnRole = Literal["user", "assistant", "tool"]

# 文本，或 OpenAI 风格的多段内容（text / input_image）
TurnContent = Union[str, List[Dict[str, Any]]]


class TurnToolCall(BaseModel):
    """assistant 轮次中模型请求的一次工具调用。"""

    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ConversationTurn(BaseModel):
    """对话中的一条消息。

    - tool 轮次额外记录 name / arguments / result / error，并通过 tool_call_id
      关联到发起调用的 assistant 轮次。
    - 创建后不再修改。
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    role: TurnRole
    content: TurnContent = ""
    timestamp: int
    tool_calls: Optional[List[TurnToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None
    result: Any = None
    error: Optional[str] = None
    is_streaming: bool = Field(default=False, alias="isStreaming")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_id_lock = threading.Lock()
_last_id = 0


def now_ms() -> int:
    return int(time.time() * 1000)


def new_turn_id() -> str:
    """生成唯一且单调递增的轮次 ID（毫秒时间戳，冲突时递增）。"""

    global _last_id
    with _id_lock:
        candidate = now_ms()
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


def make_turn(role: TurnRole, content: TurnContent = "", **fields: Any) -> ConversationTurn:
    return ConversationTurn(id=new_turn_id(), role=role, content=content, timestamp=now_ms(), **fields)


def has_tool_turn(history: Sequence[ConversationTurn]) -> bool:
    """历史中是否已经出现过 tool 轮次。

    工具 schema 是否需要随请求发送完全由这个函数从历史推导，
    不单独存储 toolsOffered 标志。
    """

    return any(turn.role == "tool" for turn in history)


class ConversationStore(Protocol):
    async def get_history(self, tab_id: Optional[str]) -> List[ConversationTurn]:
        ...

    async def append_turn(self, tab_id: Optional[str], turn: ConversationTurn) -> None:
        ...

    async def append_turns(self, tab_id: Optional[str], turns: Sequence[ConversationTurn]) -> None:
        ...

    async def clear(self, tab_id: str) -> None:
        ...

    async def tools_offered(self, tab_id: Optional[str]) -> bool:
        ...

"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用的页面工具列表暴露给 LLM（ToolDef / ToolParam）。
- 在协调器中保存和执行模型触发的工具调用（ToolCall / ToolResult）。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any]


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam]
    is_async: bool = False


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ToolResult:
    """页面执行器对一次工具调用的回复。

    meta 为分页元数据（responseId / totalPages 等），只有结果被分页时才有值。
    """

    call_id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    meta: Optional[Dict[str, Any]] = field(default=None)

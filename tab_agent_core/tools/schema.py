"""页面工具的固定能力集合。

八个操作由标签页内的页面执行器实现，协调器只负责：
- 按设置挑选提供给模型的工具，并序列化为 OpenAI function-calling 的 tools 列表；
- 在发送 EXECUTE_FUNCTION 之前校验名称和参数。
"""

from typing import Any, Dict, List, Mapping

from tab_agent_core.domain.exceptions import ToolArgumentError
from tab_agent_core.tools.definitions import ToolDef, ToolParam


def _param(name: str, description: str, schema: Dict[str, Any], required: bool = False) -> ToolParam:
    return ToolParam(name=name, description=description, required=required, schema=schema)


PAGE_TOOLS: List[ToolDef] = [
    ToolDef(
        name="find",
        description=(
            "Find elements on the current page by text pattern or CSS selector. Returns details about "
            "matching elements including their text content, attributes, and position."
        ),
        params={
            "pattern": _param(
                "pattern",
                'Text pattern to search for or CSS selector (e.g., "button", ".class-name", "#id")',
                {"type": "string"},
                required=True,
            ),
            "options": _param(
                "options",
                "limit (default 10), includeHidden (default false), searchType: text | selector | auto",
                {
                    "type": "object",
                    "properties": {
                        "limit": {"type": "integer"},
                        "includeHidden": {"type": "boolean"},
                        "searchType": {"type": "string", "enum": ["text", "selector", "auto"]},
                    },
                },
            ),
        },
    ),
    ToolDef(
        name="click",
        description="Click an element on the page identified by a CSS selector, optionally narrowed by its text.",
        params={
            "selector": _param("selector", "CSS selector of the element to click", {"type": "string"}, required=True),
            "text": _param("text", "Visible text the element must contain", {"type": "string"}),
        },
    ),
    ToolDef(
        name="type",
        description="Type text into an input, textarea or contenteditable element.",
        params={
            "selector": _param("selector", "CSS selector of the input element", {"type": "string"}, required=True),
            "text": _param("text", "Text to type", {"type": "string"}, required=True),
            "options": _param(
                "options",
                "clear (replace existing value), delay (ms between keystrokes), pressEnter",
                {
                    "type": "object",
                    "properties": {
                        "clear": {"type": "boolean"},
                        "delay": {"type": "integer"},
                        "pressEnter": {"type": "boolean"},
                    },
                },
            ),
        },
    ),
    ToolDef(
        name="extract",
        description="Extract text content or a property from page elements. Without a selector, extracts the page text.",
        params={
            "selector": _param("selector", "CSS selector of the elements to extract from", {"type": "string"}),
            "property": _param("property", "Element property to read instead of text (e.g. href, value)", {"type": "string"}),
        },
    ),
    ToolDef(
        name="describe",
        description="Describe a page section: its structure, interactive elements and visible text.",
        params={
            "selector": _param("selector", "CSS selector of the section to describe", {"type": "string"}, required=True),
        },
    ),
    ToolDef(
        name="summary",
        description="Get a summary of the current page: title, URL, headings, forms and main content.",
        params={},
    ),
    ToolDef(
        name="screenshot",
        description="Capture a screenshot of the visible part of the current page.",
        params={},
        is_async=True,
    ),
    ToolDef(
        name="getResponsePage",
        description="Retrieve another page of a truncated tool response using its responseId.",
        params={
            "responseId": _param("responseId", "Response id from the truncated result's _meta", {"type": "string"}, required=True),
            "page": _param("page", "0-based page number", {"type": "integer"}, required=True),
        },
        is_async=True,
    ),
]

TOOLS_BY_NAME: Dict[str, ToolDef] = {tool.name: tool for tool in PAGE_TOOLS}
PAGE_FUNCTIONS = tuple(TOOLS_BY_NAME)
ASYNC_FUNCTIONS = frozenset(tool.name for tool in PAGE_TOOLS if tool.is_async)

_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def offered_tools(screenshot_enabled: bool = False) -> List[ToolDef]:
    """发给模型的工具列表。截图工具默认不提供，由设置里的开关决定。"""

    return [tool for tool in PAGE_TOOLS if screenshot_enabled or tool.name != "screenshot"]


def serialize_tool(tool: ToolDef) -> Dict[str, Any]:
    """转换为 OpenAI tools 列表中的一项。"""

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, param in tool.params.items():
        properties[name] = {**param.schema, "description": param.description}
        if param.required:
            required.append(name)
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


def serialize_tools() -> List[Dict[str, Any]]:
    return [serialize_tool(tool) for tool in PAGE_TOOLS]


def available_functions_text() -> str:
    return ", ".join(PAGE_FUNCTIONS)


def validate_arguments(name: str, arguments: Any) -> Dict[str, Any]:
    """校验一次工具调用的参数，返回可直接转发的参数字典。

    未知工具名、无法解析的 JSON 参数、缺少必填参数或类型不符时抛出 ToolArgumentError。
    """

    tool = TOOLS_BY_NAME.get(name)
    if tool is None:
        raise ToolArgumentError(
            code="UNKNOWN_TOOL",
            message=f"Function '{name}' not found. Available functions: {available_functions_text()}",
        )
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, Mapping):
        raise ToolArgumentError(code="INVALID_ARGUMENTS", message=f"Arguments for '{name}' must be an object")
    if "_raw" in arguments:
        raise ToolArgumentError(
            code="INVALID_ARGUMENTS",
            message=f"Arguments for '{name}' are not valid JSON: {arguments['_raw']}",
        )

    for param in tool.params.values():
        value = arguments.get(param.name)
        if value is None:
            if param.required:
                raise ToolArgumentError(
                    code="INVALID_ARGUMENTS",
                    message=f"Missing required argument '{param.name}' for '{name}'",
                )
            continue
        expected = _JSON_TYPES.get(param.schema.get("type", "string"), (object,))
        # bool 是 int 的子类，整数参数不接受 true/false
        if isinstance(value, bool) and bool not in expected:
            ok = False
        else:
            ok = isinstance(value, expected)
        if not ok:
            raise ToolArgumentError(
                code="INVALID_ARGUMENTS",
                message=f"Argument '{param.name}' for '{name}' must be of type {param.schema.get('type')}",
            )
    return dict(arguments)

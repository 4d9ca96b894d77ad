import pytest

from tab_agent_core.domain.exceptions import ToolArgumentError
from tab_agent_core.tools.schema import ASYNC_FUNCTIONS, PAGE_FUNCTIONS, offered_tools, serialize_tools, validate_arguments


def test_fixed_capability_set():
    assert PAGE_FUNCTIONS == ("find", "click", "type", "extract", "describe", "summary", "screenshot", "getResponsePage")
    assert ASYNC_FUNCTIONS == {"screenshot", "getResponsePage"}


def test_screenshot_is_offered_only_when_enabled():
    assert "screenshot" not in [t.name for t in offered_tools()]
    assert [t.name for t in offered_tools(screenshot_enabled=True)] == list(PAGE_FUNCTIONS)
    assert len(offered_tools(screenshot_enabled=False)) == len(PAGE_FUNCTIONS) - 1


def test_serialized_tools_follow_openai_shape():
    tools = {t["function"]["name"]: t for t in serialize_tools()}
    assert set(tools) == set(PAGE_FUNCTIONS)
    find = tools["find"]
    assert find["type"] == "function"
    assert find["function"]["parameters"]["required"] == ["pattern"]
    assert find["function"]["parameters"]["properties"]["pattern"]["type"] == "string"
    assert tools["summary"]["function"]["parameters"] == {"type": "object", "properties": {}, "required": []}
    assert tools["getResponsePage"]["function"]["parameters"]["required"] == ["responseId", "page"]


def test_validate_arguments_accepts_valid_calls():
    assert validate_arguments("find", {"pattern": "button"}) == {"pattern": "button"}
    assert validate_arguments("summary", None) == {}
    assert validate_arguments("getResponsePage", {"responseId": "r", "page": 0}) == {"responseId": "r", "page": 0}


@pytest.mark.parametrize(
    "name, arguments, code",
    [
        ("unknown_tool", {}, "UNKNOWN_TOOL"),
        ("find", {}, "INVALID_ARGUMENTS"),
        ("find", {"pattern": 3}, "INVALID_ARGUMENTS"),
        ("getResponsePage", {"responseId": "r", "page": True}, "INVALID_ARGUMENTS"),
        ("click", {"_raw": "{selector: "}, "INVALID_ARGUMENTS"),
        ("click", ["#a"], "INVALID_ARGUMENTS"),
    ],
)
def test_validate_arguments_rejects_bad_calls(name, arguments, code):
    with pytest.raises(ToolArgumentError) as exc:
        validate_arguments(name, arguments)
    assert exc.value.code == code


def test_unknown_tool_message_lists_available_functions():
    with pytest.raises(ToolArgumentError) as exc:
        validate_arguments("unknown_tool", {})
    assert exc.value.message.startswith("Function 'unknown_tool' not found. Available functions: find, click")

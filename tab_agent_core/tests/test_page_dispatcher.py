import pytest

from conftest import SCREENSHOT, FakePage
from tab_agent_core.domain.envelope import Envelope, MessageType
from tab_agent_core.page.dispatcher import PageFunctionDispatcher
from tab_agent_core.router.message_router import MessageRouter


def execute(router, function, arguments=None):
    replies = []
    keep_open = router.dispatch(
        {"type": "EXECUTE_FUNCTION", "payload": {"function": function, "arguments": arguments or {}}},
        replies.append,
    )
    return keep_open, replies


def test_sync_functions_reply_immediately():
    page = FakePage()
    router = MessageRouter("tab:1")
    PageFunctionDispatcher(page).install(router)

    keep_open, replies = execute(router, "find", {"pattern": "button", "options": {"limit": 3}})

    assert keep_open is False
    assert replies[0].type == MessageType.FUNCTION_RESPONSE
    assert replies[0].payload["success"] is True
    assert len(replies[0].payload["result"]) == 3
    assert page.calls == [("find", {"pattern": "button", "options": {"limit": 3}})]


def test_unknown_function_lists_available_functions():
    router = MessageRouter("tab:1")
    PageFunctionDispatcher(FakePage()).install(router)

    _, replies = execute(router, "unknown_tool")

    payload = replies[0].payload
    assert payload["success"] is False
    assert payload["error"] == (
        "Function 'unknown_tool' not found. Available functions: "
        "find, click, type, extract, describe, summary, screenshot, getResponsePage"
    )


def test_invalid_arguments_and_helper_errors():
    class BrokenPage(FakePage):
        def click(self, selector, text=None):
            raise LookupError(f"No element matches {selector}")

    page = BrokenPage()
    router = MessageRouter("tab:1")
    PageFunctionDispatcher(page).install(router)

    _, replies = execute(router, "type", {"selector": "#q"})
    assert replies[0].payload == {"success": False, "error": "Missing required argument 'text' for 'type'"}

    _, replies = execute(router, "click", {"selector": "#missing"})
    assert replies[0].payload == {"success": False, "error": "No element matches #missing"}
    assert page.calls == []


@pytest.mark.asyncio
async def test_screenshot_calls_back_into_the_coordinator():
    runtime = MessageRouter("background")
    seen = []

    async def capture(payload, sender_tab_id):
        seen.append(sender_tab_id)
        return Envelope(MessageType.FUNCTION_RESPONSE, {"success": True, "dataUrl": SCREENSHOT})

    runtime.register(MessageType.CAPTURE_SCREENSHOT, capture)
    router = MessageRouter("tab:5")
    PageFunctionDispatcher(FakePage(), runtime=runtime, tab_id="5").install(router)

    reply = await router.request({"type": "EXECUTE_FUNCTION", "payload": {"function": "screenshot"}})

    assert reply.payload == {"success": True, "result": SCREENSHOT}
    assert seen == ["5"]


@pytest.mark.asyncio
async def test_get_response_page_error_is_reported_as_failure():
    runtime = MessageRouter("background")

    def missing(payload, sender_tab_id):
        return Envelope(MessageType.ERROR, {"error": "Response not found or expired: resp_x"})

    runtime.register(MessageType.GET_RESPONSE_PAGE, missing)
    router = MessageRouter("tab:5")
    PageFunctionDispatcher(FakePage(), runtime=runtime, tab_id="5").install(router)

    keep_open, _ = execute(router, "getResponsePage", {"responseId": "resp_x", "page": 0})
    assert keep_open is True
    reply = await router.request(
        {"type": "EXECUTE_FUNCTION", "payload": {"function": "getResponsePage", "arguments": {"responseId": "resp_x", "page": 0}}}
    )
    assert reply.payload == {"success": False, "error": "Response not found or expired: resp_x"}

import asyncio

import pytest

from conftest import FakeLlm, FakePage, text_reply, tool_reply
from tab_agent_core.domain.envelope import MessageType
from tab_agent_core.domain.exceptions import ApiError, LlmTimeoutError


def send(service, message, tab_id="42"):
    return service.request({"type": "SEND_MESSAGE", "payload": {"message": message, "tabId": tab_id}})


@pytest.mark.asyncio
async def test_find_buttons_round_trip(make_service):
    llm = FakeLlm([tool_reply(("find", {"pattern": "button"})), text_reply("There are 3 buttons on this page.")])
    service = make_service(llm)
    page = FakePage()
    service.connect_tab("42", page)

    reply = await send(service, "Find all buttons on this page")

    assert reply.type == MessageType.MESSAGE_RESPONSE
    assert reply.payload == {"content": "There are 3 buttons on this page."}
    history = await service.conversations.get_history("42")
    assert [t.role for t in history] == ["user", "assistant", "tool", "assistant"]
    assert history[1].tool_calls[0].name == "find"
    assert history[2].tool_call_id == history[1].tool_calls[0].id
    assert history[2].name == "find"
    assert history[2].arguments == {"pattern": "button"}
    assert len(history[2].result) == 3
    assert history[3].content == "There are 3 buttons on this page."
    assert page.calls == [("find", {"pattern": "button", "options": None})]

    (first_mode, first), (second_mode, second) = llm.requests
    assert first_mode == "chat" and first.tools is not None
    assert second_mode == "stream" and second.tools is None
    assert [m.role for m in second.messages] == ["system", "user", "assistant", "tool"]
    assert second.messages[3].tool_call_id == "call_0"


@pytest.mark.asyncio
async def test_tool_calls_run_sequentially_in_received_order(make_service):
    llm = FakeLlm([tool_reply(("click", {"selector": "#a"}), ("extract", {"selector": "#b"})), text_reply("done")])
    service = make_service(llm)
    events = []
    service.connect_tab("42", FakePage(events))
    original_send = service.transport.send

    async def recording_send(tab_id, message, timeout=None):
        name = message.payload["function"]
        events.append(f"send:{name}")
        reply = await original_send(tab_id, message, timeout=timeout)
        await asyncio.sleep(0)
        events.append(f"reply:{name}")
        return reply

    service.transport.send = recording_send
    await send(service, "click a then read b")

    assert events == ["send:click", "page:click", "reply:click", "send:extract", "page:extract", "reply:extract"]
    history = await service.conversations.get_history("42")
    assert [t.name for t in history if t.role == "tool"] == ["click", "extract"]


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_turn_without_contacting_the_page(make_service):
    llm = FakeLlm([tool_reply(("unknown_tool", {}), ("summary", {})), text_reply("Here is the summary.")])
    service = make_service(llm)
    page = FakePage()
    service.connect_tab("42", page)

    reply = await send(service, "summarize")

    assert reply.payload["content"] == "Here is the summary."
    tool_turns = [t for t in await service.conversations.get_history("42") if t.role == "tool"]
    assert tool_turns[0].error.startswith("Function 'unknown_tool' not found")
    assert tool_turns[0].content.startswith("Error: Function 'unknown_tool' not found")
    assert tool_turns[1].error is None
    assert page.calls == [("summary", {})]


@pytest.mark.asyncio
async def test_closed_tab_becomes_error_turn_and_loop_continues(make_service):
    llm = FakeLlm([tool_reply(("summary", {})), text_reply("The tab seems to be gone.")])
    service = make_service(llm)

    reply = await send(service, "what is on this page?", tab_id="7")

    assert reply.payload == {"content": "The tab seems to be gone."}
    tool_turn = [t for t in await service.conversations.get_history("7") if t.role == "tool"][0]
    assert "Receiving end does not exist" in tool_turn.error


@pytest.mark.asyncio
async def test_llm_error_fails_without_fabricated_turns(make_service):
    llm = FakeLlm([ApiError(code="API_ERROR", message="HTTP 500: boom", http_status=500)])
    service = make_service(llm)

    reply = await send(service, "hello")

    assert reply.type == MessageType.ERROR
    assert reply.payload == {"error": "HTTP 500: boom", "code": "API_ERROR"}
    assert [t.role for t in await service.conversations.get_history("42")] == ["user"]


@pytest.mark.asyncio
async def test_timeout_after_tool_round_keeps_progress_and_is_retryable(make_service):
    llm = FakeLlm([tool_reply(("summary", {})), LlmTimeoutError("LLM request timed out after 5.0s")])
    service = make_service(llm)
    service.connect_tab("42", FakePage())

    reply = await send(service, "summarize")

    assert reply.type == MessageType.ERROR
    assert reply.payload["retryable"] is True
    assert reply.payload["code"] == "LLM_TIMEOUT"
    assert [t.role for t in await service.conversations.get_history("42")] == ["user", "assistant", "tool"]


@pytest.mark.asyncio
async def test_round_budget_stops_endless_tool_calls(make_service, cfg):
    llm = FakeLlm([tool_reply(("summary", {})) for _ in range(cfg.max_tool_rounds + 1)])
    service = make_service(llm)
    page = FakePage()
    service.connect_tab("42", page)

    reply = await send(service, "loop forever")

    assert reply.type == MessageType.ERROR
    assert reply.payload["code"] == "TOOL_ROUND_LIMIT"
    assert len(page.calls) == cfg.max_tool_rounds
    assert len(llm.requests) == cfg.max_tool_rounds + 1
    history = await service.conversations.get_history("42")
    assert len(history) == 1 + 2 * cfg.max_tool_rounds


@pytest.mark.asyncio
async def test_schema_is_offered_again_after_clear(make_service):
    llm = FakeLlm([
        tool_reply(("summary", {})),
        text_reply("first answer"),
        text_reply("follow-up"),
        text_reply("fresh start"),
    ])
    service = make_service(llm)
    service.connect_tab("42", FakePage())

    await send(service, "summarize")
    await send(service, "and now?")
    await service.request({"type": "CLEAR_TAB_CONVERSATION", "payload": {"tabId": "42"}})
    await send(service, "hello again")

    modes = [(mode, req.tools is not None) for mode, req in llm.requests]
    assert modes == [("chat", True), ("stream", False), ("stream", False), ("chat", True)]
    assert [t.content for t in await service.conversations.get_history("42")] == ["hello again", "fresh start"]


@pytest.mark.asyncio
async def test_tools_disabled_never_attaches_schema(make_service):
    llm = FakeLlm([text_reply("plain")])
    service = make_service(llm)
    await service.request({"type": "SAVE_SETTINGS", "payload": {"toolsEnabled": False}})

    await send(service, "hi")

    assert llm.requests[0][0] == "stream"
    assert llm.requests[0][1].tools is None


@pytest.mark.asyncio
async def test_concurrent_messages_on_one_tab_do_not_interleave(make_service):
    llm = FakeLlm([text_reply("answer one"), text_reply("answer two")])
    service = make_service(llm)

    await asyncio.gather(send(service, "one"), send(service, "two"))

    contents = [t.content for t in await service.conversations.get_history("42")]
    assert contents == ["one", "answer one", "two", "answer two"]


@pytest.mark.asyncio
async def test_tabs_do_not_share_history(make_service):
    llm = FakeLlm([text_reply("a1"), text_reply("b1")])
    service = make_service(llm)

    await send(service, "tab one", tab_id="1")
    await send(service, "tab two", tab_id="2")

    assert [t.content for t in await service.conversations.get_history("1")] == ["tab one", "a1"]
    assert [t.content for t in await service.conversations.get_history("2")] == ["tab two", "b1"]
    assert [m.content for m in llm.requests[1][1].messages[1:]] == ["tab two"]


class GatedLlm(FakeLlm):
    """chat() 在 gate 打开前挂起，用来让其他请求在循环中途到达。"""

    def __init__(self, replies):
        super().__init__(replies)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def chat(self, req):
        self.entered.set()
        await self.gate.wait()
        return await super().chat(req)


@pytest.mark.asyncio
async def test_clear_during_running_loop_waits_and_leaves_tab_empty(make_service):
    llm = GatedLlm([tool_reply(("summary", {})), text_reply("first answer"), text_reply("fresh start")])
    service = make_service(llm)
    service.connect_tab("42", FakePage())

    sending = asyncio.ensure_future(send(service, "summarize"))
    await llm.entered.wait()
    clearing = asyncio.ensure_future(
        service.request({"type": "CLEAR_TAB_CONVERSATION", "payload": {"tabId": "42"}})
    )
    await asyncio.sleep(0)
    assert not clearing.done()

    llm.gate.set()
    reply = await sending
    cleared = await clearing

    assert reply.payload == {"content": "first answer"}
    assert "42" not in cleared.payload["tabConversations"]
    assert await service.conversations.get_history("42") == []

    await send(service, "hello again")
    mode, req = llm.requests[-1]
    assert mode == "chat" and req.tools is not None
    assert [t.role for t in await service.conversations.get_history("42")] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_screenshot_tool_follows_settings_toggle(make_service):
    llm = FakeLlm([text_reply("without"), text_reply("with")])
    service = make_service(llm)

    await send(service, "first", tab_id="1")
    await service.request({"type": "SAVE_SETTINGS", "payload": {"screenshotToolEnabled": True}})
    await send(service, "second", tab_id="2")

    offered = [[t.name for t in req.tools] for _, req in llm.requests]
    assert "screenshot" not in offered[0]
    assert "screenshot" in offered[1]
    assert "find" in offered[0] and "find" in offered[1]

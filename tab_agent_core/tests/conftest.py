import pytest

from tab_agent_core.api.service import BackgroundService
from tab_agent_core.config.settings import CoreSettings
from tab_agent_core.domain.models import ChatChoice, ChatMessage, ChatResult, ChatStreamChoice, ChatStreamChunk
from tab_agent_core.infrastructure.storage.kv_store import MemoryKeyValueStore
from tab_agent_core.tools.definitions import ToolCall


def text_reply(text):
    return ChatMessage(role="assistant", content=text)


def tool_reply(*calls, text=""):
    return ChatMessage(
        role="assistant",
        content=text,
        tool_calls=[ToolCall(id=f"call_{i}", name=name, arguments=args) for i, (name, args) in enumerate(calls)],
    )


class FakeLlm:
    """按顺序返回预设回复；元素为异常时在调用时抛出。"""

    name = "fake"

    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    def _next(self):
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def chat(self, req):
        self.requests.append(("chat", req))
        msg = self._next()
        return ChatResult(provider="fake", model=req.model, choices=[ChatChoice(index=0, message=msg)])

    async def chat_stream(self, req):
        self.requests.append(("stream", req))
        msg = self._next()
        for piece in [msg.content[: len(msg.content) // 2], msg.content[len(msg.content) // 2:]]:
            if piece:
                delta = ChatMessage(role="assistant", content=piece)
                yield ChatStreamChunk(provider="fake", model=req.model, choices=[ChatStreamChoice(index=0, delta=delta)])
        if msg.tool_calls:
            delta = ChatMessage(role="assistant", content="", tool_calls=msg.tool_calls)
            yield ChatStreamChunk(
                provider="fake",
                model=req.model,
                choices=[ChatStreamChoice(index=0, delta=delta, finish_reason="tool_calls")],
            )

    async def test_connection(self):
        return {"success": True, "message": "Connected to fake"}


class FakePage:
    """记录调用顺序的 PageHelper。"""

    def __init__(self, events=None):
        self.calls = []
        self.events = events if events is not None else []

    def _record(self, name, **args):
        self.calls.append((name, args))
        self.events.append(f"page:{name}")

    def find(self, pattern, options=None):
        self._record("find", pattern=pattern, options=options)
        return [{"tag": "button", "text": f"Button {i}", "selector": f"#b{i}"} for i in range(3)]

    def click(self, selector, text=None):
        self._record("click", selector=selector, text=text)
        return {"clicked": selector}

    def type(self, selector, text, options=None):
        self._record("type", selector=selector, text=text, options=options)
        return {"typed": text}

    def extract(self, selector=None, property=None):
        self._record("extract", selector=selector, property=property)
        return "extracted text"

    def describe(self, selector):
        self._record("describe", selector=selector)
        return {"selector": selector, "children": 2}

    def summary(self):
        self._record("summary")
        return {"title": "Test page", "url": "https://example.test/"}


SCREENSHOT = "data:image/png;base64," + "A" * 450


@pytest.fixture
def cfg():
    return CoreSettings(
        truncation_limit=200,
        max_tool_rounds=3,
        tool_timeout=5.0,
        http_timeout=5.0,
        pager_max_entries=5,
        pager_ttl_seconds=60.0,
    )


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def make_service(store, cfg):
    def _make(llm, capture=None):
        async def _capture(tab_id):
            return SCREENSHOT

        return BackgroundService(
            store,
            client_factory=lambda provider: llm,
            capture_visible_tab=capture or _capture,
            cfg=cfg,
            system_prompt="You are a test assistant.",
        )

    return _make

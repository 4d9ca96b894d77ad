"""页面侧的函数分发器（运行在标签页上下文中）。

接收协调器发来的 EXECUTE_FUNCTION，校验函数名和参数后交给 PageHelper：

- find / click / type / extract / describe / summary 为同步操作，
  回复在处理器返回前送达；
- screenshot / getResponsePage 为异步操作，需要回调协调器
  （CAPTURE_SCREENSHOT / GET_RESPONSE_PAGE），处理器返回协程，通道保持打开。

无论成功失败都只回复一次 FUNCTION_RESPONSE {success, result | error}。
"""

from typing import Any, Dict, Mapping, Optional, Protocol

from tab_agent_core.domain.envelope import Envelope, MessageType, payload_field
from tab_agent_core.domain.exceptions import ToolArgumentError
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.router.message_router import HandlerResult, MessageRouter
from tab_agent_core.tools.schema import ASYNC_FUNCTIONS, PAGE_FUNCTIONS, validate_arguments


class PageHelper(Protocol):
    """DOM 查询与交互能力。具体算法不在本包范围内。"""

    def find(self, pattern: str, options: Optional[Dict[str, Any]] = None) -> Any:
        ...

    def click(self, selector: str, text: Optional[str] = None) -> Any:
        ...

    def type(self, selector: str, text: str, options: Optional[Dict[str, Any]] = None) -> Any:
        ...

    def extract(self, selector: Optional[str] = None, property: Optional[str] = None) -> Any:
        ...

    def describe(self, selector: str) -> Any:
        ...

    def summary(self) -> Any:
        ...


def _function_response(success: bool, **fields: Any) -> Envelope:
    return Envelope(MessageType.FUNCTION_RESPONSE, {"success": success, **fields})


class PageFunctionDispatcher:
    def __init__(self, helper: PageHelper, runtime: Optional[MessageRouter] = None, tab_id: Optional[str] = None):
        self._helper = helper
        # runtime 为协调器的 MessageRouter，异步操作通过它回调
        self._runtime = runtime
        self._tab_id = tab_id

    def install(self, router: MessageRouter) -> None:
        router.register(MessageType.EXECUTE_FUNCTION, self.handle)

    def handle(self, payload: Any, sender_tab_id: Optional[str] = None) -> HandlerResult:
        name = payload_field(payload, "function")
        if not isinstance(name, str) or name not in PAGE_FUNCTIONS:
            return _function_response(
                False,
                error=f"Function '{name}' not found. Available functions: {', '.join(PAGE_FUNCTIONS)}",
            )
        try:
            args = validate_arguments(name, payload_field(payload, "arguments") or {})
        except ToolArgumentError as e:
            return _function_response(False, error=e.message)

        if name in ASYNC_FUNCTIONS:
            return self._run_async(name, args)

        try:
            result = self._call_sync(name, args)
        except Exception as exc:
            logger.warning(
                "Page function failed",
                extra={"extra": {"tab_id": self._tab_id, "function": name, "error": str(exc)}},
            )
            return _function_response(False, error=str(exc) or "Unknown error")
        return _function_response(True, result=result)

    def _call_sync(self, name: str, args: Mapping[str, Any]) -> Any:
        helper = self._helper
        if name == "find":
            return helper.find(args["pattern"], args.get("options"))
        if name == "click":
            return helper.click(args["selector"], args.get("text"))
        if name == "type":
            return helper.type(args["selector"], args["text"], args.get("options"))
        if name == "extract":
            return helper.extract(args.get("selector"), args.get("property"))
        if name == "describe":
            return helper.describe(args["selector"])
        return helper.summary()

    async def _run_async(self, name: str, args: Mapping[str, Any]) -> Envelope:
        if self._runtime is None:
            return _function_response(False, error=f"{name} is not available in this context")
        if name == "screenshot":
            reply = await self._runtime.request(Envelope(MessageType.CAPTURE_SCREENSHOT), sender_tab_id=self._tab_id)
            if reply.is_error or not payload_field(reply.payload, "success"):
                return _function_response(False, error=payload_field(reply.payload, "error") or "Screenshot failed")
            return _function_response(True, result=payload_field(reply.payload, "dataUrl"))

        reply = await self._runtime.request(
            Envelope(MessageType.GET_RESPONSE_PAGE, {"responseId": args["responseId"], "page": args["page"]}),
            sender_tab_id=self._tab_id,
        )
        if reply.is_error or not payload_field(reply.payload, "success"):
            return _function_response(False, error=payload_field(reply.payload, "error") or "Get response page failed")
        return _function_response(
            True,
            result=payload_field(reply.payload, "result"),
            _meta=payload_field(reply.payload, "_meta"),
        )

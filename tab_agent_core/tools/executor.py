import time
from typing import Any, Mapping, Optional

from tab_agent_core.config.settings import settings
from tab_agent_core.domain.envelope import Envelope, MessageType, payload_field
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.router.tab_transport import TabTransport
from tab_agent_core.tools.definitions import ToolCall, ToolResult
from tab_agent_core.tools.pager import ResultPager


class TabToolExecutor:
    """把工具调用转发给标签页内的页面执行器。

    每次调用发送一条 EXECUTE_FUNCTION，并等待唯一的 FUNCTION_RESPONSE 或 ERROR。
    标签页不可达时 TransportError 原样抛出，由调用方决定如何记录。
    超长结果交给 ResultPager，getResponsePage 自身的结果不再分页。
    """

    def __init__(self, transport: TabTransport, pager: Optional[ResultPager] = None, timeout: Optional[float] = None):
        self._transport = transport
        self._pager = pager
        self._timeout = timeout if timeout is not None else settings.tool_timeout

    async def execute(self, tab_id: str, call: ToolCall) -> ToolResult:
        message = Envelope(MessageType.EXECUTE_FUNCTION, {"function": call.name, "arguments": call.arguments})
        started = time.perf_counter()
        reply = await self._transport.send(tab_id, message, timeout=self._timeout)
        result = self._to_result(tab_id, call, reply)
        logger.info(
            "Tool executed",
            extra={
                "extra": {
                    "tab_id": str(tab_id),
                    "tool": call.name,
                    "call_id": call.id,
                    "success": result.success,
                    "paged": bool(result.meta and result.meta.get("isTruncated")),
                    "elapsed_ms": round((time.perf_counter() - started) * 1000, 2),
                }
            },
        )
        return result

    def forget_tab(self, tab_id: str) -> int:
        """丢弃某个标签页缓存的分页结果。"""

        if self._pager is None:
            return 0
        return self._pager.invalidate_tab(tab_id)

    def _to_result(self, tab_id: str, call: ToolCall, reply: Envelope) -> ToolResult:
        if reply.is_error:
            return ToolResult(
                call_id=call.id,
                success=False,
                error=payload_field(reply.payload, "error") or f"Failed to execute {call.name}",
            )
        payload: Mapping[str, Any] = reply.payload if isinstance(reply.payload, Mapping) else {}
        if not payload.get("success"):
            return ToolResult(
                call_id=call.id,
                success=False,
                error=payload.get("error") or f"Failed to execute {call.name}",
            )

        result = payload.get("result")
        meta = payload.get("_meta")
        if self._pager is not None and call.name != "getResponsePage":
            result, paged_meta = self._pager.paginate(result, tab_id=tab_id, tool_name=call.name)
            if paged_meta is not None:
                meta = paged_meta
        return ToolResult(call_id=call.id, success=True, result=result, meta=meta)

"""跨上下文消息路由。

每个上下文（协调器、每个标签页的页面执行器）各持有一个 MessageRouter：

- 每种消息类型只注册一个处理器；
- 处理器同步返回 Envelope 时，回复在 dispatch 返回前送达，dispatch 返回 False；
- 处理器返回 awaitable 时，dispatch 返回 True 表示“通道保持打开”，
  回复在 awaitable 结束后送达；
- 处理器中的任何异常都转换为一个 ERROR 回复；
- 回复函数被包装为只生效一次，重复回复会被记录并丢弃；
- 未知类型只记录日志，不回复（可能由其他监听者处理）。
"""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from tab_agent_core.domain.envelope import Envelope, MessageType, error_envelope
from tab_agent_core.domain.exceptions import (
    InvalidEnvelopeError,
    TransportError,
    UnknownMessageTypeError,
)
from tab_agent_core.infrastructure.logging.logger import logger


Reply = Callable[[Envelope], None]
HandlerResult = Union[Envelope, Awaitable[Envelope]]
Handler = Callable[[Any, Optional[str]], HandlerResult]


def _type_name(msg_type: Any) -> str:
    return msg_type.value if isinstance(msg_type, MessageType) else str(msg_type)


class _ReplyOnce:
    """保证一个请求最多送出一个回复，并在送出时记录耗时。"""

    def __init__(self, reply: Reply, context: str, msg_type: Any, tab_id: Optional[str]):
        self._reply = reply
        self._context = context
        self._msg_type = _type_name(msg_type)
        self._tab_id = tab_id
        self._started = time.perf_counter()
        self.sent = False

    def __call__(self, envelope: Envelope) -> None:
        if self.sent:
            logger.warning(
                "Duplicate reply dropped",
                extra={"extra": {"context": self._context, "type": self._msg_type, "tab_id": self._tab_id}},
            )
            return
        self.sent = True
        latency_ms = round((time.perf_counter() - self._started) * 1000, 2)
        logger.info(
            "Message handled",
            extra={
                "extra": {
                    "context": self._context,
                    "type": self._msg_type,
                    "tab_id": self._tab_id,
                    "reply_type": _type_name(envelope.type),
                    "latency_ms": latency_ms,
                }
            },
        )
        try:
            self._reply(envelope)
        except Exception as exc:
            # 回复通道本身已断开，对端不会再收到任何消息
            logger.error(
                "Reply delivery failed",
                extra={"extra": {"context": self._context, "type": self._msg_type, "error": str(exc)}},
            )


class MessageRouter:
    def __init__(self, context: str = "background"):
        self._context = context
        self._handlers: Dict[Any, Handler] = {}
        self._pending: Set["asyncio.Task[None]"] = set()

    @property
    def context(self) -> str:
        return self._context

    def register(self, msg_type: MessageType, handler: Handler) -> None:
        if msg_type in self._handlers:
            raise ValueError(f"Handler already registered for {_type_name(msg_type)}")
        self._handlers[msg_type] = handler

    def dispatch(self, message: Any, reply: Reply, sender_tab_id: Optional[str] = None) -> bool:
        """处理一条入站消息。返回 True 表示回复将异步送达。"""

        try:
            envelope = Envelope.from_raw(message)
        except InvalidEnvelopeError as e:
            logger.warning("Invalid envelope", extra={"extra": {"context": self._context, "error": e.message}})
            _ReplyOnce(reply, self._context, "INVALID", sender_tab_id)(error_envelope(e))
            return False

        handler = self._handlers.get(envelope.type)
        if handler is None:
            logger.warning(
                "No handler for message type",
                extra={"extra": {"context": self._context, "type": _type_name(envelope.type), "tab_id": sender_tab_id}},
            )
            return False

        once = _ReplyOnce(reply, self._context, envelope.type, sender_tab_id)
        try:
            result = handler(envelope.payload, sender_tab_id)
        except Exception as exc:
            self._log_failure(envelope, sender_tab_id, exc)
            once(error_envelope(exc))
            return False

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._settle(envelope, sender_tab_id, result, once))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return True

        once(self._coerce(result))
        return False

    async def request(
        self, message: Any, sender_tab_id: Optional[str] = None, timeout: Optional[float] = None
    ) -> Envelope:
        """发送一条消息并等待唯一的回复。"""

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Envelope]" = loop.create_future()

        def _reply(envelope: Envelope) -> None:
            if not future.done():
                future.set_result(envelope)

        keep_open = self.dispatch(message, _reply, sender_tab_id)
        if future.done():
            return future.result()
        if not keep_open:
            raise UnknownMessageTypeError(
                code="UNKNOWN_MESSAGE_TYPE",
                message=f"No handler in '{self._context}' for message {message!r}",
            )
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise TransportError(
                code="REPLY_TIMEOUT",
                message=f"No reply from '{self._context}' within {timeout}s",
                http_status=504,
            )

    async def drain(self) -> None:
        """等待所有仍在进行中的异步处理器完成。"""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _settle(
        self, envelope: Envelope, sender_tab_id: Optional[str], awaitable: Awaitable[Envelope], once: _ReplyOnce
    ) -> None:
        try:
            result = await awaitable
        except Exception as exc:
            self._log_failure(envelope, sender_tab_id, exc)
            once(error_envelope(exc))
            return
        once(self._coerce(result))

    def _coerce(self, result: Any) -> Envelope:
        if isinstance(result, Envelope):
            return result
        try:
            return Envelope.from_raw(result)
        except InvalidEnvelopeError as exc:
            return error_envelope(exc)

    def _log_failure(self, envelope: Envelope, sender_tab_id: Optional[str], exc: BaseException) -> None:
        logger.error(
            "Message handler failed",
            extra={
                "extra": {
                    "context": self._context,
                    "type": _type_name(envelope.type),
                    "tab_id": sender_tab_id,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                }
            },
        )

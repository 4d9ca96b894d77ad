"""协调器到标签页的消息通道。

协调器只通过 TabTransport.send 访问某个标签页里的页面执行器。
标签页不存在或在等待回复期间被关闭时抛出 TransportError，
由调用方转换为工具执行失败，而不是让异常冒出去。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from tab_agent_core.domain.envelope import Envelope
from tab_agent_core.domain.exceptions import TransportError, UnknownMessageTypeError
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.router.message_router import MessageRouter


class TabTransport(Protocol):
    async def send(self, tab_id: str, message: Any, timeout: Optional[float] = None) -> Envelope:
        ...


@dataclass
class _ConnectedTab:
    router: MessageRouter
    closed: asyncio.Event = field(default_factory=asyncio.Event)


class LocalTabTransport:
    """进程内实现：tab_id -> 该标签页的 MessageRouter。"""

    def __init__(self) -> None:
        self._tabs: Dict[str, _ConnectedTab] = {}

    def connect(self, tab_id: str, router: MessageRouter) -> None:
        self._tabs[str(tab_id)] = _ConnectedTab(router=router)
        logger.info("Tab connected", extra={"extra": {"tab_id": str(tab_id)}})

    def close_tab(self, tab_id: str) -> None:
        """模拟标签页关闭或跳转：之后的发送失败，进行中的请求立即失败。"""

        tab = self._tabs.pop(str(tab_id), None)
        if tab is not None:
            tab.closed.set()
            logger.info("Tab closed", extra={"extra": {"tab_id": str(tab_id)}})

    def is_connected(self, tab_id: str) -> bool:
        return str(tab_id) in self._tabs

    async def send(self, tab_id: str, message: Any, timeout: Optional[float] = None) -> Envelope:
        key = str(tab_id)
        tab = self._tabs.get(key)
        if tab is None:
            raise TransportError(
                code="TAB_UNREACHABLE",
                message=f"Could not establish connection. Receiving end does not exist (tab {key})",
                tab_id=key,
            )

        request = asyncio.ensure_future(tab.router.request(message, sender_tab_id=None, timeout=timeout))
        closed = asyncio.ensure_future(tab.closed.wait())
        try:
            done, _ = await asyncio.wait({request, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
            if not request.done():
                request.cancel()

        if request in done:
            try:
                return request.result()
            except UnknownMessageTypeError as e:
                raise TransportError(code="NO_RECEIVER", message=e.message, tab_id=key)
        raise TransportError(
            code="TAB_CLOSED",
            message=f"The message port closed before a response was received (tab {key})",
            tab_id=key,
        )

"""协调器（后台）服务。

把各组件装配在一起，并在协调器的 MessageRouter 上为每种请求类型注册处理器：

- GET_SETTINGS / SAVE_SETTINGS
- SEND_MESSAGE / CLEAR_TAB_CONVERSATION
- EXECUTE_FUNCTION（面板手动调用工具，转发给标签页，不追加对话轮次）
- GET_RESPONSE_PAGE / CAPTURE_SCREENSHOT（页面执行器的异步操作回调）
- TEST_CONNECTION
"""

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from tab_agent_core.agents.orchestrator import ClientFactory, ToolCallingOrchestrator
from tab_agent_core.config.settings import settings
from tab_agent_core.domain.conversation import now_ms
from tab_agent_core.domain.envelope import Envelope, MessageType, payload_field
from tab_agent_core.domain.exceptions import BusinessError, ValidationError
from tab_agent_core.domain.extension_settings import ExtensionSettings
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.infrastructure.storage.kv_store import KeyValueStore
from tab_agent_core.infrastructure.storage.settings_store import SettingsManager
from tab_agent_core.infrastructure.storage.tab_conversations import TabConversationStore
from tab_agent_core.page.dispatcher import PageFunctionDispatcher, PageHelper
from tab_agent_core.providers import create_llm_client
from tab_agent_core.router.message_router import MessageRouter, Reply
from tab_agent_core.router.tab_transport import LocalTabTransport
from tab_agent_core.tools.definitions import ToolCall
from tab_agent_core.tools.executor import TabToolExecutor
from tab_agent_core.tools.pager import ResultPager


CaptureVisibleTab = Callable[[Optional[str]], Union[str, Awaitable[str]]]


def _resolve_tab_id(payload: Any, sender_tab_id: Optional[str]) -> Optional[str]:
    tab_id = payload_field(payload, "tabId")
    if tab_id is None:
        tab_id = sender_tab_id
    return str(tab_id) if tab_id is not None else None


class BackgroundService:
    def __init__(
        self,
        store: KeyValueStore,
        transport: Optional[LocalTabTransport] = None,
        client_factory: ClientFactory = create_llm_client,
        capture_visible_tab: Optional[CaptureVisibleTab] = None,
        cfg=settings,
        system_prompt: Optional[str] = None,
    ):
        self.router = MessageRouter("background")
        self.settings_manager = SettingsManager(store, cfg)
        self.conversations = TabConversationStore(self.settings_manager)
        self.pager = ResultPager(
            page_size=cfg.truncation_limit,
            max_entries=cfg.pager_max_entries,
            ttl_seconds=cfg.pager_ttl_seconds,
        )
        store.add_listener(self.pager.on_storage_change)
        self.transport = transport or LocalTabTransport()
        self.executor = TabToolExecutor(self.transport, self.pager, timeout=cfg.tool_timeout)
        self.orchestrator = ToolCallingOrchestrator(
            self.settings_manager,
            self.conversations,
            self.executor,
            client_factory=client_factory,
            cfg=cfg,
            system_prompt=system_prompt,
        )
        self._client_factory = client_factory
        self._capture_visible_tab = capture_visible_tab
        self._register_handlers()

    # ---- 入口 ----

    def handle(self, message: Any, reply: Reply, sender_tab_id: Optional[str] = None) -> bool:
        return self.router.dispatch(message, reply, sender_tab_id)

    async def request(self, message: Any, sender_tab_id: Optional[str] = None) -> Envelope:
        return await self.router.request(message, sender_tab_id=sender_tab_id)

    def connect_tab(self, tab_id: str, helper: PageHelper) -> MessageRouter:
        """为一个标签页装配页面侧的 Router 与函数分发器，并接入 transport。"""

        page_router = MessageRouter(f"tab:{tab_id}")
        PageFunctionDispatcher(helper, runtime=self.router, tab_id=str(tab_id)).install(page_router)
        self.transport.connect(str(tab_id), page_router)
        return page_router

    # ---- 处理器 ----

    def _register_handlers(self) -> None:
        self.router.register(MessageType.GET_SETTINGS, self._on_get_settings)
        self.router.register(MessageType.SAVE_SETTINGS, self._on_save_settings)
        self.router.register(MessageType.SEND_MESSAGE, self._on_send_message)
        self.router.register(MessageType.CLEAR_TAB_CONVERSATION, self._on_clear_tab_conversation)
        self.router.register(MessageType.EXECUTE_FUNCTION, self._on_execute_function)
        self.router.register(MessageType.GET_RESPONSE_PAGE, self._on_get_response_page)
        self.router.register(MessageType.TEST_CONNECTION, self._on_test_connection)
        self.router.register(MessageType.CAPTURE_SCREENSHOT, self._on_capture_screenshot)

    async def _on_get_settings(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        current = await self.settings_manager.get_settings()
        return Envelope(MessageType.SETTINGS_RESPONSE, current.to_json())

    async def _on_save_settings(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        try:
            incoming = ExtensionSettings.model_validate(payload or {})
        except PydanticValidationError as e:
            raise ValidationError(code="INVALID_SETTINGS", message=f"Invalid settings: {e}")
        # 对话只通过 SEND_MESSAGE / CLEAR_TAB_CONVERSATION 修改，面板回传的旧快照不覆盖它们
        fields = set(incoming.model_fields_set) - {"tab_conversations", "chat_history"}

        def _merge(current: ExtensionSettings) -> ExtensionSettings:
            return current.model_copy(update={name: getattr(incoming, name) for name in fields})

        await self.settings_manager.update(_merge)
        self.orchestrator.refresh_client()
        logger.info("Settings saved", extra={"extra": {"fields": sorted(fields)}})
        return Envelope(MessageType.SETTINGS_RESPONSE, {"success": True})

    async def _on_send_message(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        message = payload_field(payload, "message")
        if not message or not isinstance(message, (str, list)):
            raise ValidationError(code="INVALID_MESSAGE", message="SEND_MESSAGE requires a non-empty 'message'")
        tab_id = _resolve_tab_id(payload, sender_tab_id)
        content = await self.orchestrator.send_message(tab_id, message)
        return Envelope(MessageType.MESSAGE_RESPONSE, {"content": content})

    async def _on_clear_tab_conversation(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        tab_id = _resolve_tab_id(payload, sender_tab_id)
        if tab_id is None:
            raise ValidationError(code="MISSING_TAB_ID", message="CLEAR_TAB_CONVERSATION requires 'tabId'")
        updated = await self.orchestrator.clear(tab_id)
        return Envelope(MessageType.SETTINGS_RESPONSE, updated.to_json())

    async def _on_execute_function(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        tab_id = _resolve_tab_id(payload, sender_tab_id)
        if tab_id is None:
            raise ValidationError(code="MISSING_TAB_ID", message="EXECUTE_FUNCTION requires 'tabId'")
        name = payload_field(payload, "function")
        arguments = payload_field(payload, "arguments") or {}
        call = ToolCall(id=f"manual_{now_ms()}", name=str(name), arguments=arguments)
        result = await self.executor.execute(tab_id, call)
        reply: dict = {"success": result.success}
        if result.success:
            reply["result"] = result.result
            if result.meta:
                reply["_meta"] = result.meta
        else:
            reply["error"] = result.error
        return Envelope(MessageType.FUNCTION_RESPONSE, reply)

    def _on_get_response_page(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        # 来自标签页的请求按发送方标签页限定；面板请求可在 payload 中给出 tabId
        tab_id = sender_tab_id if sender_tab_id is not None else _resolve_tab_id(payload, None)
        page = self.pager.get_page(
            payload_field(payload, "responseId"),
            payload_field(payload, "page", 0),
            tab_id=tab_id,
        )
        return Envelope(MessageType.RESPONSE_PAGE, page.to_payload())

    async def _on_test_connection(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        current = await self.settings_manager.get_settings()
        outcome = await self._client_factory(current.provider).test_connection()
        return Envelope(MessageType.TEST_CONNECTION_RESPONSE, outcome)

    async def _on_capture_screenshot(self, payload: Any, sender_tab_id: Optional[str]) -> Envelope:
        if self._capture_visible_tab is None:
            raise BusinessError(code="CAPTURE_UNAVAILABLE", message="Screenshot capture is not available")
        data_url = self._capture_visible_tab(sender_tab_id)
        if inspect.isawaitable(data_url):
            data_url = await data_url
        return Envelope(MessageType.FUNCTION_RESPONSE, {"success": True, "dataUrl": data_url})

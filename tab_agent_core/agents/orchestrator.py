"""工具调用协调器。

一条用户消息驱动的状态机：

    IDLE → LLM_CALL_PENDING → {FINAL_ANSWER | TOOL_CALLS_PENDING}
         → TOOL_EXECUTION_PENDING → LLM_CALL_PENDING …

循环由 flows.graph 中的 LangGraph 图驱动，本模块提供各个节点：

- 每次调用 LLM 都重新读取标签页的完整历史；当 toolsEnabled 且历史中没有
  tool 轮次时才附带工具 schema，附带 schema 时走非流式 chat，否则走 chat_stream；
- 模型请求工具时先追加一条带 tool_calls 的 assistant 轮次，再按顺序逐个执行，
  每个结果追加一条 tool 轮次；
- 未知工具或参数不合法时直接生成错误 tool 轮次，不联系页面执行器；
- 标签页不可达同样记为错误 tool 轮次，循环继续；
- LLM 出错或超时则进入 FAILED，异常原样抛出，已追加的轮次保留。
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from tab_agent_core.config.settings import settings
from tab_agent_core.domain.conversation import ConversationTurn, TurnToolCall, has_tool_turn, make_turn
from tab_agent_core.domain.exceptions import ToolArgumentError, ToolRoundLimitError, TransportError
from tab_agent_core.domain.extension_settings import ExtensionSettings, ProviderSettings
from tab_agent_core.domain.models import ChatMessage, ChatRequest
from tab_agent_core.flows.graph import build_graph, recursion_limit_for
from tab_agent_core.flows.state import LoopPhase, LoopState
from tab_agent_core.infrastructure.logging.logger import logger
from tab_agent_core.infrastructure.storage.settings_store import SettingsManager
from tab_agent_core.infrastructure.storage.tab_conversations import TabConversationStore
from tab_agent_core.prompts import load_system_prompt
from tab_agent_core.providers import create_llm_client
from tab_agent_core.providers.base import LlmClient
from tab_agent_core.tools.definitions import ToolCall, ToolResult
from tab_agent_core.tools.executor import TabToolExecutor
from tab_agent_core.tools.schema import offered_tools, validate_arguments


ClientFactory = Callable[[ProviderSettings], LlmClient]


class ToolCallingOrchestrator:
    def __init__(
        self,
        settings_manager: SettingsManager,
        conversations: TabConversationStore,
        executor: TabToolExecutor,
        client_factory: ClientFactory = create_llm_client,
        cfg=settings,
        system_prompt: Optional[str] = None,
    ):
        self._settings = settings_manager
        self._conversations = conversations
        self._executor = executor
        self._client_factory = client_factory
        self._cfg = cfg
        self._system_prompt = system_prompt if system_prompt is not None else load_system_prompt()
        self._client: Optional[LlmClient] = None
        self._client_key: Optional[tuple] = None
        self._tab_locks: Dict[str, asyncio.Lock] = {}
        self._graph = build_graph(self)

    # ---- 对外接口 ----

    def refresh_client(self) -> None:
        """Provider 配置变化后丢弃缓存的 LLM Client。"""

        self._client = None
        self._client_key = None

    async def clear(self, tab_id: str) -> ExtensionSettings:
        """清空标签页对话及其分页结果。

        与同一标签页的 send_message 互斥：进行中的循环先结束，再整体清空。
        """

        async with self._lock_for(tab_id):
            updated = await self._conversations.clear(tab_id)
            self._executor.forget_tab(tab_id)
        return updated

    async def send_message(self, tab_id: Optional[str], message: Any) -> str:
        """处理一条用户消息，返回最终的 assistant 文本。"""

        async with self._lock_for(tab_id):
            current = await self._settings.load()
            await self._conversations.append_turn(tab_id, make_turn("user", message))

            max_rounds = self._cfg.max_tool_rounds
            state: LoopState = {
                "tab_id": tab_id,
                "provider": current.provider,
                "tools_enabled": current.tools_enabled,
                "screenshot_tool_enabled": current.screenshot_tool_enabled,
                "phase": LoopPhase.LLM_CALL_PENDING,
                "rounds": 0,
                "max_rounds": max_rounds,
                "pending_calls": [],
                "final_content": None,
            }
            log_ctx = {"tab_id": tab_id, "provider": current.provider.name, "model": current.provider.model}
            self._log(logging.INFO, "Loop started", log_ctx, max_rounds=max_rounds)
            try:
                result = await self._graph.ainvoke(state, config={"recursion_limit": recursion_limit_for(max_rounds)})
            except Exception as e:
                self._log(
                    logging.ERROR,
                    "Loop failed",
                    log_ctx,
                    phase=LoopPhase.FAILED.value,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            self._log(logging.INFO, "Loop finished", log_ctx, phase=LoopPhase.FINAL_ANSWER.value, rounds=result.get("rounds", 0))
            return result.get("final_content") or ""

    # ---- 图节点 ----

    async def llm_call(self, state: LoopState) -> Dict[str, Any]:
        tab_id = state.get("tab_id")
        history = await self._conversations.get_history(tab_id)
        attach_tools = bool(state.get("tools_enabled")) and not has_tool_turn(history)
        provider = state["provider"]
        client = self._get_client(provider)
        req = ChatRequest(
            model=provider.model,
            messages=[ChatMessage(role="system", content=self._system_prompt)] + self._to_chat_messages(history),
            temperature=self._cfg.llm_temperature,
            max_tokens=self._cfg.llm_max_tokens,
            tools=offered_tools(bool(state.get("screenshot_tool_enabled"))) if attach_tools else None,
        )
        self._log(
            logging.INFO,
            "LLM call",
            {"tab_id": tab_id},
            phase=LoopPhase.LLM_CALL_PENDING.value,
            round=state.get("rounds", 0),
            history_turns=len(history),
            tools_attached=attach_tools,
        )

        if attach_tools:
            result = await client.chat(req)
            message = result.choices[0].message
            text = message.content if isinstance(message.content, str) else ""
            calls = list(message.tool_calls or [])
        else:
            text, calls = await self._collect_stream(client, req)

        if calls:
            return {
                "phase": LoopPhase.TOOL_CALLS_PENDING,
                "tools_attached": attach_tools,
                "assistant_text": text,
                "pending_calls": calls,
            }
        return {
            "phase": LoopPhase.FINAL_ANSWER,
            "tools_attached": attach_tools,
            "assistant_text": text,
            "pending_calls": [],
            "final_content": text,
        }

    async def record_tool_calls(self, state: LoopState) -> Dict[str, Any]:
        calls = state.get("pending_calls") or []
        turn = make_turn(
            "assistant",
            state.get("assistant_text") or "",
            tool_calls=[TurnToolCall(id=c.id, name=c.name, arguments=c.arguments) for c in calls],
        )
        await self._conversations.append_turn(state.get("tab_id"), turn)
        return {"phase": LoopPhase.TOOL_EXECUTION_PENDING}

    async def execute_tools(self, state: LoopState) -> Dict[str, Any]:
        tab_id = state.get("tab_id")
        # 顺序执行：前一个调用的回复到达后才发送下一个
        for call in state.get("pending_calls") or []:
            turn = await self._run_tool_call(tab_id, call)
            await self._conversations.append_turn(tab_id, turn)
        return {
            "phase": LoopPhase.LLM_CALL_PENDING,
            "pending_calls": [],
            "rounds": state.get("rounds", 0) + 1,
        }

    async def finalize(self, state: LoopState) -> Dict[str, Any]:
        await self._conversations.append_turn(state.get("tab_id"), make_turn("assistant", state.get("final_content") or ""))
        return {"phase": LoopPhase.FINAL_ANSWER}

    async def budget_exceeded(self, state: LoopState) -> Dict[str, Any]:
        raise ToolRoundLimitError(
            code="TOOL_ROUND_LIMIT",
            message=f"Model requested more tools after {state.get('max_rounds')} tool rounds; giving up",
            max_rounds=state.get("max_rounds"),
        )

    # ---- 辅助方法 ----

    def _lock_for(self, tab_id: Optional[str]) -> asyncio.Lock:
        key = str(tab_id) if tab_id is not None else ""
        return self._tab_locks.setdefault(key, asyncio.Lock())

    def _get_client(self, provider: ProviderSettings) -> LlmClient:
        key = provider.cache_key()
        if self._client is None or self._client_key != key:
            self._client = self._client_factory(provider)
            self._client_key = key
        return self._client

    async def _collect_stream(self, client: LlmClient, req: ChatRequest) -> tuple:
        parts: List[str] = []
        calls: List[ToolCall] = []
        async for chunk in client.chat_stream(req):
            for choice in chunk.choices:
                delta = choice.delta
                if isinstance(delta.content, str) and delta.content:
                    parts.append(delta.content)
                if delta.tool_calls:
                    calls.extend(delta.tool_calls)
        return "".join(parts), calls

    async def _run_tool_call(self, tab_id: Optional[str], call: ToolCall) -> ConversationTurn:
        log_ctx = {"tab_id": tab_id, "tool": call.name, "call_id": call.id}
        try:
            arguments = validate_arguments(call.name, call.arguments)
        except ToolArgumentError as e:
            self._log(logging.WARNING, "Tool call rejected", log_ctx, error=e.message)
            return self._tool_turn(call, ToolResult(call_id=call.id, success=False, error=e.message))
        if tab_id is None:
            return self._tool_turn(
                call, ToolResult(call_id=call.id, success=False, error="No tab is associated with this conversation")
            )

        try:
            result = await self._executor.execute(tab_id, ToolCall(id=call.id, name=call.name, arguments=arguments))
        except TransportError as e:
            self._log(logging.WARNING, "Tool transport failed", log_ctx, error=e.message)
            result = ToolResult(call_id=call.id, success=False, error=e.message)
        return self._tool_turn(call, result)

    @staticmethod
    def _tool_turn(call: ToolCall, result: ToolResult) -> ConversationTurn:
        if result.success:
            if result.meta:
                content = json.dumps({"result": result.result, "_meta": result.meta}, ensure_ascii=False, default=str)
            elif isinstance(result.result, str):
                content = result.result
            else:
                content = json.dumps(result.result, ensure_ascii=False, default=str)
        else:
            content = f"Error: {result.error}"
        return make_turn(
            "tool",
            content,
            tool_call_id=call.id,
            name=call.name,
            arguments=call.arguments,
            result=result.result if result.success else None,
            error=None if result.success else result.error,
        )

    @staticmethod
    def _to_chat_messages(history: List[ConversationTurn]) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        for turn in history:
            if turn.role == "assistant" and turn.tool_calls:
                messages.append(
                    ChatMessage(
                        role="assistant",
                        content=turn.content,
                        tool_calls=[ToolCall(id=c.id, name=c.name, arguments=c.arguments) for c in turn.tool_calls],
                    )
                )
            elif turn.role == "tool":
                messages.append(ChatMessage(role="tool", content=turn.content, tool_call_id=turn.tool_call_id))
            else:
                messages.append(ChatMessage(role=turn.role, content=turn.content))
        return messages

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})

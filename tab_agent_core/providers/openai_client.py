"""OpenAI 兼容 chat/completions 适配器。

LM Studio、OpenAI、OpenRouter 等都暴露同一套接口：
- URL: settings.provider.endpoint（完整的 .../chat/completions 地址）
- 认证: 配置了 apiKey 时带 Authorization: Bearer <api_key>

本模块负责把 ChatRequest 转成请求 JSON，处理网络/超时/HTTP 错误，
并把响应（含 tool_calls）解析为统一的 ChatResult / ChatStreamChunk。
不做自动重试，重试策略交给 UI 层。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from tab_agent_core.config.settings import settings
from tab_agent_core.domain.exceptions import (
    ApiError,
    LlmTimeoutError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from tab_agent_core.domain.extension_settings import ProviderSettings
from tab_agent_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChunk,
    ChatStreamChoice,
    ChatUsage,
)
from tab_agent_core.tools.definitions import ToolCall
from tab_agent_core.tools.schema import serialize_tool


class OpenAICompatibleClient:
    """OpenAI 兼容 Provider 的 LLM Client 实现。"""

    name = "openai-compatible"

    def __init__(self, provider: ProviderSettings, cfg=settings):
        self._provider = provider
        self._settings = cfg

    @property
    def provider(self) -> ProviderSettings:
        return self._provider

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        endpoint = self._endpoint()
        payload = self._build_payload(req, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(endpoint, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise LlmTimeoutError(f"LLM request timed out after {self._settings.http_timeout}s: {e}")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self._provider.name} rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=f"HTTP {resp.status_code}: {resp.text}", http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError(code="MALFORMED_RESPONSE", message=f"Completion response is not JSON: {e}", http_status=502)
        return self._parse_response(data, req)

    # ---- 流式 ----

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        endpoint = self._endpoint()
        payload = self._build_payload(req, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream("POST", endpoint, json=payload, headers=self._headers()) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message=f"{self._provider.name} rate limit", http_status=429)
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise ApiError(
                            code="API_ERROR",
                            message=f"HTTP {resp.status_code}: {resp.text}",
                            http_status=resp.status_code,
                        )
                    partial_calls: Dict[int, Dict[str, Any]] = {}
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str:
                            continue
                        if data_str == "[DONE]":
                            break
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        error = payload_chunk.get("error") if isinstance(payload_chunk, dict) else None
                        if error:
                            message = error.get("message") if isinstance(error, dict) else str(error)
                            raise ApiError(code="API_ERROR", message=message or "Unknown API error", http_status=502)
                        self._buffer_tool_calls(payload_chunk, partial_calls)
                        yield self._parse_stream_chunk(payload_chunk, req)
                    if partial_calls:
                        yield self._assembled_tool_calls_chunk(partial_calls, req)
        except httpx.TimeoutException as e:
            raise LlmTimeoutError(f"LLM stream timed out after {self._settings.http_timeout}s: {e}")
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    async def test_connection(self) -> Dict[str, Any]:
        req = ChatRequest(
            model=self._provider.model,
            messages=[ChatMessage(role="user", content="ping")],
            temperature=0.0,
            max_tokens=5,
        )
        try:
            await self.chat(req)
        except (NetworkError, ApiError, RateLimitError, ValidationError) as e:
            return {"success": False, "message": e.message}
        return {"success": True, "message": f"Connected to {self._provider.name} ({self._provider.model})"}

    # ---- 辅助方法 ----

    def _endpoint(self) -> str:
        endpoint = (self._provider.endpoint or "").strip()
        if not endpoint:
            raise ValidationError(code="MISSING_ENDPOINT", message="Provider endpoint is not configured")
        return endpoint

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._provider.api_key:
            headers["Authorization"] = f"Bearer {self._provider.api_key}"
        return headers

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        payload: Dict[str, Any] = {
            "model": req.model or self._provider.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.temperature,
            "max_tokens": req.max_tokens or self._settings.llm_max_tokens,
            "stream": stream,
        }
        if req.tools:
            payload["tools"] = [serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        return payload

    def _parse_response(self, data: Any, req: ChatRequest) -> ChatResult:
        if not isinstance(data, dict):
            raise ApiError(code="MALFORMED_RESPONSE", message="Completion response is not an object", http_status=502)
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ApiError(code="API_ERROR", message=message or "Unknown API error", http_status=502)
        raw_choices = data.get("choices")
        if not isinstance(raw_choices, list) or not raw_choices:
            raise ApiError(code="MALFORMED_RESPONSE", message="Completion response has no choices", http_status=502)
        choices: list[ChatChoice] = []
        for i, ch in enumerate(raw_choices):
            msg = (ch or {}).get("message") or {}
            cm = self._build_chat_message(msg)
            choices.append(ChatChoice(index=i, message=cm, finish_reason=(ch or {}).get("finish_reason")))
        return ChatResult(
            provider=self._provider.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    def _build_chat_message(self, payload: Dict[str, Any]) -> ChatMessage:
        """解析 message / delta，兼容 tool_calls 与旧版 function_call。"""

        role = payload.get("role") or "assistant"
        content = payload.get("content") or ""
        tool_calls: List[ToolCall] = []
        for idx, call in enumerate(payload.get("tool_calls") or []):
            func = call.get("function") or {}
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"tool_call_{idx}",
                    name=func.get("name") or call.get("name") or "",
                    arguments=self._parse_arguments(func.get("arguments")),
                )
            )

        function_call = payload.get("function_call")
        if function_call:
            tool_calls.append(
                ToolCall(
                    id=function_call.get("id") or "function_call",
                    name=function_call.get("name") or "",
                    arguments=self._parse_arguments(function_call.get("arguments")),
                )
            )

        return ChatMessage(
            role=role,
            content=content,
            tool_calls=tool_calls or None,
            tool_call_id=payload.get("tool_call_id"),
        )

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        choices: list[ChatStreamChoice] = []
        for i, ch in enumerate(data.get("choices") or []):
            delta = ch.get("delta") or {}
            # tool_calls 片段由 _buffer_tool_calls 拼接，流结束后统一产出
            delta_msg = ChatMessage(role=delta.get("role") or "assistant", content=delta.get("content") or "")
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=delta_msg,
                    finish_reason=ch.get("finish_reason"),
                )
            )
        return ChatStreamChunk(
            provider=self._provider.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    @staticmethod
    def _buffer_tool_calls(data: dict, partial_calls: Dict[int, Dict[str, Any]]) -> None:
        """按 index 拼接流式返回中分段到达的 tool_calls。"""

        for ch in data.get("choices") or []:
            for pos, call in enumerate((ch.get("delta") or {}).get("tool_calls") or []):
                idx = call.get("index", pos)
                entry = partial_calls.setdefault(idx, {"id": None, "name": "", "arguments": ""})
                if call.get("id"):
                    entry["id"] = call["id"]
                func = call.get("function") or {}
                if func.get("name"):
                    entry["name"] += func["name"]
                args = func.get("arguments")
                if isinstance(args, str):
                    entry["arguments"] += args
                elif isinstance(args, dict):
                    entry["arguments"] = json.dumps(args, ensure_ascii=False)

    def _assembled_tool_calls_chunk(self, partial_calls: Dict[int, Dict[str, Any]], req: ChatRequest) -> ChatStreamChunk:
        calls = [
            ToolCall(
                id=entry["id"] or f"tool_call_{idx}",
                name=entry["name"],
                arguments=self._parse_arguments(entry["arguments"]),
            )
            for idx, entry in sorted(partial_calls.items())
        ]
        delta = ChatMessage(role="assistant", content="", tool_calls=calls)
        return ChatStreamChunk(
            provider=self._provider.name,
            model=req.model,
            choices=[ChatStreamChoice(index=0, delta=delta, finish_reason="tool_calls")],
        )

    @staticmethod
    def _parse_usage(usage_raw: Optional[dict]) -> Optional[ChatUsage]:
        if not usage_raw:
            return None
        return ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens", 0),
            completion_tokens=usage_raw.get("completion_tokens", 0),
            total_tokens=usage_raw.get("total_tokens", 0),
        )

    def _message_to_payload(self, message: ChatMessage) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role}
        if message.tool_calls:
            payload["content"] = message.content or None
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments, ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        else:
            payload["content"] = message.content
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        return payload

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            if not raw.strip():
                return {}
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
            return parsed if isinstance(parsed, dict) else {"_raw": raw}
        return {}

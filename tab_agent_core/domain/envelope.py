"""跨上下文消息信封。

UI 面板、协调器和页面执行器之间只交换 {type, payload} 结构的 JSON 消息。
每种请求类型都对应唯一的一种回复类型。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from tab_agent_core.domain.exceptions import BusinessError, InvalidEnvelopeError


class MessageType(str, Enum):
    # 请求
    GET_SETTINGS = "GET_SETTINGS"
    SAVE_SETTINGS = "SAVE_SETTINGS"
    SEND_MESSAGE = "SEND_MESSAGE"
    CLEAR_TAB_CONVERSATION = "CLEAR_TAB_CONVERSATION"
    EXECUTE_FUNCTION = "EXECUTE_FUNCTION"
    GET_RESPONSE_PAGE = "GET_RESPONSE_PAGE"
    TEST_CONNECTION = "TEST_CONNECTION"
    CAPTURE_SCREENSHOT = "CAPTURE_SCREENSHOT"
    # 回复
    SETTINGS_RESPONSE = "SETTINGS_RESPONSE"
    MESSAGE_RESPONSE = "MESSAGE_RESPONSE"
    FUNCTION_RESPONSE = "FUNCTION_RESPONSE"
    RESPONSE_PAGE = "RESPONSE_PAGE"
    TEST_CONNECTION_RESPONSE = "TEST_CONNECTION_RESPONSE"
    ERROR = "ERROR"


@dataclass(frozen=True)
class Envelope:
    """一条请求或回复消息。发送后不可变。"""

    type: MessageType
    payload: Any = None

    @classmethod
    def from_raw(cls, raw: Any) -> "Envelope":
        """把外部传入的任意对象校验为 Envelope。

        未知但格式正确的 type 不在这里报错，而是保留原始字符串交给 Router 处理，
        因此返回值的 type 可能是 str。
        """

        if isinstance(raw, Envelope):
            return raw
        if not isinstance(raw, Mapping):
            raise InvalidEnvelopeError(code="INVALID_ENVELOPE", message="Message must be an object with a 'type' field")
        msg_type = raw.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            raise InvalidEnvelopeError(code="INVALID_ENVELOPE", message="Message 'type' must be a non-empty string")
        try:
            resolved: Any = MessageType(msg_type)
        except ValueError:
            resolved = msg_type
        return cls(type=resolved, payload=raw.get("payload"))

    @property
    def is_error(self) -> bool:
        return self.type == MessageType.ERROR


def error_envelope(error: BaseException | str, **fields: Any) -> Envelope:
    """构造 ERROR 回复。BusinessError 会额外带上 code / retryable。"""

    if isinstance(error, BusinessError):
        payload: Dict[str, Any] = {"error": error.message, "code": error.code}
        if error.retryable:
            payload["retryable"] = True
    elif isinstance(error, BaseException):
        payload = {"error": str(error) or type(error).__name__}
    else:
        payload = {"error": error}
    payload.update(fields)
    return Envelope(MessageType.ERROR, payload)


def payload_field(payload: Any, name: str, default: Optional[Any] = None) -> Any:
    if isinstance(payload, Mapping):
        return payload.get(name, default)
    return default

"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 MessageRouter 里统一转换为一个 ERROR 回复信封。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 retryable、tab_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return bool(self.extra.get("retryable", False))


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class LlmTimeoutError(NetworkError):
    """LLM 调用超时。调用方（UI）可以选择重试，协调器本身不自动重试。"""

    def __init__(self, message: str, **extra):
        extra.setdefault("retryable", True)
        super().__init__(code="LLM_TIMEOUT", message=message, http_status=504, **extra)


class ApiError(BusinessError):
    """第三方 API 返回非 2xx 或响应体无法解析时抛出。"""


class RateLimitError(BusinessError):
    """Provider 限流错误，由上层负责重试/退避策略。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class InvalidEnvelopeError(ValidationError):
    """收到的消息不是合法的 {type, payload} 信封。"""


class ToolArgumentError(ValidationError):
    """工具调用参数缺失或类型不符。"""


class StorageError(BusinessError):
    """KeyValueStore 读写失败。"""


class TransportError(BusinessError):
    """目标上下文不可达：标签页已关闭、通道断开或等待回复超时。"""


class ResultNotFoundError(BusinessError):
    """分页结果不存在、已过期或页码越界。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="RESPONSE_NOT_FOUND", message=message, http_status=404, **extra)


class ToolRoundLimitError(BusinessError):
    """工具调用轮数超过配置的上限。"""


class UnknownMessageTypeError(BusinessError):
    """没有任何处理器认领该消息类型。"""
